import asyncio

from relay.schemas import Turn


class ContextStore:
    """In-memory transcript store keyed by connection id.

    Each transcript starts with a single system turn that is never removed.
    After every append the transcript is cut back to the system turn plus
    the ``max_turns`` most recent turns.
    """

    def __init__(self, system_prompt: str, max_turns: int = 10) -> None:
        """Initialise the store and its async lock."""
        if max_turns <= 0:
            raise ValueError("max_turns must be positive")
        self._system_turn = Turn(role="system", content=system_prompt)
        self.max_turns = max_turns
        self._data: dict[str, list[Turn]] = {}
        self._lock = asyncio.Lock()

    @property
    def cap(self) -> int:
        """Largest length a transcript is allowed to reach."""
        return self.max_turns + 1

    async def create(self, connection_id: str) -> list[Turn]:
        """Seed a transcript with the system turn; existing ones are kept."""
        async with self._lock:
            transcript = self._data.setdefault(connection_id, [self._system_turn])
            return list(transcript)

    async def get(self, connection_id: str) -> list[Turn] | None:
        """Return a copy of the transcript, or ``None`` for unknown ids."""
        async with self._lock:
            transcript = self._data.get(connection_id)
            return list(transcript) if transcript is not None else None

    async def append(self, connection_id: str, turn: Turn) -> list[Turn] | None:
        """Append ``turn`` and trim; returns the updated copy.

        Unknown (or already deleted) ids are left alone and ``None`` is
        returned, so a late reply never brings a closed connection back.
        """
        async with self._lock:
            transcript = self._data.get(connection_id)
            if transcript is None:
                return None
            transcript.append(turn)
            if len(transcript) > self.cap:
                transcript[1:] = transcript[-self.max_turns :]
            return list(transcript)

    async def delete(self, connection_id: str) -> None:
        """Remove the stored transcript if it exists."""
        async with self._lock:
            self._data.pop(connection_id, None)

    async def size(self) -> int:
        """Number of transcripts currently held."""
        async with self._lock:
            return len(self._data)
