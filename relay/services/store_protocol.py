from typing import Protocol

from relay.schemas import Turn


class TranscriptStore(Protocol):
    """Protocol describing async storage for per-connection transcripts."""

    async def create(self, connection_id: str) -> list[Turn]:
        """Seed a transcript for ``connection_id`` with the system turn."""
        ...

    async def get(self, connection_id: str) -> list[Turn] | None:
        """Return the transcript for ``connection_id``, or ``None``."""
        ...

    async def append(self, connection_id: str, turn: Turn) -> list[Turn] | None:
        """Append ``turn`` and trim the history to its cap."""
        ...

    async def delete(self, connection_id: str) -> None:
        """Forget everything stored for ``connection_id``."""
        ...
