"""Per-connection relay between the socket and the completion provider.

A session owns one connection's transcript for as long as the socket is
open. Each inbound ``user_message`` runs as its own task; the tasks share
a lock so a connection's messages reach the provider one at a time and in
arrival order. Closing the session cancels whatever is still pending and
deletes the transcript.
"""

import asyncio
import enum
import logging
import random
from collections.abc import Sequence
from typing import Any, Protocol

from pydantic import ValidationError

from relay.exceptions import CompletionError
from relay.schemas import (
    CompletionOptions,
    Envelope,
    Turn,
    TypingHint,
    UserJoined,
    UserMessage,
)
from relay.services.connections import ConnectionManager
from relay.services.store_protocol import TranscriptStore

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = "Whoops, my circuits are glitching 🔥 Try again in a sec?"
ERROR_EFFECT = "error"
ANONYMOUS_USER = "Someone"

# Cosmetic only: roughly 30% fire, 42% neon, 28% default.
EFFECTS = ("fire", "neon", "default")
EFFECT_WEIGHTS = (30, 42, 28)


def pick_effect(rng: random.Random | None = None) -> str:
    """Choose a decorative effect tag for a successful reply."""
    return (rng or random).choices(EFFECTS, weights=EFFECT_WEIGHTS)[0]


class CompletionClient(Protocol):
    async def complete(
        self, transcript: Sequence[Turn], options: CompletionOptions | None = None
    ) -> str: ...


class SessionState(enum.Enum):
    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting_completion"


class RelaySession:
    """Relays one connection's chat messages to the completion client."""

    def __init__(
        self,
        connection_id: str,
        store: TranscriptStore,
        llm: CompletionClient,
        connections: ConnectionManager,
        options: CompletionOptions | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.connection_id = connection_id
        self.store = store
        self.llm = llm
        self.connections = connections
        self.options = options
        self._rng = rng or random.Random()
        self._flight = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self.state = SessionState.IDLE
        self.closed = False

    @property
    def pending(self) -> int:
        """Number of message flows that have not finished yet."""
        return len(self._tasks)

    async def open(self) -> None:
        await self.store.create(self.connection_id)
        logger.info("User connected: %s", self.connection_id)

    async def close(self) -> None:
        """Abandon in-flight work and drop the transcript. Safe to repeat."""
        if self.closed:
            return
        self.closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.store.delete(self.connection_id)
        logger.info("User disconnected: %s", self.connection_id)

    async def _emit(self, event: str, data: Any) -> None:
        """Send a personal event; nothing goes out once the session closed."""
        if self.closed:
            return
        await self.connections.send(self.connection_id, event, data)

    async def _broadcast_typing(self, user: str, typing: bool) -> None:
        await self.connections.broadcast("typing_update", {"user": user, "typing": typing})

    async def dispatch(self, frame: Any) -> None:
        """Route one decoded inbound frame to its handler."""
        try:
            envelope = Envelope.model_validate(frame)
            if envelope.event == "user_message":
                message = UserMessage.model_validate(envelope.data)
                self.submit(message.message, message.username)
            elif envelope.event == "typing":
                hint = TypingHint.model_validate(envelope.data)
                await self.connections.broadcast(
                    "typing_update",
                    {"user": hint.username or ANONYMOUS_USER, "typing": hint.typing},
                    exclude=self.connection_id,
                )
            elif envelope.event == "user_joined":
                joined = UserJoined.model_validate(envelope.data or {})
                logger.info("%s joined on %s", joined.username or ANONYMOUS_USER, self.connection_id)
            else:
                await self._emit("error", f"Unknown event: {envelope.event}")
        except ValidationError as exc:
            await self._emit("error", f"Invalid payload: {exc.errors()[0]['msg']}")

    def submit(self, text: str, username: str | None = None) -> asyncio.Task[None] | None:
        """Start a message flow in the background and return its task."""
        if self.closed:
            return None
        task = asyncio.create_task(self._run(text, username))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, text: str, username: str | None) -> None:
        try:
            await self.handle_message(text, username)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Message handler failed on %s", self.connection_id)
            await self._emit("error", "Something went wrong handling your message")

    async def handle_message(self, text: str, username: str | None = None) -> None:
        """Run one user message through the provider and answer the client.

        Whatever happens, the typing indicators that were switched on are
        switched off again before this returns.
        """
        user = username or ANONYMOUS_USER
        async with self._flight:
            self.state = SessionState.AWAITING_COMPLETION
            await self._emit("bot_typing", {"typing": True})
            await self._broadcast_typing(user, True)
            try:
                transcript = await self.store.append(
                    self.connection_id, Turn(role="user", content=text)
                )
                if transcript is None:
                    return

                try:
                    reply = await self.llm.complete(transcript, self.options)
                except CompletionError as exc:
                    logger.warning(
                        "AI Error on %s (%s): %s",
                        self.connection_id,
                        type(exc).__name__,
                        exc,
                    )
                    await self._emit(
                        "bot_message",
                        {"message": FALLBACK_MESSAGE, "particles": ERROR_EFFECT},
                    )
                    return

                await self.store.append(
                    self.connection_id, Turn(role="assistant", content=reply)
                )
                await self._emit(
                    "bot_message",
                    {"message": reply, "particles": pick_effect(self._rng)},
                )
            finally:
                await self._emit("bot_typing", {"typing": False})
                await self._broadcast_typing(user, False)
                self.state = SessionState.IDLE
