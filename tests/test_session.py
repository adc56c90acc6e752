"""Tests for the per-connection relay session."""

from __future__ import annotations

import asyncio
import random

import pytest

from relay.exceptions import (
    AuthFailure,
    MalformedResponse,
    TransportFailure,
    UpstreamFailure,
)
from relay.schemas import CompletionOptions, Turn
from relay.services.context_store import ContextStore
from relay.services.session import (
    EFFECTS,
    ERROR_EFFECT,
    FALLBACK_MESSAGE,
    RelaySession,
    SessionState,
    pick_effect,
)

from tests.fakes import RecordingConnections, StubLLM

SYSTEM = "persona"
SYSTEM_TURN = Turn(role="system", content=SYSTEM)


async def _open(llm: StubLLM, cid: str = "c1", **kwargs) -> tuple[RelaySession, RecordingConnections]:
    connections = RecordingConnections()
    session = RelaySession(
        cid,
        store=ContextStore(SYSTEM, max_turns=10),
        llm=llm,
        connections=connections,
        **kwargs,
    )
    await session.open()
    return session, connections


async def _settle(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# =========================================================================
# Happy path
# =========================================================================


class TestExchange:
    @pytest.mark.asyncio
    async def test_open_seeds_transcript(self):
        session, _ = await _open(StubLLM())
        assert await session.store.get("c1") == [SYSTEM_TURN]
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_hello_round_trip(self):
        llm = StubLLM("hi there")
        session, connections = await _open(llm)

        await session.handle_message("hello")

        assert await session.store.get("c1") == [
            SYSTEM_TURN,
            Turn(role="user", content="hello"),
            Turn(role="assistant", content="hi there"),
        ]
        replies = connections.events("bot_message")
        assert len(replies) == 1
        assert replies[0]["message"] == "hi there"
        assert replies[0]["particles"] in EFFECTS
        assert llm.calls[0] == [SYSTEM_TURN, Turn(role="user", content="hello")]

    @pytest.mark.asyncio
    async def test_event_order(self):
        session, connections = await _open(StubLLM("hi"))
        await session.handle_message("hello", username="ada")

        assert [event for _, event, _ in connections.sent] == [
            "bot_typing",
            "bot_message",
            "bot_typing",
        ]
        assert connections.events("bot_typing") == [{"typing": True}, {"typing": False}]
        assert connections.broadcasts == [
            ("typing_update", {"user": "ada", "typing": True}, None),
            ("typing_update", {"user": "ada", "typing": False}, None),
        ]

    @pytest.mark.asyncio
    async def test_anonymous_user_in_broadcast(self):
        session, connections = await _open(StubLLM("hi"))
        await session.handle_message("hello")
        assert connections.broadcasts[0][1]["user"] == "Someone"

    @pytest.mark.asyncio
    async def test_options_forwarded(self):
        options = CompletionOptions(model="m", temperature=0.2, max_output_tokens=10)
        llm = StubLLM("hi")
        session, _ = await _open(llm, options=options)
        await session.handle_message("hello")
        assert llm.options == [options]

    @pytest.mark.asyncio
    async def test_twelve_exchanges_stay_capped(self):
        llm = StubLLM(*[f"r{i}" for i in range(12)])
        session, connections = await _open(llm)
        for i in range(12):
            await session.handle_message(f"m{i}")
            transcript = await session.store.get("c1")
            assert len(transcript) == min(1 + 2 * (i + 1), 11)
            assert transcript[0] == SYSTEM_TURN
        assert transcript[-2:] == [
            Turn(role="user", content="m11"),
            Turn(role="assistant", content="r11"),
        ]
        assert len(connections.events("bot_message")) == 12


# =========================================================================
# Failures
# =========================================================================


class TestFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            TransportFailure("unreachable"),
            AuthFailure(401),
            UpstreamFailure(500),
            MalformedResponse("no choices"),
        ],
    )
    async def test_failure_sends_fallback(self, error):
        session, connections = await _open(StubLLM(error))

        await session.handle_message("hello")

        assert connections.events("bot_message") == [
            {"message": FALLBACK_MESSAGE, "particles": ERROR_EFFECT}
        ]
        assert await session.store.get("c1") == [
            SYSTEM_TURN,
            Turn(role="user", content="hello"),
        ]
        assert connections.events("bot_typing")[-1] == {"typing": False}
        assert connections.broadcasts[-1][1]["typing"] is False
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_failure_never_adds_assistant_turn(self):
        session, _ = await _open(StubLLM("first", TransportFailure("down")))
        await session.handle_message("one")
        before = await session.store.get("c1")
        await session.handle_message("two")
        after = await session.store.get("c1")
        assert [t.role for t in after].count("assistant") == 1
        assert len(after) == len(before) + 1

    @pytest.mark.asyncio
    async def test_unexpected_error_reported_and_typing_cleared(self):
        session, connections = await _open(StubLLM(KeyError("bug")))

        task = session.submit("hello")
        await task

        assert connections.events("error") == ["Something went wrong handling your message"]
        assert connections.events("bot_typing") == [{"typing": True}, {"typing": False}]
        assert connections.events("bot_message") == []


# =========================================================================
# Dispatch
# =========================================================================


class TestDispatch:
    @pytest.mark.asyncio
    async def test_user_message_runs_in_background(self):
        llm = StubLLM("hi")
        session, connections = await _open(llm)
        await session.dispatch({"event": "user_message", "data": {"message": "hello"}})
        await _settle(lambda: session.pending == 0)
        assert connections.events("bot_message")[0]["message"] == "hi"

    @pytest.mark.asyncio
    async def test_user_message_text_is_stripped(self):
        llm = StubLLM("hi")
        session, _ = await _open(llm)
        await session.dispatch(
            {"event": "user_message", "data": {"message": "  hello \n", "username": "  "}}
        )
        await _settle(lambda: session.pending == 0)
        assert llm.calls[0][-1] == Turn(role="user", content="hello")

    @pytest.mark.asyncio
    async def test_typing_hint_goes_to_everyone_else(self):
        session, connections = await _open(StubLLM())
        await session.dispatch({"event": "typing", "data": {"username": "ada", "typing": True}})
        assert connections.broadcasts == [
            ("typing_update", {"user": "ada", "typing": True}, "c1")
        ]
        assert connections.sent == []

    @pytest.mark.asyncio
    async def test_user_joined_is_accepted(self):
        session, connections = await _open(StubLLM())
        await session.dispatch({"event": "user_joined", "data": {"username": "ada"}})
        assert connections.sent == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "frame",
        [
            {"event": "user_message", "data": {"message": ""}},
            {"event": "user_message", "data": {"message": "  \n\t "}},
            {"event": "user_message", "data": {}},
            {"event": "typing", "data": {"username": "ada"}},
            {"data": {"message": "hi"}},
            "just a string",
        ],
    )
    async def test_invalid_payload_reports_error(self, frame):
        session, connections = await _open(StubLLM())
        await session.dispatch(frame)
        errors = connections.events("error")
        assert len(errors) == 1
        assert errors[0].startswith("Invalid payload")
        assert session.pending == 0

    @pytest.mark.asyncio
    async def test_unknown_event_reports_error(self):
        session, connections = await _open(StubLLM())
        await session.dispatch({"event": "dance", "data": {}})
        assert connections.events("error") == ["Unknown event: dance"]


# =========================================================================
# Concurrency and lifecycle
# =========================================================================


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_messages_from_one_connection_are_serialized(self):
        gate = asyncio.Event()
        llm = StubLLM("r1", "r2", gate=gate)
        session, connections = await _open(llm)

        first = session.submit("m1")
        second = session.submit("m2")
        await _settle(lambda: len(llm.calls) == 1)
        assert session.state is SessionState.AWAITING_COMPLETION
        # the second message has not reached the transcript yet
        assert len(await session.store.get("c1")) == 2

        gate.set()
        await asyncio.gather(first, second)

        assert llm.calls[1] == [
            SYSTEM_TURN,
            Turn(role="user", content="m1"),
            Turn(role="assistant", content="r1"),
            Turn(role="user", content="m2"),
        ]
        assert [r["message"] for r in connections.events("bot_message")] == ["r1", "r2"]
        assert connections.events("bot_typing") == [
            {"typing": True},
            {"typing": False},
            {"typing": True},
            {"typing": False},
        ]
        assert session.state is SessionState.IDLE

    @pytest.mark.asyncio
    async def test_sessions_do_not_block_each_other(self):
        gate = asyncio.Event()
        store = ContextStore(SYSTEM)
        connections = RecordingConnections()
        slow = RelaySession("slow", store=store, llm=StubLLM("late", gate=gate), connections=connections)
        fast = RelaySession("fast", store=store, llm=StubLLM("quick"), connections=connections)
        await slow.open()
        await fast.open()

        pending = slow.submit("wait")
        await fast.handle_message("go")

        assert [m["message"] for m in connections.events("bot_message")] == ["quick"]
        gate.set()
        await pending
        assert len(await store.get("slow")) == 3
        assert len(await store.get("fast")) == 3

    @pytest.mark.asyncio
    async def test_close_cancels_in_flight_and_deletes(self):
        llm = StubLLM("never", gate=asyncio.Event())
        session, connections = await _open(llm)

        session.submit("hello")
        await _settle(lambda: len(llm.calls) == 1)
        await session.close()

        assert session.pending == 0
        assert await session.store.get("c1") is None
        assert connections.events("bot_typing") == [{"typing": True}]
        assert connections.events("bot_message") == []
        assert connections.broadcasts[-1] == (
            "typing_update",
            {"user": "Someone", "typing": False},
            None,
        )

    @pytest.mark.asyncio
    async def test_nothing_runs_after_close(self):
        session, connections = await _open(StubLLM("hi"))
        await session.close()
        assert session.submit("late") is None
        await session.close()
        assert connections.sent == []


# =========================================================================
# Effect tags
# =========================================================================


class TestEffects:
    def test_pick_effect_uses_fixed_set(self):
        rng = random.Random(7)
        picks = {pick_effect(rng) for _ in range(500)}
        assert picks == set(EFFECTS)
        assert ERROR_EFFECT not in picks

    def test_pick_effect_is_reproducible_with_seed(self):
        assert [pick_effect(random.Random(1)) for _ in range(3)] == [
            pick_effect(random.Random(1)) for _ in range(3)
        ]
