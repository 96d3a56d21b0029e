"""Tests for the per-session conversation engine."""

import asyncio

import pytest

from conftest import FakeModerator, FakeStreamer, FakeUpdater, settle
from chat_widget.conversation import (
    REFUSAL_MESSAGE,
    REPLY_FAILURE_MESSAGE,
    ConversationEngine,
    EngineState,
    TurnOutcome,
)
from chat_widget.errors import ModerationFailure, NetworkAbort, ValidationError
from chat_widget.schemas import search_schema_from_config
from chat_widget.session import ReplyStatus, SessionState
from chat_widget.storage import MemoryStore

SEARCH_SCHEMA = search_schema_from_config(
    {
        "location": {"type": "string", "description": "Destination", "required": True},
        "startDate": {"type": "string", "description": "Start", "required": True},
        "guests": {"type": "integer", "description": "Travellers"},
    }
)
COMPLETE_SEARCH = {"location": "Lisbon", "startDate": "2024-06-01"}


class Harness:
    def __init__(self, require_manual_search=False, blocked=(), moderation_error=None):
        self.session = SessionState(MemoryStore(), require_manual_search=require_manual_search)
        self.moderator = FakeModerator(blocked=blocked, error=moderation_error)
        self.streamer = FakeStreamer()
        self.updater = FakeUpdater()
        self.triggered = []
        self.engine = ConversationEngine(
            self.session,
            self.moderator,
            self.streamer,
            self.updater,
            SEARCH_SCHEMA,
            search_trigger=self._trigger,
            session_id="test",
        )

    async def _trigger(self, snapshot):
        self.triggered.append(snapshot)


def _roles(session):
    return [message["role"] for message in session.messages]


class TestTurnFlow:
    @pytest.mark.asyncio
    async def test_reply_streams_into_single_assistant_message(self):
        harness = Harness()
        harness.streamer.queue(["Hi", " there", "!"])
        turn = await harness.engine.send_message("Hello")
        await turn.wait()
        assert turn.outcome is TurnOutcome.COMPLETED
        assert harness.session.messages == [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi there!"},
        ]
        assert turn.slot.status is ReplyStatus.DONE
        assert harness.engine.state is EngineState.IDLE

    @pytest.mark.asyncio
    async def test_both_extractions_run_with_full_history(self):
        harness = Harness()
        turn = await harness.engine.send_message("Hello")
        await turn.wait()
        assert sorted(harness.updater.calls) == ["customer_intention", "search_data"]
        assert harness.streamer.calls[0] == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_html_is_stripped_before_anything_sees_it(self):
        harness = Harness()
        turn = await harness.engine.send_message("<b>Lisbon</b><script>alert(1)</script>")
        await turn.wait()
        assert harness.moderator.calls == ["Lisbon"]
        assert harness.session.messages[0]["content"] == "Lisbon"

    @pytest.mark.asyncio
    async def test_blank_message_is_rejected(self):
        harness = Harness()
        with pytest.raises(ValidationError):
            await harness.engine.send_message("   <br>  ")
        assert harness.session.messages == []

    @pytest.mark.asyncio
    async def test_reply_failure_shows_generic_message(self):
        harness = Harness()
        harness.streamer.queue(["partial"], error=RuntimeError("stream dropped"))
        turn = await harness.engine.send_message("Hello")
        await turn.wait()
        assert harness.session.messages[-1] == {"role": "assistant", "content": REPLY_FAILURE_MESSAGE}
        assert turn.slot.status is ReplyStatus.FAILED


class TestModerationGate:
    @pytest.mark.asyncio
    async def test_flagged_message_never_reaches_extraction_or_reply(self):
        harness = Harness(blocked=["insult"])
        turn = await harness.engine.send_message("this is an insult")
        await turn.wait()
        assert turn.outcome is TurnOutcome.FLAGGED
        assert harness.updater.calls == []
        assert harness.streamer.calls == []
        assert harness.session.messages[-1] == {"role": "assistant", "content": REFUSAL_MESSAGE}
        assert harness.engine.state is EngineState.IDLE

    @pytest.mark.asyncio
    async def test_moderation_failure_is_a_hard_error(self, moderation_error):
        harness = Harness(moderation_error=moderation_error)
        with pytest.raises(ModerationFailure):
            await harness.engine.send_message("Hello")
        assert harness.updater.calls == []
        assert _roles(harness.session) == ["user"]
        assert harness.engine.state is EngineState.IDLE


class TestCancellation:
    @pytest.mark.asyncio
    async def test_superseded_stream_leaves_one_reply_per_turn(self):
        harness = Harness()
        harness.streamer.queue(["Let me ", "check"], hang=True)
        harness.streamer.queue(["Second ", "answer"])
        first = await harness.engine.send_message("First question")
        await settle()
        assert harness.engine.state is EngineState.AWAITING_REPLY

        second = await harness.engine.send_message("Actually, another question")
        await second.wait()
        assert _roles(harness.session) == ["user", "assistant", "user", "assistant"]
        assert harness.session.messages[1]["content"] == "Let me check"
        assert harness.session.messages[3]["content"] == "Second answer"
        assert first.outcome is TurnOutcome.SUPERSEDED
        assert first.slot.status is ReplyStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_closed_slot_ignores_late_chunks(self):
        harness = Harness()
        harness.streamer.queue(["done"])
        turn = await harness.engine.send_message("Hello")
        await turn.wait()
        assert turn.slot.append(" late") is False
        assert harness.session.messages[-1]["content"] == "done"

    @pytest.mark.asyncio
    async def test_message_during_moderation_supersedes_turn(self):
        harness = Harness()
        harness.moderator.gate = asyncio.Event()
        pending = asyncio.create_task(harness.engine.send_message("first"))
        await settle()
        harness.moderator.gate = None
        second = await harness.engine.send_message("second")
        first = await pending
        await second.wait()
        assert first.outcome is TurnOutcome.SUPERSEDED
        assert first.slot is None
        assert _roles(harness.session) == ["user", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_cancel_abandons_in_flight_reply(self):
        harness = Harness()
        harness.streamer.queue(["thinking"], hang=True)
        turn = await harness.engine.send_message("Hello")
        await settle()
        await harness.engine.cancel()
        assert turn.slot.status is ReplyStatus.CANCELLED
        assert harness.engine.state is EngineState.IDLE
        assert all(task.done() for task in turn.tasks)


class TestSearchTrigger:
    @pytest.mark.asyncio
    async def test_auto_search_fires_once_required_fields_are_present(self):
        harness = Harness()
        harness.updater.snapshots["search_data"] = COMPLETE_SEARCH
        turn = await harness.engine.send_message("Lisbon from June 1st")
        await turn.wait()
        assert harness.triggered == [COMPLETE_SEARCH]
        assert harness.session.search_data == COMPLETE_SEARCH
        assert harness.session.is_search_data_updated is False

    @pytest.mark.asyncio
    async def test_incomplete_search_does_not_fire(self):
        harness = Harness()
        harness.updater.snapshots["search_data"] = {"location": "Lisbon"}
        turn = await harness.engine.send_message("Lisbon")
        await turn.wait()
        assert harness.triggered == []
        assert harness.session.is_search_data_updated is True

    @pytest.mark.asyncio
    async def test_manual_search_waits_for_confirmation(self):
        harness = Harness(require_manual_search=True)
        harness.updater.snapshots["search_data"] = COMPLETE_SEARCH
        turn = await harness.engine.send_message("Lisbon from June 1st")
        await turn.wait()
        assert harness.triggered == []
        assert harness.session.search_pending_confirmation is True

        assert await harness.engine.confirm_search() is True
        assert harness.triggered == [COMPLETE_SEARCH]
        assert harness.session.search_pending_confirmation is False
        assert await harness.engine.confirm_search() is False

    @pytest.mark.asyncio
    async def test_intention_snapshot_is_stored(self):
        harness = Harness()
        harness.updater.snapshots["customer_intention"] = {"likes": ["surfing"]}
        turn = await harness.engine.send_message("I love surfing")
        await turn.wait()
        assert harness.session.customer_intention == {"likes": ["surfing"]}


class TestClose:
    @pytest.mark.asyncio
    async def test_waiting_caller_gets_network_abort(self):
        harness = Harness()
        harness.moderator.gate = asyncio.Event()
        pending = asyncio.create_task(harness.engine.send_message("hello"))
        await settle()
        await harness.engine.close()
        with pytest.raises(NetworkAbort):
            await pending
        assert harness.streamer.calls == []

    @pytest.mark.asyncio
    async def test_closed_engine_refuses_messages(self):
        harness = Harness()
        await harness.engine.close()
        with pytest.raises(NetworkAbort):
            await harness.engine.send_message("anyone there?")
        assert harness.session.messages == []


class TestEngineConstruction:
    def test_engine_built_outside_a_loop_serves_overlapping_turns(self):
        harness = Harness()
        harness.streamer.queue(["Let me ", "check"], hang=True)
        harness.streamer.queue(["Done"])

        async def run():
            first = await harness.engine.send_message("First")
            await settle()
            second, third = await asyncio.gather(
                harness.engine.send_message("Second"), harness.engine.send_message("Third")
            )
            await third.wait()
            return first, second, third

        first, second, third = asyncio.run(run())
        assert first.outcome is TurnOutcome.SUPERSEDED
        assert second.outcome is TurnOutcome.SUPERSEDED
        assert third.outcome is TurnOutcome.COMPLETED
        assert harness.session.messages[-1] == {"role": "assistant", "content": "Done"}
