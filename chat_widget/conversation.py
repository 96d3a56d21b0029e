from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .chat import ReplyStreamer
from .errors import ModerationFailure, NetworkAbort, ValidationError
from .extraction import SnapshotUpdater
from .merge import required_satisfied
from .moderation import Moderator
from .models import ModerationResult
from .schemas import CUSTOMER_INTENTION_SCHEMA, SchemaDescriptor
from .session import ReplySlot, SessionState
from .utils import strip_html

logger = logging.getLogger("chat_widget.conversation")

REFUSAL_MESSAGE = "Sorry, I can't help with that. Is there anything else I can help you find?"
REPLY_FAILURE_MESSAGE = "Sorry, something went wrong."

SearchTrigger = Callable[[Dict[str, Any]], Awaitable[None]]


class EngineState(str, Enum):
    IDLE = "idle"
    AWAITING_MODERATION = "awaiting_moderation"
    AWAITING_REPLY = "awaiting_reply"


class TurnOutcome(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FLAGGED = "flagged"
    SUPERSEDED = "superseded"


@dataclass
class Turn:
    """One user message and all the work it started."""
    turn_id: int
    user_message: str
    outcome: TurnOutcome = TurnOutcome.PENDING
    moderation: Optional[ModerationResult] = None
    slot: Optional[ReplySlot] = None
    moderation_task: Optional["asyncio.Task[ModerationResult]"] = None
    tasks: List["asyncio.Task[None]"] = field(default_factory=list)

    def pending_tasks(self) -> List["asyncio.Task[Any]"]:
        pending: List[asyncio.Task[Any]] = [task for task in self.tasks if not task.done()]
        if self.moderation_task is not None and not self.moderation_task.done():
            pending.append(self.moderation_task)
        return pending

    async def wait(self) -> None:
        """Wait for the reply stream and both extractions to settle."""
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)


class ConversationEngine:
    def __init__(
        self,
        session: SessionState,
        moderator: Moderator,
        streamer: ReplyStreamer,
        updater: SnapshotUpdater,
        search_schema: SchemaDescriptor,
        intention_schema: SchemaDescriptor = CUSTOMER_INTENTION_SCHEMA,
        search_trigger: Optional[SearchTrigger] = None,
        session_id: Optional[str] = None,
    ) -> None:
        """Purpose: Wire a session to its moderation, reply and extraction services.
        Inputs/Outputs: Inputs are the session state, services, schemas, an optional
            downstream search trigger and a log tag; no return value.
        Side Effects / State: None until send_message is called. Each turn then moves
            IDLE -> AWAITING_MODERATION -> AWAITING_REPLY -> IDLE, and its extractions
            may outlive AWAITING_REPLY. close() discards the session; callers still
            waiting get NetworkAbort.
        Dependencies: Moderator, ReplyStreamer, SnapshotUpdater, SessionState.
        Failure Modes: None at init; safe to build outside a running event loop.
        If Removed: Nothing coordinates turns, cancellation, or the search gate.
        Testing Notes: Inject fakes for every service.
        """
        # The engine is the only writer of this session's state.
        self._session = session
        self._moderator = moderator
        self._streamer = streamer
        self._updater = updater
        self._search_schema = search_schema
        self._intention_schema = intention_schema
        self._search_trigger = search_trigger
        self.session_id = session_id or uuid.uuid4().hex
        self._state = EngineState.IDLE
        self._current: Optional[Turn] = None
        self._turn_counter = 0
        self._closed = False
        self._lock: Optional[asyncio.Lock] = None

    def _turn_lock(self) -> asyncio.Lock:
        # Created on first use so the lock belongs to the loop that runs the turns.
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> SessionState:
        return self._session

    @property
    def current_turn(self) -> Optional[Turn]:
        return self._current

    async def send_message(self, text: str) -> Turn:
        """Purpose: Start a turn for a user message.
        Inputs/Outputs: Input is raw user text; output is the Turn, whose wait()
            resolves once the reply and extractions settle.
        Side Effects / State: Cancels the previous turn's in-flight work, appends the
            message, and (after moderation) opens the reply slot and starts the reply
            and extraction tasks.
        Dependencies: Moderator.moderate, _run_reply, _run_extraction.
        Failure Modes: ValidationError for blank input; ModerationFailure propagates
            and no reply or extraction starts. A superseded turn returns with outcome
            SUPERSEDED instead of raising.
        If Removed: The widget cannot hold a conversation.
        Testing Notes: A flagged verdict must leave the extractor uncalled.
        """
        # Supersede, append optimistically, and start moderation under the lock.
        cleaned = strip_html(text)
        if not cleaned:
            raise ValidationError("message content is required")

        async with self._turn_lock():
            if self._closed:
                raise NetworkAbort(f"session {self.session_id} is closed")
            await self._supersede()
            self._turn_counter += 1
            turn = Turn(turn_id=self._turn_counter, user_message=cleaned)
            self._current = turn
            self._session.add_message("user", cleaned)
            self._state = EngineState.AWAITING_MODERATION
            turn.moderation_task = asyncio.create_task(self._moderator.moderate(cleaned))
        logger.info("session=%s turn=%s step=moderation", self.session_id, turn.turn_id)

        try:
            verdict = await turn.moderation_task
        except asyncio.CancelledError:
            if self._closed:
                raise NetworkAbort(f"session {self.session_id} closed during turn {turn.turn_id}") from None
            if turn.outcome is TurnOutcome.SUPERSEDED:
                return turn
            raise
        except ModerationFailure:
            if self._current is turn:
                self._state = EngineState.IDLE
            logger.error("session=%s turn=%s moderation_failed", self.session_id, turn.turn_id)
            raise

        if self._current is not turn:
            turn.outcome = TurnOutcome.SUPERSEDED
            return turn

        turn.moderation = verdict
        if verdict.flagged:
            self._session.add_message("assistant", REFUSAL_MESSAGE)
            self._state = EngineState.IDLE
            turn.outcome = TurnOutcome.FLAGGED
            logger.info("session=%s turn=%s flagged=%s", self.session_id, turn.turn_id, verdict.categories)
            return turn

        history = self._session.messages
        search_snapshot = self._session.search_data
        turn.slot = self._session.open_reply()
        self._state = EngineState.AWAITING_REPLY
        turn.tasks = [
            asyncio.create_task(self._run_reply(turn, history, search_snapshot)),
            asyncio.create_task(self._run_extraction(turn, history, self._search_schema)),
            asyncio.create_task(self._run_extraction(turn, history, self._intention_schema)),
        ]
        turn.outcome = TurnOutcome.COMPLETED
        return turn

    async def cancel(self) -> None:
        """Abandon the current turn's in-flight work; the session stays usable."""
        async with self._turn_lock():
            await self._supersede()
            self._state = EngineState.IDLE

    async def close(self) -> None:
        """Discard the session: cancel in-flight work and refuse further messages.

        Callers still waiting on a turn get NetworkAbort, which is not a failure to
        show the user.
        """
        self._closed = True
        await self.cancel()
        logger.info("session=%s closed", self.session_id)

    async def confirm_search(self) -> bool:
        """Fire the pending manual search; False when nothing is awaiting confirmation."""
        if not self._session.search_pending_confirmation:
            return False
        snapshot = self._session.search_data
        if not required_satisfied(snapshot, self._search_schema):
            self._session.search_pending_confirmation = False
            return False
        await self._fire_search(snapshot)
        return True

    async def _supersede(self) -> None:
        turn = self._current
        if turn is None:
            return
        pending = turn.pending_tasks()
        if not pending:
            return
        turn.outcome = TurnOutcome.SUPERSEDED
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        # Tasks cancelled before their first step never reach their own handler.
        if turn.slot is not None:
            turn.slot.cancel()
        logger.info("session=%s turn=%s superseded cancelled_tasks=%s", self.session_id, turn.turn_id, len(pending))

    async def _run_reply(self, turn: Turn, history: List[Dict[str, str]], search_snapshot: Dict[str, Any]) -> None:
        slot = turn.slot
        assert slot is not None
        try:
            async for chunk in self._streamer.stream_reply(history, self._search_schema, search_snapshot):
                slot.append(chunk)
            slot.finalize()
            logger.info("session=%s turn=%s step=reply status=done chars=%s", self.session_id, turn.turn_id, len(slot.content))
        except asyncio.CancelledError:
            slot.cancel()
            raise
        except Exception:
            logger.exception("session=%s turn=%s step=reply status=error", self.session_id, turn.turn_id)
            slot.fail(REPLY_FAILURE_MESSAGE)
        finally:
            if self._current is turn and self._state is EngineState.AWAITING_REPLY:
                self._state = EngineState.IDLE

    async def _run_extraction(self, turn: Turn, history: List[Dict[str, str]], schema: SchemaDescriptor) -> None:
        is_search = schema is self._search_schema
        prior = self._session.search_data if is_search else self._session.customer_intention
        try:
            outcome = await self._updater.refresh(history, schema, prior, session_id=self.session_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("session=%s turn=%s schema=%s extraction_error", self.session_id, turn.turn_id, schema.name)
            return
        if outcome.failed or self._current is not turn:
            return

        if not is_search:
            self._session.set_customer_intention(outcome.snapshot)
            return
        self._session.set_search_data(outcome.snapshot, updated=outcome.updated)
        if outcome.updated:
            await self._evaluate_search_gate(outcome.snapshot)

    async def _evaluate_search_gate(self, snapshot: Dict[str, Any]) -> None:
        if not required_satisfied(snapshot, self._search_schema):
            self._session.search_pending_confirmation = False
            return
        if self._session.require_manual_search:
            self._session.search_pending_confirmation = True
            logger.info("session=%s search=awaiting_confirmation", self.session_id)
            return
        await self._fire_search(snapshot)

    async def _fire_search(self, snapshot: Dict[str, Any]) -> None:
        logger.info("session=%s search=triggered data=%s", self.session_id, json.dumps(snapshot, ensure_ascii=True, default=str))
        self._session.mark_search_consumed()
        if self._search_trigger is None:
            return
        try:
            await self._search_trigger(dict(snapshot))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("session=%s search_trigger_failed", self.session_id)
