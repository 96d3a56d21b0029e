"""Shared fixtures: a scripted Gemini stand-in and component doubles."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Sequence

import pytest

from chat_widget.config import BASE_DIR, Settings
from chat_widget.errors import ModerationFailure
from chat_widget.extraction import ExtractionOutcome
from chat_widget.models import ModerationResult

PROMPTS_DIR = BASE_DIR / "prompts"
FIXED_TODAY = date(2024, 5, 20)


@dataclass
class RecordedCall:
    kind: str
    contents: List[Dict[str, Any]]
    system_instruction: Optional[str]
    model: Optional[str]
    temperature: float

    @property
    def prompt_text(self) -> str:
        parts = [self.system_instruction or ""]
        for content in self.contents:
            parts.extend(part.get("text", "") for part in content.get("parts", []))
        return "\n".join(parts)


class FakeGemini:
    """Returns queued responses in order and records every call."""

    default_model = "fake-gemini"

    def __init__(self) -> None:
        self.json_responses: Deque[Any] = deque()
        self.streams: Deque[Any] = deque()
        self.calls: List[RecordedCall] = []

    def queue_json(self, *responses: Any) -> None:
        """Dicts are serialized; strings pass through raw; exceptions are raised."""
        self.json_responses.extend(responses)

    def queue_stream(self, chunks: Sequence[str], error: Optional[BaseException] = None) -> None:
        self.streams.append((list(chunks), error))

    def calls_of(self, kind: str) -> List[RecordedCall]:
        return [call for call in self.calls if call.kind == kind]

    async def generate_json(
        self,
        contents: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 4096,
    ) -> str:
        self.calls.append(RecordedCall("json", contents, system_instruction, model, temperature))
        await asyncio.sleep(0)
        if not self.json_responses:
            raise AssertionError("unexpected generate_json call")
        response = self.json_responses.popleft()
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            return response
        return json.dumps(response)

    async def stream_text(
        self,
        contents: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_output_tokens: int = 2048,
    ):
        self.calls.append(RecordedCall("stream", contents, system_instruction, model, temperature))
        chunks, error = self.streams.popleft() if self.streams else ([], None)
        for chunk in chunks:
            await asyncio.sleep(0)
            yield chunk
        if error is not None:
            raise error


class FakeModerator:
    """Flags any message containing one of the configured words."""

    def __init__(self, blocked: Sequence[str] = (), error: Optional[Exception] = None) -> None:
        self.blocked = [word.lower() for word in blocked]
        self.error = error
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []

    async def moderate(self, text: str) -> ModerationResult:
        self.calls.append(text)
        gate = self.gate
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if any(word in text.lower() for word in self.blocked):
            return ModerationResult(flagged=True, categories={"harassment": True})
        return ModerationResult(flagged=False)


@dataclass
class StreamScript:
    chunks: List[str]
    hang: bool = False
    error: Optional[Exception] = None


class FakeStreamer:
    """Plays scripted reply streams; a hanging script blocks after its chunks."""

    def __init__(self) -> None:
        self.scripts: Deque[StreamScript] = deque()
        self.calls: List[List[Dict[str, Any]]] = []

    def queue(self, chunks: Sequence[str], hang: bool = False, error: Optional[Exception] = None) -> None:
        self.scripts.append(StreamScript(list(chunks), hang=hang, error=error))

    async def stream_reply(self, history, schema, current_data):
        self.calls.append(list(history))
        script = self.scripts.popleft() if self.scripts else StreamScript(["ok"])
        for chunk in script.chunks:
            await asyncio.sleep(0)
            yield chunk
        if script.error is not None:
            raise script.error
        if script.hang:
            await asyncio.Event().wait()


@dataclass
class FakeUpdater:
    """Returns a canned snapshot per schema name, or the prior unchanged."""

    snapshots: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)

    async def refresh(self, history, schema, prior=None, session_id="-") -> ExtractionOutcome:
        self.calls.append(schema.name)
        await asyncio.sleep(0)
        prior_snapshot = dict(prior or {})
        snapshot = self.snapshots.get(schema.name)
        if snapshot is None:
            return ExtractionOutcome(snapshot=prior_snapshot, updated=False)
        return ExtractionOutcome(snapshot=dict(snapshot), updated=snapshot != prior_snapshot, changed=list(snapshot))


async def settle(rounds: int = 20) -> None:
    """Give scheduled tasks a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        gemini_api_key="test-key",
        gemini_model_chat="fake-chat",
        gemini_model_extraction="fake-gemini",
        widget_config_path=BASE_DIR / "widget_config.json",
        prompts_dir=PROMPTS_DIR,
        allowed_origins=("http://localhost:3000",),
        rate_limit=100,
        rate_limit_window_seconds=900,
        match_score_threshold=0.65,
        require_manual_search=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def fake_gemini() -> FakeGemini:
    return FakeGemini()


@pytest.fixture
def prompts_dir() -> Path:
    return PROMPTS_DIR


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def moderation_error() -> ModerationFailure:
    return ModerationFailure("moderation call failed: timeout")
