from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import ExtractionFailure, ValidationError
from .gemini_client import GeminiClient, to_gemini_contents
from .merge import changed_fields, merge
from .prompt_loader import render_prompt
from .schemas import SchemaDescriptor, validate_snapshot
from .utils import safe_json_loads

logger = logging.getLogger("chat_widget.extraction")

PROMPT_FILES = {
    "search_data": "search_data.txt",
    "customer_intention": "customer_intention.txt",
    "customer_prospect": "customer_prospect.txt",
}


class StructuredExtractor:
    """Asks the model for an updated snapshot and validates it against the schema."""

    def __init__(
        self,
        gemini: GeminiClient,
        prompts_dir: Path,
        model: Optional[str] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        """Purpose: Configure the extractor with its model client and prompt directory.
        Inputs/Outputs: Inputs are the Gemini client, prompts dir, model name and a
            clock returning the current date; no return value.
        Side Effects / State: Stores dependencies only.
        Dependencies: GeminiClient, render_prompt, validate_snapshot.
        Failure Modes: None at init.
        If Removed: No snapshot can be extracted from chat.
        Testing Notes: Inject a fake client and a fixed clock.
        """
        # Keep the clock injectable so date grounding is deterministic in tests.
        self._gemini = gemini
        self._prompts_dir = prompts_dir
        self._model = model
        self._today = today

    async def extract(
        self,
        history: Sequence[Mapping[str, Any]],
        schema: SchemaDescriptor,
        prior: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Purpose: Produce a candidate snapshot for the schema from the full history.
        Inputs/Outputs: Inputs are the chat history, schema and prior snapshot; output is
            the validated candidate (including the reserved retraction list when the
            schema has array fields).
        Side Effects / State: One model call.
        Dependencies: Prompt template for schema.name, GeminiClient.generate_json.
        Failure Modes: ValidationError when history has no user turn; ExtractionFailure
            on model errors, unparsable JSON or schema violations.
        If Removed: Search data and intention can no longer be learned from chat.
        Testing Notes: Canned model outputs with extra keys or wrong types must fail.
        """
        # Refuse histories without a user turn before spending a model call.
        if not any(message.get("role") == "user" for message in history):
            raise ValidationError("history must contain at least one user message")
        prompt_file = PROMPT_FILES.get(schema.name)
        if not prompt_file:
            raise ExtractionFailure(f"no extraction prompt registered for schema {schema.name!r}")

        today = self._today()
        system_instruction = render_prompt(
            self._prompts_dir / prompt_file,
            {
                "SCHEMA_JSON": json.dumps(schema.extraction_schema(), ensure_ascii=False),
                "CURRENT_DATA_JSON": json.dumps(dict(prior or {}), ensure_ascii=False),
                "TODAY_ISO": today.isoformat(),
            },
        )
        contents, history_system = to_gemini_contents(list(history))
        if history_system:
            system_instruction = f"{system_instruction}\n\n{history_system}"

        try:
            raw = await self._gemini.generate_json(
                contents,
                system_instruction=system_instruction,
                model=self._model,
                temperature=0.1,
            )
        except (ExtractionFailure, ValidationError):
            raise
        except Exception as exc:
            raise ExtractionFailure(f"{schema.name}: model call failed: {exc}") from exc

        parsed = safe_json_loads(raw)
        if parsed is None:
            raise ExtractionFailure(f"{schema.name}: model output is not a JSON object")
        return validate_snapshot(parsed, schema)


@dataclass
class ExtractionOutcome:
    """Result of one extract-and-merge cycle."""
    snapshot: Dict[str, Any]
    updated: bool
    changed: List[str] = field(default_factory=list)
    failed: bool = False


class SnapshotUpdater:
    """Extract-then-merge orchestration with silent degrade on extraction failure."""

    def __init__(self, extractor: StructuredExtractor) -> None:
        self._extractor = extractor

    async def refresh(
        self,
        history: Sequence[Mapping[str, Any]],
        schema: SchemaDescriptor,
        prior: Optional[Mapping[str, Any]] = None,
        session_id: str = "-",
    ) -> ExtractionOutcome:
        """Purpose: Run extraction and merge the candidate into the prior snapshot.
        Inputs/Outputs: Inputs are history, schema, prior snapshot and a log tag; output
            is an ExtractionOutcome whose snapshot is never worse than the prior.
        Side Effects / State: Logs extraction results; no state of its own.
        Dependencies: StructuredExtractor.extract and merge.
        Failure Modes: ExtractionFailure is swallowed into failed=True with the prior
            snapshot; ValidationError and cancellation propagate.
        If Removed: A transient extraction miss would interrupt the conversation.
        Testing Notes: A fake client returning garbage must leave the prior intact.
        """
        # Failed extraction is a no-op for state.
        prior_snapshot = dict(prior or {})
        try:
            candidate = await self._extractor.extract(history, schema, prior_snapshot)
        except ExtractionFailure as exc:
            logger.warning("session=%s schema=%s extraction_failed=%s", session_id, schema.name, exc)
            return ExtractionOutcome(snapshot=prior_snapshot, updated=False, failed=True)

        merged = merge(prior_snapshot, candidate, schema)
        changed = changed_fields(prior_snapshot, merged, schema.fields)
        logger.info("session=%s schema=%s changed=%s", session_id, schema.name, changed)
        logger.debug(
            "session=%s schema=%s snapshot=%s",
            session_id,
            schema.name,
            json.dumps(merged, ensure_ascii=True, default=str),
        )
        return ExtractionOutcome(snapshot=merged, updated=bool(changed), changed=changed)
