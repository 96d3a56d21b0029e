from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional, Sequence

from .gemini_client import GeminiClient, to_gemini_contents
from .merge import missing_required
from .prompt_loader import render_prompt
from .schemas import SchemaDescriptor
from .widget_config import WidgetConfig

logger = logging.getLogger("chat_widget.chat")


class ReplyStreamer:
    """Builds the assistant system context and streams reply tokens."""

    def __init__(
        self,
        gemini: GeminiClient,
        widget_config: WidgetConfig,
        prompts_dir: Path,
        model: Optional[str] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._gemini = gemini
        self._widget_config = widget_config
        self._prompts_dir = prompts_dir
        self._model = model
        self._today = today

    def build_system_prompt(self, schema: SchemaDescriptor, current_data: Mapping[str, Any]) -> str:
        """Purpose: Fill the chat system prompt with business context and search state.
        Inputs/Outputs: Inputs are the search schema and current snapshot; returns text.
        Side Effects / State: Reads the prompt template.
        Dependencies: chat_system.txt, missing_required.
        Failure Modes: Missing template raises FileNotFoundError.
        If Removed: Replies lose business context and never ask for missing fields.
        Testing Notes: The missing-required list and today's date appear in the prompt.
        """
        # Tell the assistant exactly which required fields are still open.
        today = self._today()
        missing = missing_required(current_data, schema)
        return render_prompt(
            self._prompts_dir / "chat_system.txt",
            {
                "BUSINESS_CONTEXT": self._widget_config.business_context,
                "USER_CONTEXT": self._widget_config.user_context,
                "INSTRUCTIONS": self._widget_config.instructions,
                "SEARCH_SCHEMA_JSON": json.dumps(schema.prompt_view(), ensure_ascii=False),
                "CURRENT_DATA_JSON": json.dumps(dict(current_data), ensure_ascii=False),
                "MISSING_REQUIRED": ", ".join(missing) if missing else "none",
                "TODAY_LONG": f"{today:%A}, {today.day} {today:%B %Y}",
            },
        )

    async def stream_reply(
        self,
        history: Sequence[Dict[str, Any]],
        schema: SchemaDescriptor,
        current_data: Mapping[str, Any],
    ) -> AsyncIterator[str]:
        """Yield reply chunks for the history, in the order the model produces them."""
        system_instruction = self.build_system_prompt(schema, current_data)
        contents, history_system = to_gemini_contents(list(history))
        if history_system:
            system_instruction = f"{system_instruction}\n\n{history_system}"
        chunks = 0
        async for chunk in self._gemini.stream_text(contents, system_instruction=system_instruction, model=self._model):
            chunks += 1
            yield chunk
        logger.info("reply stream complete chunks=%s", chunks)
