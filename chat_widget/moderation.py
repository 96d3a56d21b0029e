from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from .errors import ModerationFailure
from .gemini_client import GeminiClient, user_contents
from .models import ModerationResult
from .prompt_loader import render_prompt
from .utils import safe_json_loads

logger = logging.getLogger("chat_widget.moderation")

CATEGORIES = ("harassment", "hate", "sexual", "violence", "self_harm", "illicit")


class Moderator:
    """Single-message safety classifier; stateless and history-free."""

    def __init__(self, gemini: GeminiClient, prompts_dir: Path, model: Optional[str] = None) -> None:
        """Purpose: Bind the classifier to its model client and prompt folder.
        Inputs/Outputs: Inputs are the Gemini client, prompts dir and optional model;
            no return value.
        Side Effects / State: None.
        Dependencies: GeminiClient, moderation.txt.
        Failure Modes: None at init.
        If Removed: Every message reaches extraction and the reply stream unchecked.
        Testing Notes: Queue a canned verdict on the fake client.
        """
        self._gemini = gemini
        self._prompts_dir = prompts_dir
        self._model = model

    async def moderate(self, text: str) -> ModerationResult:
        """Purpose: Decide whether one user message is safe to act on.
        Inputs/Outputs: Input is message text; output is ModerationResult with
            categories populated only when flagged.
        Side Effects / State: One temperature-0 model call.
        Dependencies: moderation.txt prompt, GeminiClient.generate_json.
        Failure Modes: Model errors or an unreadable verdict raise ModerationFailure;
            there is no default verdict.
        If Removed: Unsafe messages reach the reply stream and the extractors.
        Testing Notes: Canned {"flagged": false, ...} must yield categories=None.
        """
        # Classify deterministically; a missing verdict is a hard error.
        prompt = render_prompt(self._prompts_dir / "moderation.txt", {"MESSAGE": text})
        try:
            raw = await self._gemini.generate_json(user_contents(prompt), model=self._model, temperature=0.0)
        except Exception as exc:
            raise ModerationFailure(f"moderation call failed: {exc}") from exc

        parsed = safe_json_loads(raw)
        if parsed is None or not isinstance(parsed.get("flagged"), bool):
            raise ModerationFailure("moderation verdict could not be parsed")

        categories_raw = parsed.get("categories") or {}
        categories: Dict[str, bool] = {}
        if isinstance(categories_raw, dict):
            categories = {name: bool(categories_raw.get(name, False)) for name in CATEGORIES}
        flagged = parsed["flagged"] or any(categories.values())
        if flagged:
            logger.info("moderation flagged categories=%s", [name for name, hit in categories.items() if hit])
            return ModerationResult(flagged=True, categories=categories)
        return ModerationResult(flagged=False, categories=None)
