from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import MatchCheckFailure
from .gemini_client import GeminiClient, user_contents
from .prompt_loader import render_prompt
from .utils import safe_json_loads

logger = logging.getLogger("chat_widget.scoring")

MATCH_SCORE_THRESHOLD = 0.65


@dataclass(frozen=True)
class MatchResult:
    """Compatibility score for one (item, intention) pair."""
    score: float
    threshold: float
    explanation: str = ""

    @property
    def is_strong(self) -> bool:
        return self.score >= self.threshold


class MatchScorer:
    def __init__(
        self,
        gemini: GeminiClient,
        prompts_dir: Path,
        model: Optional[str] = None,
        threshold: float = MATCH_SCORE_THRESHOLD,
    ) -> None:
        """Purpose: Bind the scorer to its model client and strong-match threshold.
        Inputs/Outputs: Inputs are the Gemini client, prompts dir, optional model and a
            threshold in [0, 1]; no return value.
        Side Effects / State: Stores the threshold reported in every MatchResult.
        Dependencies: GeminiClient, match_score.txt.
        Failure Modes: ValueError when the threshold is outside [0, 1].
        If Removed: strongMatchOnly requests cannot be gated.
        Testing Notes: A score equal to the threshold counts as strong.
        """
        # Threshold comes from configuration; reject values a score could never meet.
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("match score threshold must be between 0 and 1")
        self._gemini = gemini
        self._prompts_dir = prompts_dir
        self._model = model
        self.threshold = threshold

    async def score(self, item: Mapping[str, Any], intention: Mapping[str, Any]) -> MatchResult:
        """Purpose: Score how well an item fits a customer intention snapshot.
        Inputs/Outputs: Inputs are item information and intention; output is a
            MatchResult with the score rounded to 4 decimals.
        Side Effects / State: One temperature-0 model call; nothing is cached.
        Dependencies: match_score.txt prompt, GeminiClient.generate_json.
        Failure Modes: Call errors, missing/non-numeric or out-of-range scores raise
            MatchCheckFailure. Never reported as a low score.
        If Removed: Strong-match gating of generated content is impossible.
        Testing Notes: {"score": 1.2} and {"score": "high"} must both raise.
        """
        # Pin sampling so repeated calls with identical input agree.
        prompt = render_prompt(
            self._prompts_dir / "match_score.txt",
            {
                "INTENTION_JSON": json.dumps(dict(intention), ensure_ascii=False, indent=2),
                "ITEM_JSON": json.dumps(dict(item), ensure_ascii=False, indent=2),
            },
        )
        try:
            raw = await self._gemini.generate_json(user_contents(prompt), model=self._model, temperature=0.0)
        except Exception as exc:
            raise MatchCheckFailure(f"match check call failed: {exc}") from exc

        parsed = safe_json_loads(raw)
        if parsed is None:
            raise MatchCheckFailure("match check output is not a JSON object")
        value = parsed.get("score")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
            raise MatchCheckFailure(f"match check returned a non-numeric score: {value!r}")
        if not 0.0 <= value <= 1.0:
            raise MatchCheckFailure(f"match check returned an out-of-range score: {value!r}")

        result = MatchResult(
            score=round(float(value), 4),
            threshold=self.threshold,
            explanation=str(parsed.get("explanation") or ""),
        )
        logger.info("match score=%.4f threshold=%.2f strong=%s", result.score, result.threshold, result.is_strong)
        return result
