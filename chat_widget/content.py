from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import GenerationFailure
from .gemini_client import GeminiClient, user_contents
from .models import (
    ContentMetadata,
    ContentRequest,
    GatedContentMetadata,
    MatchMetadata,
    NoMatchRequired,
    StrongMatchFailure,
    StrongMatchSuccess,
)
from .prompt_loader import render_prompt
from .scoring import MatchScorer
from .utils import is_empty_value, safe_json_loads

logger = logging.getLogger("chat_widget.content")

EXCLUDED_INTENTION_KEYS = ("objective", "budget")

# Markdown emphasis, code, headings and list bullets.
_FORMATTING_RE = re.compile(r"\*\*|__|`|^\s*#{1,6}\s|^\s*[-*+]\s", re.MULTILINE)

GenerationOutcome = Union[NoMatchRequired, StrongMatchSuccess, StrongMatchFailure]


@dataclass
class GeneratedText:
    content: str
    explanation: str
    intention_used: List[str]


def filter_intention(intention: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop keys that do not shape tone or content, plus unset values."""
    return {
        key: value
        for key, value in intention.items()
        if key not in EXCLUDED_INTENTION_KEYS and not is_empty_value(value)
    }


def fingerprint(request: ContentRequest) -> str:
    """Purpose: Derive the cache key for a generation request.
    Inputs/Outputs: Input is a ContentRequest; output is a sha256 hex digest.
    Side Effects / State: None.
    Dependencies: json with sorted keys so dict ordering never changes the key.
    Failure Modes: None for JSON-serializable item information.
    If Removed: Generated content cannot be cached or invalidated per item.
    Testing Notes: Same item/name/instructions/bounds/tone/examples -> same key;
        intention and strongMatchOnly are ignored.
    """
    # Only fields that shape the rendered copy participate.
    payload = {
        "itemInformation": request.itemInformation,
        "name": request.name,
        "instructions": request.instructions,
        "minCharacters": request.minCharacters,
        "maxCharacters": request.maxCharacters,
        "tone": request.tone,
        "textExamples": list(request.textExamples),
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ContentGenerator:
    def __init__(
        self,
        gemini: GeminiClient,
        scorer: MatchScorer,
        prompts_dir: Path,
        model: Optional[str] = None,
        temperature: float = 0.7,
    ) -> None:
        """Purpose: Bind the generator to its model client and match scorer.
        Inputs/Outputs: Inputs are the Gemini client, scorer, prompt folder, optional
            model override and sampling temperature; no return value.
        Side Effects / State: None.
        Dependencies: GeminiClient, MatchScorer, content_generation.txt.
        Failure Modes: None at init; a missing template surfaces on first use.
        If Removed: /api/generate-custom-content has no implementation.
        Testing Notes: Build around the fake client and a real MatchScorer.
        """
        self._gemini = gemini
        self._scorer = scorer
        self._prompts_dir = prompts_dir
        self._model = model
        self._temperature = temperature

    async def generate(self, request: ContentRequest) -> GenerationOutcome:
        """Purpose: Produce the generation result for one content request.
        Inputs/Outputs: Input is a validated ContentRequest; output is one of the three
            tagged result models.
        Side Effects / State: Up to two model calls, strictly sequential (score, then
            generate); a weak score skips generation entirely.
        Dependencies: MatchScorer.score, _generate_text.
        Failure Modes: MatchCheckFailure from the scorer and GenerationFailure from
            generation propagate; no partial content is ever returned.
        If Removed: The content endpoint and the content cache have nothing to call.
        Testing Notes: Score 0.40 with strongMatchOnly returns strongMatchFailure and
            the generation prompt is never sent.
        """
        # Gate first; the generation call only happens after a strong score.
        if not request.strongMatchOnly:
            generated = await self._generate_text(request)
            return NoMatchRequired(
                content=generated.content,
                explanation=generated.explanation,
                metadata=ContentMetadata(
                    name=request.name,
                    customerIntentionUsed=generated.intention_used,
                    characterCount=len(generated.content),
                ),
            )

        match = await self._scorer.score(request.itemInformation, request.customerIntention)
        if not match.is_strong:
            logger.info("content name=%s scenario=strongMatchFailure score=%.4f", request.name, match.score)
            return StrongMatchFailure(
                metadata=MatchMetadata(
                    name=request.name,
                    matchScore=match.score,
                    matchScoreThreshold=match.threshold,
                )
            )

        generated = await self._generate_text(request)
        logger.info("content name=%s scenario=strongMatchSuccess score=%.4f", request.name, match.score)
        return StrongMatchSuccess(
            content=generated.content,
            explanation=generated.explanation,
            metadata=GatedContentMetadata(
                name=request.name,
                customerIntentionUsed=generated.intention_used,
                characterCount=len(generated.content),
                matchScore=match.score,
                matchScoreThreshold=match.threshold,
            ),
        )

    def build_prompt(self, request: ContentRequest) -> str:
        """Purpose: Render the generation prompt for one request.
        Inputs/Outputs: Input is the ContentRequest; output is the prompt text.
        Side Effects / State: Reads the cached template.
        Dependencies: filter_intention, render_prompt.
        Failure Modes: Missing template raises FileNotFoundError.
        If Removed: _generate_text has nothing to send.
        Testing Notes: objective/budget never appear; tone and numbered examples do.
        """
        # Excluded intention keys are dropped before serialization.
        intention = filter_intention(request.customerIntention)
        examples = ""
        if request.textExamples:
            lines = [f'  {index}. "{example}"' for index, example in enumerate(request.textExamples, start=1)]
            examples = "- Style Examples:\n" + "\n".join(lines) + "\n"
        return render_prompt(
            self._prompts_dir / "content_generation.txt",
            {
                "NAME": request.name,
                "INSTRUCTIONS": request.instructions,
                "TONE": request.tone,
                "MIN_CHARACTERS": str(request.minCharacters),
                "MAX_CHARACTERS": str(request.maxCharacters),
                "TEXT_EXAMPLES": examples,
                "ITEM_JSON": json.dumps(request.itemInformation, ensure_ascii=False, indent=2),
                "INTENTION_JSON": json.dumps(intention, ensure_ascii=False, indent=2),
            },
        )

    async def _generate_text(self, request: ContentRequest) -> GeneratedText:
        """Purpose: Run the generation call and enforce the output constraints.
        Inputs/Outputs: Input is the request; output is GeneratedText.
        Side Effects / State: One model call.
        Dependencies: build_prompt, GeminiClient.generate_json.
        Failure Modes: GenerationFailure on call errors, unparsable output, length
            outside [minCharacters, maxCharacters], or markdown formatting. Content is
            never truncated to fit.
        If Removed: No personalized copy can be produced.
        Testing Notes: A 25-character output with bounds 10-20 must raise.
        """
        # Strict parse: every failure is terminal for this call.
        prompt = self.build_prompt(request)
        try:
            raw = await self._gemini.generate_json(
                user_contents(prompt),
                model=self._model,
                temperature=self._temperature,
            )
        except Exception as exc:
            raise GenerationFailure(f"generation call failed: {exc}") from exc

        parsed = safe_json_loads(raw)
        if parsed is None:
            raise GenerationFailure("generation output is not a JSON object")
        content = parsed.get("content")
        if not isinstance(content, str) or not content.strip():
            raise GenerationFailure("generation output has no content")
        content = content.strip()
        length = len(content)
        if not request.minCharacters <= length <= request.maxCharacters:
            raise GenerationFailure(
                f"generated content length {length} outside [{request.minCharacters}, {request.maxCharacters}]"
            )
        if _FORMATTING_RE.search(content):
            raise GenerationFailure("generated content contains markdown formatting")

        metadata = parsed.get("metadata")
        if not isinstance(metadata, dict):
            raise GenerationFailure("generation output has no metadata")
        used_raw = metadata.get("customerIntentionUsed")
        if not isinstance(used_raw, list):
            raise GenerationFailure("generation metadata has no customerIntentionUsed list")
        available = filter_intention(request.customerIntention)
        intention_used: List[str] = []
        for key in used_raw:
            if isinstance(key, str) and key in available and key not in intention_used:
                intention_used.append(key)

        explanation = parsed.get("explanation")
        return GeneratedText(
            content=content,
            explanation=explanation if isinstance(explanation, str) else "",
            intention_used=intention_used,
        )
