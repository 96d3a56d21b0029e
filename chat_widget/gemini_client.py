from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import google.generativeai as genai
from google.generativeai import types as genai_types

from .config import Settings

logger = logging.getLogger("chat_widget.gemini")

DEFAULT_SAFETY_SETTINGS = [
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_NONE,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_NONE,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_NONE,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_NONE,
    },
]

ROLE_MAP = {"user": "user", "assistant": "model"}


class GeminiClient:
    """Thin async wrapper around the Gemini SDK for JSON and streamed text calls."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Bind the SDK to the widget's API key and pick the default model.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Sets the SDK-wide API key; the extraction model becomes
            the default and is cached for calls without a system instruction.
        Dependencies: google.generativeai, Settings.
        Failure Modes: ValueError when GEMINI_API_KEY or the model name is empty; the
            key check happens before the SDK is touched.
        If Removed: Extraction, chat, scoring, moderation and generation go offline.
        Testing Notes: An empty key fails fast without any network access.
        """
        # Reject missing credentials before configuring the SDK.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._default_model = _normalize_model_name(settings.gemini_model_extraction)
        if not self._default_model:
            raise ValueError("Gemini model name is required")
        self._models[self._default_model] = genai.GenerativeModel(self._default_model)

    @property
    def default_model(self) -> str:
        return self._default_model

    def _resolve_model(self, model: Optional[str], system_instruction: Optional[str]) -> genai.GenerativeModel:
        # System instructions are bound at construction, so those models are not cached.
        model_name = _normalize_model_name(model) if model else self._default_model
        if not model_name:
            raise ValueError("Gemini model name is required")
        if system_instruction:
            return genai.GenerativeModel(model_name, system_instruction=system_instruction)
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        return self._models[model_name]

    async def generate_json(
        self,
        contents: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_output_tokens: int = 4096,
    ) -> str:
        """Purpose: Request a JSON-only response for structured contents.
        Inputs/Outputs: Input is Gemini contents plus optional system prompt/config;
            returns the raw response text (expected to be a JSON object).
        Side Effects / State: May add a model to the internal cache.
        Dependencies: Uses GenerativeModel.generate_content_async with a JSON mime type.
        Failure Modes: SDK/network errors propagate; blocked responses return "".
        If Removed: Extraction, scoring, moderation, and generation cannot run.
        Testing Notes: Callers are tested against a fake client with canned JSON.
        """
        # Force JSON output so callers can parse without prose stripping.
        gemini_model = self._resolve_model(model, system_instruction)
        response = await gemini_model.generate_content_async(
            contents,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
                "response_mime_type": "application/json",
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
        )
        return _response_text(response).strip()

    async def stream_text(
        self,
        contents: List[Dict[str, Any]],
        system_instruction: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_output_tokens: int = 2048,
    ) -> AsyncIterator[str]:
        """Purpose: Stream reply text chunks in arrival order.
        Inputs/Outputs: Input is Gemini contents plus optional system prompt; yields
            non-empty text chunks.
        Side Effects / State: Holds an open streaming call until exhausted or cancelled.
        Dependencies: Uses GenerativeModel.generate_content_async(stream=True).
        Failure Modes: SDK/network errors propagate to the consumer; cancellation of
            the consuming task aborts the underlying call.
        If Removed: Chat replies can no longer stream to the widget.
        Testing Notes: Consumers use a fake async generator of canned chunks.
        """
        # Open the stream and forward each chunk's text as it arrives.
        gemini_model = self._resolve_model(model, system_instruction)
        response = await gemini_model.generate_content_async(
            contents,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
            stream=True,
        )
        async for chunk in response:
            text = _response_text(chunk)
            if text:
                yield text


def to_gemini_contents(messages: Sequence[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], str]:
    """Purpose: Convert widget chat history into Gemini contents.
    Inputs/Outputs: Input is a list of {role, content}; output is (contents, system_text)
        where system-role messages are folded into system_text.
    Side Effects / State: None.
    Dependencies: Uses ROLE_MAP; called by extraction and chat streaming.
    Failure Modes: Unknown roles and empty contents are skipped.
    If Removed: History cannot be replayed to the model.
    Testing Notes: Verify assistant maps to "model" and system text is collected.
    """
    # Split system messages out and map roles for the Gemini API.
    contents: List[Dict[str, Any]] = []
    system_parts: List[str] = []
    for message in messages:
        role = str(message.get("role", ""))
        text = str(message.get("content") or "")
        if not text:
            continue
        if role == "system":
            system_parts.append(text)
            continue
        mapped = ROLE_MAP.get(role)
        if not mapped:
            continue
        contents.append({"role": mapped, "parts": [{"text": text}]})
    return contents, "\n\n".join(system_parts)


def user_contents(text: str) -> List[Dict[str, Any]]:
    """Wrap a single prompt string as one user turn."""
    return [{"role": "user", "parts": [{"text": text}]}]


def _response_text(response: object) -> str:
    # The SDK raises ValueError from .text when the candidate carries no parts.
    try:
        text = getattr(response, "text", None)
    except ValueError:
        logger.warning("gemini response had no text parts (likely blocked)")
        return ""
    return text or ""


def _normalize_model_name(name: Optional[str]) -> str:
    """Accept both "gemini-x" and the API's "models/gemini-x" spelling; "" when unset."""
    cleaned = (name or "").strip()
    prefix = "models/"
    return cleaned[len(prefix):] if cleaned.startswith(prefix) else cleaned
