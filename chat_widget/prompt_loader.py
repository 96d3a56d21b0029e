from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Mapping

logger = logging.getLogger("chat_widget.prompts")

_PLACEHOLDER_RE = re.compile(r"<<([A-Z0-9_]+)>>")


@lru_cache(maxsize=32)
def load_prompt(prompt_path: Path) -> str:
    """Purpose: Read a prompt template once per process.
    Inputs/Outputs: Input is the template path; output is its text without a BOM.
    Side Effects / State: Caches the decoded text per path.
    Dependencies: Path.read_bytes; used by render_prompt.
    Failure Modes: Missing files raise FileNotFoundError. Bytes that are not valid
        UTF-8 are dropped with a warning rather than failing the request.
    If Removed: Extraction, chat, scoring, moderation and generation prompts cannot
        be built.
    Testing Notes: A file starting with a BOM loads without it.
    """
    # utf-8-sig strips the BOM during decode.
    raw = prompt_path.read_bytes()
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.warning("prompt file=%s is not valid UTF-8, dropping bad bytes", prompt_path.name)
        return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


def render_prompt(prompt_path: Path, values: Mapping[str, str]) -> str:
    """Fill each ``<<KEY>>`` placeholder; unknown placeholders are left in place and logged."""
    prompt = load_prompt(prompt_path)
    for key, value in values.items():
        prompt = prompt.replace(f"<<{key}>>", value)
    leftover = sorted(set(_PLACEHOLDER_RE.findall(prompt)))
    if leftover:
        logger.warning("prompt file=%s unresolved placeholders=%s", prompt_path.name, leftover)
    return prompt
