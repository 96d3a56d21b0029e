import json
import re
from typing import Any, Dict, List, Optional

import nh3

_DROPPED_CONTENT_TAGS = {"script", "style"}
_SPACE_RE = re.compile(r"\s+")


def strip_html(text: str) -> str:
    """Purpose: Remove HTML markup from user-supplied text before it reaches a model.
    Inputs/Outputs: Input is a raw string; output is trimmed plain text.
    Side Effects / State: None; pure function.
    Dependencies: nh3 with no allowed tags; used by request sanitization in app.py and
        by the conversation engine.
    Failure Modes: Returns an empty string for falsy input. Script/style bodies are
        dropped entirely; other tags are removed and their text kept. Text stays
        entity-escaped, so escaped markup never turns back into tags.
    If Removed: Markup and injected scripts flow into prompts and stored history.
    Testing Notes: "<b>hi</b><script>x()</script>" -> "hi"; "&lt;b&gt;" stays escaped.
    """
    # Parsed, not pattern-matched, so quoted ">" inside attributes cannot leak.
    if not text:
        return ""
    return nh3.clean(text, tags=set(), clean_content_tags=_DROPPED_CONTENT_TAGS).strip()


def sanitize_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Return a copy of chat messages with HTML stripped from every content field."""
    return [{**message, "content": strip_html(str(message.get("content") or ""))} for message in messages]


def value_key(value: Any) -> str:
    """Purpose: Build a comparison key for de-duplicating snapshot array values.
    Inputs/Outputs: Input is any JSON value; output is a stable string key.
    Side Effects / State: None; pure function.
    Dependencies: Used by the merge engine for union and retraction.
    Failure Modes: None; non-string values fall back to canonical JSON.
    If Removed: Array unions keep "Beach" and "beach" as separate values.
    Testing Notes: " Beach " and "beach" share a key; {"a": 1} is order-insensitive.
    """
    # Strings compare case-insensitively with collapsed whitespace.
    if isinstance(value, str):
        return "s:" + _SPACE_RE.sub(" ", value).strip().casefold()
    return "j:" + json.dumps(value, sort_keys=True, ensure_ascii=True)


def is_empty_value(value: Any) -> bool:
    """True for None, blank strings, and empty collections; False and 0 are values."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def extract_json_block(text: str) -> Optional[str]:
    """Purpose: Extract the outermost JSON object block from an arbitrary string.
    Inputs/Outputs: Input is a raw string; output is JSON substring or None.
    Side Effects / State: None; pure function.
    Dependencies: None beyond built-ins; used by safe_json_loads.
    Failure Modes: Returns None if braces are missing or inverted.
    If Removed: Model outputs wrapped in code fences or prose cannot be parsed.
    Testing Notes: Provide strings with extra text before/after JSON and ensure extraction.
    """
    # Locate the outermost JSON braces to extract a parseable block.
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start : end + 1]


def safe_json_loads(text: str) -> Optional[Dict[str, Any]]:
    """Parse a JSON object from model output; None when absent, malformed or not an object."""
    block = extract_json_block(text)
    if not block:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
