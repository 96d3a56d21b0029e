from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000",)


@dataclass(frozen=True)
class Settings:
    """Configuration container for models, widget config, and request limits."""
    gemini_api_key: str
    gemini_model_chat: str
    gemini_model_extraction: str
    widget_config_path: Path
    prompts_dir: Path
    allowed_origins: Tuple[str, ...]
    rate_limit: int
    rate_limit_window_seconds: int
    match_score_threshold: float
    require_manual_search: bool


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid RATE_LIMIT/RATE_LIMIT_WINDOW_SECONDS/MATCH_SCORE_THRESHOLD
        values raise ValueError.
    If Removed: App cannot configure models, CORS, or limits and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve widget config and prompt paths, then build Settings.
    config_path = os.getenv("WIDGET_CONFIG_PATH")
    if config_path:
        widget_config_file = Path(config_path)
    else:
        widget_config_file = (BASE_DIR / "widget_config.json").resolve()

    prompts_dir = (BASE_DIR / "prompts").resolve()

    origins_raw = os.getenv("ALLOWED_ORIGINS", "")
    if origins_raw.strip():
        allowed_origins = tuple(origin.strip() for origin in origins_raw.split(",") if origin.strip())
    else:
        allowed_origins = DEFAULT_ALLOWED_ORIGINS

    threshold = float(os.getenv("MATCH_SCORE_THRESHOLD", "0.65"))
    if not 0.0 <= threshold <= 1.0:
        raise ValueError("MATCH_SCORE_THRESHOLD must be between 0 and 1")

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model_chat=os.getenv("GEMINI_MODEL_CHAT")
        or os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        gemini_model_extraction=os.getenv("GEMINI_MODEL_EXTRACTION")
        or os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        widget_config_path=widget_config_file,
        prompts_dir=prompts_dir,
        allowed_origins=allowed_origins,
        rate_limit=int(os.getenv("RATE_LIMIT", "100")),
        rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60))),
        match_score_threshold=threshold,
        require_manual_search=os.getenv("REQUIRE_MANUAL_SEARCH", "false").strip().lower() in {"1", "true", "yes"},
    )
