from __future__ import annotations


class WidgetError(Exception):
    """Base class for errors raised by the widget backend."""


class ValidationError(WidgetError):
    """Client-caused request problem (missing or malformed fields)."""


class ExtractionFailure(WidgetError):
    """Structured extraction failed or produced output that does not fit the schema."""


class GenerationFailure(WidgetError):
    """Content generation (or the match check gating it) could not produce a result."""


class MatchCheckFailure(GenerationFailure):
    """The match scorer failed; callers must not read this as "no match"."""


class ModerationFailure(WidgetError):
    """The moderation call itself failed, so no verdict is available."""


class NetworkAbort(WidgetError):
    """A turn was superseded or its session discarded before completion."""
