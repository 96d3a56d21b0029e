from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .content import ContentGenerator, fingerprint
from .errors import GenerationFailure
from .models import ContentRequest, NoMatchRequired, StrongMatchFailure, StrongMatchSuccess
from .storage import KeyValueStore

logger = logging.getLogger("chat_widget.content_cache")

CONTENT_STORAGE_KEY = "generated-content-store"
INTENTION_SIGNATURE_KEYS = ("likes", "priorities", "dislikes")


class EntryStatus(str, Enum):
    GENERATING = "generating"
    GENERATED = "generated"
    ERROR = "error"


@dataclass(frozen=True)
class GeneratedContentEntry:
    status: EntryStatus
    content: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"status": self.status.value}
        if self.content is not None:
            data["content"] = self.content
        return data


def intention_signature(intention: Mapping[str, Any]) -> str:
    """Canonical JSON of the preference lists that should refresh generated copy."""
    return json.dumps(
        {key: intention.get(key) for key in INTENTION_SIGNATURE_KEYS}, sort_keys=True, ensure_ascii=True, default=str
    )


class ContentCache:
    """Fingerprint-keyed generated content entries, kept in a key-value store."""

    def __init__(self, store: KeyValueStore, storage_key: str = CONTENT_STORAGE_KEY) -> None:
        self._store = store
        self._storage_key = storage_key

    def _entries(self) -> Dict[str, Dict[str, str]]:
        stored = self._store.read(self._storage_key) or {}
        entries = stored.get("generatedContent")
        return dict(entries) if isinstance(entries, dict) else {}

    def _save(self, entries: Dict[str, Dict[str, str]]) -> None:
        self._store.write(self._storage_key, {"generatedContent": entries})

    def get(self, key: str) -> Optional[GeneratedContentEntry]:
        raw = self._entries().get(key)
        if not isinstance(raw, dict):
            return None
        try:
            status = EntryStatus(raw.get("status"))
        except ValueError:
            return None
        return GeneratedContentEntry(status=status, content=raw.get("content"))

    def start(self, key: str) -> bool:
        """Create a generating entry; False when one is already generating or terminal."""
        if self.get(key) is not None:
            return False
        self._put(key, GeneratedContentEntry(status=EntryStatus.GENERATING))
        return True

    def complete(self, key: str, content: str) -> None:
        self._transition(key, GeneratedContentEntry(status=EntryStatus.GENERATED, content=content))

    def fail(self, key: str) -> None:
        self._transition(key, GeneratedContentEntry(status=EntryStatus.ERROR))

    def remove(self, key: str) -> None:
        entries = self._entries()
        if entries.pop(key, None) is not None:
            self._save(entries)

    def _transition(self, key: str, entry: GeneratedContentEntry) -> None:
        # Only generating entries move; terminal entries change by removal alone.
        current = self.get(key)
        if current is None or current.status is not EntryStatus.GENERATING:
            raise ValueError(f"content entry {key[:12]} is not generating")
        self._put(key, entry)

    def _put(self, key: str, entry: GeneratedContentEntry) -> None:
        entries = self._entries()
        entries[key] = entry.to_dict()
        self._save(entries)


class ContentCoordinator:
    """Drives one content surface: cache lookup, generation, and status bookkeeping."""

    def __init__(self, generator: ContentGenerator, cache: ContentCache) -> None:
        self._generator = generator
        self._cache = cache
        self._signatures: Dict[str, str] = {}

    async def ensure(self, request: ContentRequest) -> Optional[str]:
        """Purpose: Return renderable content for a request, generating it at most once.
        Inputs/Outputs: Input is a ContentRequest; output is the content or None when
            nothing should be rendered.
        Side Effects / State: Creates and transitions the fingerprint's cache entry. An
            error entry is removed and a new generation cycle starts.
        Dependencies: ContentCache, ContentGenerator.generate, fingerprint.
        Failure Modes: GenerationFailure (including MatchCheckFailure) becomes an error
            entry and None. Cancellation removes the generating entry and propagates.
        If Removed: Each render would pay for a new generation call.
        Testing Notes: A second call after success returns cached content with no call;
            a call after an error generates again.
        """
        # Generated and generating entries are served as-is; errors get another cycle.
        key = fingerprint(request)
        entry = self._cache.get(key)
        if entry is not None:
            if entry.status is EntryStatus.GENERATED:
                return entry.content
            if entry.status is EntryStatus.GENERATING:
                return None
            logger.info("content key=%s name=%s retrying_after_error", key[:12], request.name)
            self._cache.remove(key)
        return await self._run(key, request)

    async def regenerate(self, request: ContentRequest) -> Optional[str]:
        """Discard any cached entry for the request and run a new generation cycle."""
        key = fingerprint(request)
        entry = self._cache.get(key)
        if entry is not None and entry.status is EntryStatus.GENERATING:
            return None
        self._cache.remove(key)
        return await self._run(key, request)

    async def follow_intention(self, request: ContentRequest) -> Optional[str]:
        """Purpose: Keep a surface's content in step with the customer's preferences.
        Inputs/Outputs: Input is a ContentRequest carrying the current intention; output
            is the content to render or None.
        Side Effects / State: Remembers the likes/priorities/dislikes signature per
            fingerprint. The first call behaves like ensure(); later calls regenerate
            only when the signature differs from the last one seen.
        Dependencies: intention_signature, ensure, regenerate.
        Failure Modes: Same as ensure().
        If Removed: Surfaces keep copy written for preferences the customer dropped.
        Testing Notes: A changed likes list triggers one extra generation; an unchanged
            one serves the cache.
        """
        # Only the preference lists count; objective or budget edits keep the copy.
        key = fingerprint(request)
        signature = intention_signature(request.customerIntention)
        previous = self._signatures.get(key)
        self._signatures[key] = signature
        if previous is None or previous == signature:
            return await self.ensure(request)
        logger.info("content key=%s name=%s intention_changed", key[:12], request.name)
        return await self.regenerate(request)

    async def _run(self, key: str, request: ContentRequest) -> Optional[str]:
        self._cache.start(key)
        intention = request.customerIntention
        if not intention.get("likes") and not intention.get("priorities"):
            logger.warning("content key=%s name=%s no usable intention, skipping", key[:12], request.name)
            self._cache.fail(key)
            return None

        try:
            result = await self._generator.generate(request)
        except GenerationFailure as exc:
            logger.error("content key=%s name=%s generation_failed=%s", key[:12], request.name, exc)
            self._cache.fail(key)
            return None
        except asyncio.CancelledError:
            self._cache.remove(key)
            raise

        if isinstance(result, (NoMatchRequired, StrongMatchSuccess)):
            self._cache.complete(key, result.content)
            return result.content
        if isinstance(result, StrongMatchFailure):
            self._cache.fail(key)
            return None
        raise TypeError(f"unhandled generation result {type(result).__name__}")
