from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("chat_widget.storage")

Subscriber = Callable[[str, Optional[Dict[str, Any]]], None]


class KeyValueStore:
    """Durable key-value adapter: read, write, remove, and change subscriptions."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._subscribers: List[Subscriber] = []

    def read(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the stored value so callers cannot alias store state."""
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def write(self, key: str, value: Dict[str, Any]) -> None:
        """Purpose: Store a JSON-compatible value and notify subscribers.
        Inputs/Outputs: Inputs are key and value dict; no return value.
        Side Effects / State: Replaces the value, persists, and calls subscribers.
        Dependencies: _persist (no-op in memory), subscriber callbacks.
        Failure Modes: Persist IO errors propagate; subscriber errors are logged.
        If Removed: Session snapshots and generated content do not survive.
        Testing Notes: Subscribers receive (key, value) after every write.
        """
        # Keep a private copy, flush, then fan out the change.
        self._data[key] = copy.deepcopy(value)
        self._persist()
        self._notify(key, self.read(key))

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()
            self._notify(key, None)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, key: str, value: Optional[Dict[str, Any]]) -> None:
        for callback in list(self._subscribers):
            try:
                callback(key, value)
            except Exception:
                logger.exception("storage subscriber failed key=%s", key)

    def _persist(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    """Process-local store, used for tests and ephemeral sessions."""


class JsonFileStore(KeyValueStore):
    """Key-value store persisted as a single JSON document on disk."""

    def __init__(self, path: Path) -> None:
        """Purpose: Initialize the store and hydrate from disk if available.
        Inputs/Outputs: Input is the backing file path; no return value.
        Side Effects / State: Loads existing keys into memory.
        Dependencies: Calls _load.
        Failure Modes: JSON decode errors are logged and leave an empty store.
        If Removed: Sessions cannot persist across process restarts.
        Testing Notes: Write, re-open on the same path, and read back.
        """
        # Keep the backing file path and preload persisted keys.
        super().__init__()
        self._path = path
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted keys from the JSON file if it exists.
        Inputs/Outputs: Reads self._path; no return value.
        Side Effects / State: Populates the in-memory key map.
        Dependencies: json.loads and Path.read_text.
        Failure Modes: Missing file or JSONDecodeError results in an empty store.
        If Removed: Previously stored sessions are never restored on startup.
        Testing Notes: Corrupt JSON should not crash; valid JSON should hydrate keys.
        """
        # Read and decode persisted JSON if present.
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("storage file=%s is not valid JSON, starting empty", self._path)
            return
        if isinstance(data, dict):
            self._data = {key: value for key, value in data.items() if isinstance(value, dict)}

    def _persist(self) -> None:
        # Serialize all keys; IO errors are not caught here.
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
