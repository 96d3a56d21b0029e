from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import KeyValueStore

logger = logging.getLogger("chat_widget.session")

CHAT_STORAGE_KEY = "chat-storage"


class ReplyStatus(str, Enum):
    STREAMING = "streaming"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SessionState:
    """Per-session conversation state persisted through a key-value adapter."""

    def __init__(
        self,
        store: KeyValueStore,
        storage_key: str = CHAT_STORAGE_KEY,
        search_config: Optional[Dict[str, Any]] = None,
        require_manual_search: bool = False,
    ) -> None:
        """Purpose: Initialize session state and hydrate it from the store.
        Inputs/Outputs: Inputs are the store, storage key and default search config /
            manual-search switch for new sessions; no return value.
        Side Effects / State: Reads the stored record if present.
        Dependencies: KeyValueStore.read.
        Failure Modes: Malformed stored fields fall back to empty defaults.
        If Removed: The conversation engine has nowhere to keep history or snapshots.
        Testing Notes: Re-creating a session on the same store restores messages.
        """
        # Stored values win over defaults so a reload resumes the same session.
        self._store = store
        self._storage_key = storage_key
        stored = store.read(storage_key) or {}
        self._messages: List[Dict[str, str]] = [
            {"role": str(msg.get("role")), "content": str(msg.get("content") or "")}
            for msg in stored.get("messages", [])
            if isinstance(msg, dict)
        ]
        self._search_data: Dict[str, Any] = dict(stored.get("searchData") or {})
        self._customer_intention: Dict[str, Any] = dict(stored.get("customerIntention") or {})
        self._is_search_data_updated = bool(stored.get("isSearchDataUpdated", False))
        self._search_config: Dict[str, Any] = dict(stored.get("searchConfig") or search_config or {})
        self._require_manual_search = bool(stored.get("requireManualSearch", require_manual_search))
        self.search_pending_confirmation = False

    @property
    def messages(self) -> List[Dict[str, str]]:
        return [dict(message) for message in self._messages]

    @property
    def search_data(self) -> Dict[str, Any]:
        return dict(self._search_data)

    @property
    def customer_intention(self) -> Dict[str, Any]:
        return dict(self._customer_intention)

    @property
    def is_search_data_updated(self) -> bool:
        return self._is_search_data_updated

    @property
    def search_config(self) -> Dict[str, Any]:
        return dict(self._search_config)

    @property
    def require_manual_search(self) -> bool:
        return self._require_manual_search

    def add_message(self, role: str, content: str) -> int:
        """Append a message and return its index."""
        self._messages.append({"role": role, "content": content})
        self.persist()
        return len(self._messages) - 1

    def open_reply(self) -> "ReplySlot":
        """Append an empty assistant placeholder and hand out its in-flight slot."""
        index = self.add_message("assistant", "")
        return ReplySlot(self, index)

    def set_search_data(self, snapshot: Dict[str, Any], updated: bool) -> None:
        self._search_data = dict(snapshot)
        self._is_search_data_updated = updated
        self.persist()

    def mark_search_consumed(self) -> None:
        self._is_search_data_updated = False
        self.search_pending_confirmation = False
        self.persist()

    def set_customer_intention(self, snapshot: Dict[str, Any]) -> None:
        self._customer_intention = dict(snapshot)
        self.persist()

    def reset(self) -> None:
        """Clear history and snapshots while keeping configuration."""
        self._messages = []
        self._search_data = {}
        self._customer_intention = {}
        self._is_search_data_updated = False
        self.search_pending_confirmation = False
        self.persist()

    def _set_content(self, index: int, content: str) -> None:
        self._messages[index]["content"] = content
        self.persist()

    def persist(self) -> None:
        self._store.write(
            self._storage_key,
            {
                "searchData": self._search_data,
                "customerIntention": self._customer_intention,
                "messages": self._messages,
                "isSearchDataUpdated": self._is_search_data_updated,
                "searchConfig": self._search_config,
                "requireManualSearch": self._require_manual_search,
            },
        )


class ReplySlot:
    """The single in-flight assistant message of a session.

    Content only grows while streaming. finalize/cancel/fail close the slot, after
    which appends are ignored.
    """

    def __init__(self, session: SessionState, index: int) -> None:
        self._session = session
        self.index = index
        self.content = ""
        self.status = ReplyStatus.STREAMING

    @property
    def is_open(self) -> bool:
        return self.status is ReplyStatus.STREAMING

    def append(self, chunk: str) -> bool:
        if not self.is_open:
            logger.debug("reply slot index=%s closed, dropping chunk", self.index)
            return False
        self.content += chunk
        self._session._set_content(self.index, self.content)
        return True

    def finalize(self) -> None:
        if self.is_open:
            self.status = ReplyStatus.DONE

    def cancel(self) -> None:
        if self.is_open:
            self.status = ReplyStatus.CANCELLED

    def fail(self, replacement: str) -> None:
        if self.is_open:
            self.status = ReplyStatus.FAILED
            self.content = replacement
            self._session._set_content(self.index, replacement)
