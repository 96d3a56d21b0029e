from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Tuple

from .schemas import SchemaDescriptor, search_schema_from_config

logger = logging.getLogger("chat_widget.config")


@dataclass
class WidgetConfig:
    """Business context and search configuration for one widget deployment."""
    business_context: str
    user_context: str
    instructions: str
    search_data: Dict[str, Dict[str, Any]]
    require_manual_search: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    def search_schema(self) -> SchemaDescriptor:
        return search_schema_from_config(self.search_data)

    def search_config(self) -> Dict[str, Any]:
        return {"searchData": self.search_data}


@dataclass
class WidgetConfigMeta:
    """Metadata describing the config file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


class WidgetConfigLoader:
    def __init__(self, path: Path) -> None:
        """Purpose: Configure the loader with a widget config file path.
        Inputs/Outputs: Input is a Path to the JSON config; no return value.
        Side Effects / State: Stores the path for later load calls.
        Dependencies: None beyond Path usage.
        Failure Modes: None at init; load() handles read/parse errors.
        If Removed: Chat prompts have no business context or search schema.
        Testing Notes: Instantiate with a temp path and call load().
        """
        # Store the config file location for subsequent loads.
        self._path = path

    def load(self) -> Tuple[WidgetConfig, WidgetConfigMeta]:
        """Purpose: Load and validate the widget config file.
        Inputs/Outputs: No inputs; returns WidgetConfig and WidgetConfigMeta.
        Side Effects / State: Reads file contents and computes hash/mtime.
        Dependencies: json, hashlib, search_schema_from_config for validation.
        Failure Modes: JSON decode errors propagate; an invalid searchData block raises
            chat_widget.errors.ValidationError.
        If Removed: The app cannot start with business-specific configuration.
        Testing Notes: Load the bundled widget_config.json and check its search schema.
        """
        # Read bytes for hashing and parse JSON into the config dataclass.
        raw_bytes = self._path.read_bytes()
        sha256 = hashlib.sha256(raw_bytes).hexdigest()
        updated_at = datetime.fromtimestamp(self._path.stat().st_mtime).isoformat()

        data = json.loads(raw_bytes.decode("utf-8-sig"))
        if not isinstance(data, dict):
            raise ValueError(f"{self._path.name}: widget config must be a JSON object")
        config = WidgetConfig(
            business_context=str(data.get("businessContext") or ""),
            user_context=str(data.get("userContext") or ""),
            instructions=str(data.get("instructions") or ""),
            search_data=dict(data.get("searchData") or {}),
            require_manual_search=bool(data.get("requireManualSearch", False)),
            raw=data,
        )
        # Fail at load time rather than on the first extraction.
        schema = config.search_schema()
        meta = WidgetConfigMeta(file_name=self._path.name, updated_at=updated_at, sha256=sha256)
        logger.info(
            "widget_config file=%s updated_at=%s sha256=%s fields=%s required=%s",
            meta.file_name,
            meta.updated_at,
            meta.sha256[:12],
            list(schema.fields),
            schema.required_fields(),
        )
        return config, meta
