"""
CaptureHub Filter Presets

Named, persisted filters scoped per agent or globally.
Presets live in an opaque string key-value store, one JSON array per scope.
"""

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import structlog

from capturehub.config import settings
from capturehub.filters.models import (
    FilterSpec,
    FilterValidationError,
    next_id,
    spec_from_json,
    spec_to_json,
)

logger = structlog.get_logger(__name__)

GLOBAL_SCOPE = "global"
GLOBAL_KEY = "savedNetworkFilters"
AGENT_KEY_PREFIX = "savedFilters_agent_"


# =============================================================================
# Key-Value Backends
# =============================================================================


class KeyValueStore(Protocol):
    """Minimal string key-value storage."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryStore:
    """In-process key-value store."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStore:
    """
    Key-value store persisted as a single JSON object on disk.

    Writes go to a temporary file that replaces the original, so a crash
    never leaves a half-written file behind.
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._lock = threading.RLock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error("preset_file_unreadable", path=str(self.path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)

            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise


# =============================================================================
# Presets
# =============================================================================


@dataclass(frozen=True)
class FilterPreset:
    """A saved filter. Never mutated; save-over replaces the whole entry."""

    id: int
    name: str
    scope: str
    spec: FilterSpec

    @property
    def is_raw(self) -> bool:
        return isinstance(self.spec, str)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored layout."""
        return {
            "id": self.id,
            "name": self.name,
            "scope": self.scope,
            "filters": spec_to_json(self.spec),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], scope: str) -> "FilterPreset":
        return cls(
            id=data["id"],
            name=data["name"],
            scope=data.get("scope", scope),
            spec=spec_from_json(data.get("filters", data.get("spec"))),
        )


def scope_key(scope: str) -> str:
    """Storage key for a scope: an agent id or "global"."""
    if scope == GLOBAL_SCOPE:
        return GLOBAL_KEY
    return f"{AGENT_KEY_PREFIX}{scope}"


class FilterPresetStore:
    """
    Saved filter presets.

    Features:
    - Per-agent and global scopes
    - Agent scopes read the global presets until they have their own
    - Replace-by-id on save-over
    """

    def __init__(self, store: KeyValueStore | None = None):
        """
        Initialize the preset store.

        Args:
            store: Key-value backend (defaults to the JSON file from settings)
        """
        self.store = store if store is not None else JsonFileStore(settings.presets_path)

    def _read(self, scope: str) -> list[FilterPreset]:
        key = scope_key(scope)
        raw = self.store.get(key)
        if not raw:
            return []

        try:
            items = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("presets_corrupt", key=key, error=str(e))
            return []

        presets = []
        for item in items if isinstance(items, list) else []:
            try:
                presets.append(FilterPreset.from_dict(item, scope))
            except (KeyError, TypeError, FilterValidationError) as e:
                logger.warning("preset_skipped", key=key, error=str(e))
        return presets

    def _write(self, scope: str, presets: list[FilterPreset]) -> None:
        payload = json.dumps([p.to_dict() for p in presets])
        self.store.set(scope_key(scope), payload)

    def list(self, scope: str) -> list[FilterPreset]:
        """
        List presets visible in a scope.

        An agent scope without presets of its own shows the global ones.
        The fallback is all or nothing: once an agent saves its first
        preset, its list holds only its own presets and the global ones
        are no longer shown there. They stay listed under ``global``.
        """
        presets = self._read(scope)
        if not presets and scope != GLOBAL_SCOPE:
            return self._read(GLOBAL_SCOPE)
        return presets

    def get(self, scope: str, preset_id: int) -> FilterPreset | None:
        """Find a visible preset by id."""
        for preset in self.list(scope):
            if preset.id == preset_id:
                return preset
        return None

    def save(
        self,
        scope: str,
        name: str,
        spec: FilterSpec,
        preset_id: int | None = None,
    ) -> int:
        """
        Save a preset into a scope's own storage.

        Args:
            scope: Agent id or "global"
            name: Display name, must not be blank
            spec: Structured expression or raw BPF string
            preset_id: Replace the preset with this id instead of appending

        Returns:
            The preset id
        """
        name = (name or "").strip()
        if not name:
            raise FilterValidationError("Preset name is required")

        presets = self._read(scope)
        preset = FilterPreset(
            id=preset_id if preset_id is not None else next_id(),
            name=name,
            scope=scope,
            spec=spec,
        )

        for index, existing in enumerate(presets):
            if existing.id == preset.id:
                presets[index] = preset
                break
        else:
            presets.append(preset)

        self._write(scope, presets)
        logger.info("preset_saved", scope=scope, preset_id=preset.id, name=name)
        return preset.id

    def delete(self, scope: str, preset_id: int) -> bool:
        """
        Delete a preset from a scope's own storage.

        Global presets seen through an agent scope are left untouched.
        """
        presets = self._read(scope)
        remaining = [p for p in presets if p.id != preset_id]
        if len(remaining) == len(presets):
            return False

        self._write(scope, remaining)
        logger.info("preset_deleted", scope=scope, preset_id=preset_id)
        return True


# Global store instance
_store_instance: FilterPresetStore | None = None


def get_preset_store() -> FilterPresetStore:
    """Get or create the global preset store."""
    global _store_instance
    if _store_instance is None:
        _store_instance = FilterPresetStore()
    return _store_instance
