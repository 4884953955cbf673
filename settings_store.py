"""Persisted retrieval settings and dedup metrics.

Settings are immutable snapshots: readers grab the current object with
``snapshot()`` and keep using it for the whole call, while updates build a
new snapshot and swap the reference.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from errors import ConfigurationError, OperationInProgress
from locking import OperationLock
from models import (
    INDEX_BINDING_FIELDS,
    HydrateResult,
    OperationMetrics,
    RetrievalSettings,
    SyncResult,
)
from utils import now_iso

logger = logging.getLogger(__name__)


def _validation_message(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in error.errors()
    )


class SettingsStore:
    """JSON-file backed owner of the current ``RetrievalSettings`` snapshot."""

    def __init__(self, path: Path, operation_lock: OperationLock):
        self.path = path
        self.operation_lock = operation_lock
        self._write_lock = threading.RLock()
        self._settings, self._metrics = self._load()

    def _load(self) -> tuple[RetrievalSettings, OperationMetrics]:
        if not self.path.exists():
            logger.info("No settings at %s, using defaults", self.path)
            return RetrievalSettings(), OperationMetrics()
        try:
            data = json.loads(self.path.read_text())
            return (
                RetrievalSettings.model_validate(data.get("settings", {})),
                OperationMetrics.model_validate(data.get("metrics", {})),
            )
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Settings file {self.path} is not valid JSON: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"Settings file {self.path} is invalid: {_validation_message(e)}") from e

    def _persist(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "settings": self._settings.model_dump(mode="json"),
            "metrics": self._metrics.model_dump(mode="json"),
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2))
        os.replace(tmp_path, self.path)

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    def snapshot(self) -> RetrievalSettings:
        return self._settings

    def _apply(self, patch: dict[str, Any]) -> RetrievalSettings:
        with self._write_lock:
            merged = {**self._settings.model_dump(), **patch}
            try:
                updated = RetrievalSettings.model_validate(merged)
            except ValidationError as e:
                raise ConfigurationError(_validation_message(e)) from e
            self._settings = updated
            self._persist()
        return updated

    def _check_binding_allowed(self, fields: set[str]) -> None:
        if fields & INDEX_BINDING_FIELDS and not self.operation_lock.can_change_index_settings():
            raise OperationInProgress(self.operation_lock.current)

    def update(self, patch: dict[str, Any]) -> RetrievalSettings:
        """Apply a partial update; index binding is frozen while an operation runs."""
        unknown = set(patch) - set(RetrievalSettings.model_fields)
        if unknown:
            raise ConfigurationError(f"Unknown settings: {sorted(unknown)}")
        changed = {k for k, v in patch.items() if getattr(self._settings, k) != v}
        self._check_binding_allowed(changed)
        return self._apply(patch)

    def restore_defaults(self) -> RetrievalSettings:
        defaults = RetrievalSettings()
        changed = {k for k in RetrievalSettings.model_fields if getattr(self._settings, k) != getattr(defaults, k)}
        self._check_binding_allowed(changed)
        return self._apply(defaults.model_dump())

    def bind_index(self, index_name: str, namespace: str) -> RetrievalSettings:
        """Point settings at ``index_name``; called by the operation holding the lock."""
        return self._apply(
            {
                "active_index_name": index_name,
                "namespace": namespace,
                "is_enabled": True,
                "last_sync_timestamp": now_iso(),
            }
        )

    def ensure_unbindable(self, index_name: str) -> None:
        """Raise OperationInProgress if ``index_name`` is bound and the binding is frozen."""
        if self._settings.active_index_name == index_name:
            self._check_binding_allowed({"active_index_name"})

    def unbind_index(self, index_name: str) -> bool:
        """Clear the active binding if it points at ``index_name``."""
        if self._settings.active_index_name != index_name:
            return False
        self._check_binding_allowed({"active_index_name"})
        self._apply({"active_index_name": None, "is_enabled": False})
        return True

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    @property
    def metrics(self) -> OperationMetrics:
        return self._metrics

    def _record(self, processed: int, duplicates: int, **update: Any) -> None:
        with self._write_lock:
            self._metrics = self._metrics.model_copy(
                update={
                    **update,
                    "total_processed": self._metrics.total_processed + processed,
                    "total_duplicates": self._metrics.total_duplicates + duplicates,
                    "was_reset": False,
                }
            )
            self._persist()

    def record_sync(self, result: SyncResult) -> None:
        self._record(result.pushed_count + result.duplicate_count, result.duplicate_count, last_sync=result)

    def record_hydrate(self, result: HydrateResult) -> None:
        self._record(result.vectors_processed, result.duplicate_count, last_hydrate=result)

    def reset_metrics(self) -> OperationMetrics:
        """Zero the dedup counters; last results are kept for reference."""
        with self._write_lock:
            current = self._metrics
            self._metrics = OperationMetrics(
                last_sync=current.last_sync.model_copy(update={"duplicate_count": 0})
                if current.last_sync
                else None,
                last_hydrate=current.last_hydrate.model_copy(update={"duplicate_count": 0})
                if current.last_hydrate
                else None,
                total_processed=0,
                total_duplicates=0,
                was_reset=True,
                reset_timestamp=now_iso(),
            )
            self._persist()
        return self._metrics
