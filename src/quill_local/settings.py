"""Durable key/value settings stored as a JSON file."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from quill_local.models.registry import data_dir

logger = logging.getLogger(__name__)

# Keys written by the text prediction service.
ENABLED_KEY = "textPredictionEnabled"
GPU_ENABLED_KEY = "textPredictionGpuEnabled"
MODEL_STATUS_KEY = "textPredictionModelStatus"
MODEL_ID_KEY = "textPredictionModelId"


class SettingsStore:
    """JSON-backed settings with atomic read/merge/write.

    Every ``set`` re-reads the file, merges the new value and replaces
    the file through a temporary sibling, so concurrent writers never
    leave a truncated file behind.

    Args:
        path: Settings file (default: ``<data_dir>/settings.json``).
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or data_dir() / "settings.json"
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def all(self) -> dict[str, Any]:
        return self._read()

    def _read(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            with open(self._path, encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Corrupt settings file %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring non-object settings file %s", self._path)
            return {}
        return raw

    def _write(self, data: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path)
