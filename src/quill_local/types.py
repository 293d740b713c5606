"""Shared data models and defaults for quill-local."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from quill_local import __version__

# ---------------------------------------------------------------------------
# Default constants
# ---------------------------------------------------------------------------

DEFAULT_PORT = 2178
DEFAULT_HOST = "127.0.0.1"
DEFAULT_MODEL = "qwen3-0.6b"

# Tuned for the default model size; larger models may need more headroom.
DEFAULT_TIMEOUT_MS = 2000
DEFAULT_MAX_TOKENS = 10  # roughly three or four words
DEFAULT_TEMPERATURE = 0.7
DEFAULT_CONTEXT_SIZE = 2048

# ---------------------------------------------------------------------------
# Status broadcast (WS /events + GET /status)
# ---------------------------------------------------------------------------

Status = Literal["not-downloaded", "downloading", "initializing", "ready", "error"]


class StatusMessage(BaseModel):
    """Text prediction status as seen by UI surfaces."""

    type: Literal["status"] = "status"
    enabled: bool = False
    gpu_enabled: bool = False
    status: Status = "not-downloaded"
    model_id: str = DEFAULT_MODEL
    download_progress: int = 0
    error_message: str | None = None
    version: str = __version__


class ProgressMessage(BaseModel):
    """Download progress pushed over the WebSocket."""

    type: Literal["progress"] = "progress"
    model_id: str
    percent: int


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------


class ToggleRequest(BaseModel):
    enabled: bool


class ModelRequest(BaseModel):
    model_id: str


class PredictRequest(BaseModel):
    text: str


class PredictResponse(BaseModel):
    suggestion: str | None = None


class ModelInfo(BaseModel):
    """Registry entry as listed by GET /models."""

    id: str
    display_name: str
    size_bytes: int
    downloaded: bool
