"""Lifecycle management for the on-device text prediction model.

``LifecycleManager`` owns the ``ModelStatus`` state machine and sequences
the download, load and inference coordinators.  It performs no I/O of its
own.  At most one download or load is in flight per manager; predictions
may overlap and each is bounded by its own timeout.

Status transitions::

    not-downloaded --download--> downloading --ok--> not-downloaded
                                             --fail--> error
                                             --cancel--> not-downloaded
    not-downloaded/error --load--> initializing --ok--> ready
                                                --fail--> error
    ready --unload / switch model--> not-downloaded
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from quill_local.backends import EngineBinding
from quill_local.cancel import CancelToken
from quill_local.errors import (
    AlreadyDownloadingError,
    AlreadyLoadingError,
    DownloadCancelledError,
    ModelNotDownloadedError,
)
from quill_local.models.download import DownloadCoordinator, ProgressCallback
from quill_local.models.inference import InferenceCoordinator
from quill_local.models.load import LoadCoordinator, LoadedModel
from quill_local.models.registry import ModelConfig, get_model, list_models
from quill_local.types import DEFAULT_MODEL, DEFAULT_TIMEOUT_MS

logger = logging.getLogger(__name__)


class ModelStatus(str, enum.Enum):
    """Lifecycle state of the managed model."""

    NOT_DOWNLOADED = "not-downloaded"
    DOWNLOADING = "downloading"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"


StatusCallback = Callable[[ModelStatus, str | None], None]


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    """Externally observable lifecycle state."""

    status: ModelStatus
    error_message: str | None
    download_progress: int
    gpu_enabled: bool
    model_id: str


class LifecycleManager:
    """Owns the model status, the live inference handle and its subscribers.

    Args:
        binding: Native inference capability used to build contexts.
        root: Application data directory; models live in ``root/models``.
        model_id: Initially selected registry id.
        transport: Optional httpx transport for the downloader.
    """

    def __init__(
        self,
        binding: EngineBinding,
        *,
        root: Path | None = None,
        model_id: str = DEFAULT_MODEL,
        transport: httpx.AsyncBaseTransport | None = None,
        downloader: DownloadCoordinator | None = None,
        loader: LoadCoordinator | None = None,
        inference: InferenceCoordinator | None = None,
    ) -> None:
        get_model(model_id)

        self._downloader = downloader or DownloadCoordinator(root, transport=transport)
        self._loader = loader or LoadCoordinator(binding)
        self._inference = inference or InferenceCoordinator()

        self._status = ModelStatus.NOT_DOWNLOADED
        self._error_message: str | None = None
        self._model_id = model_id
        self._gpu_enabled = False
        self._download_progress = 0
        self._model_path: Path | None = None
        self._loaded: LoadedModel | None = None
        self._download_cancel: CancelToken | None = None
        self._loading = False
        # Bumped whenever an in-flight load must not install its result.
        self._generation = 0
        self._subscribers: list[StatusCallback] = []

    # ------------------------------------------------------------------
    # Read-only state
    # ------------------------------------------------------------------

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def download_progress(self) -> int:
        return self._download_progress

    @property
    def gpu_enabled(self) -> bool:
        return self._gpu_enabled

    @property
    def current_model_id(self) -> str:
        return self._model_id

    @property
    def model_path(self) -> Path | None:
        """Resolved local file of the current model, once known."""
        return self._model_path

    def snapshot(self) -> StatusSnapshot:
        return StatusSnapshot(
            status=self._status,
            error_message=self._error_message,
            download_progress=self._download_progress,
            gpu_enabled=self._gpu_enabled,
            model_id=self._model_id,
        )

    def get_model_config(self, model_id: str | None = None) -> ModelConfig:
        return get_model(model_id or self._model_id)

    def available_models(self) -> list[ModelConfig]:
        return list_models()

    def is_model_downloaded(self, model_id: str | None = None) -> bool:
        config = get_model(model_id or self._model_id)
        return self._downloader.target_path(config).is_file()

    def is_model_loaded(self) -> bool:
        return self._status is ModelStatus.READY and self._loaded is not None

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Register *callback*; return a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for cb in list(self._subscribers):
            try:
                cb(self._status, self._error_message)
            except Exception:
                logger.exception("Status subscriber failed")

    def _set_status(self, status: ModelStatus, error_message: str | None = None) -> None:
        self._status = status
        self._error_message = error_message
        if error_message:
            logger.info("Status changed: %s (%s)", status.value, error_message)
        else:
            logger.info("Status changed: %s", status.value)
        self._notify()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Record the path of an already-present model without loading it."""
        config = get_model(self._model_id)
        path = self._downloader.target_path(config)
        if path.is_file():
            self._model_path = path
            logger.info("Model found on disk: %s", path)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download_model(
        self,
        on_progress: ProgressCallback | None = None,
        model_id: str | None = None,
    ) -> Path | None:
        """Download *model_id* (default: the current model).

        Returns the local path, or ``None`` if the download was cancelled.
        Does not load the model.  A download started while a model is
        ready leaves the status untouched.
        """
        if self._download_cancel is not None or self._status is ModelStatus.DOWNLOADING:
            raise AlreadyDownloadingError("Download already in progress")
        if self._loading:
            raise AlreadyLoadingError("Model is currently loading")

        model_id = model_id or self._model_id
        config = get_model(model_id)

        tracks_status = (
            self._status in (ModelStatus.NOT_DOWNLOADED, ModelStatus.ERROR)
            and not self._downloader.target_path(config).is_file()
        )

        token = CancelToken()
        self._download_cancel = token
        if tracks_status:
            self._download_progress = 0
            self._set_status(ModelStatus.DOWNLOADING)

        def report(percent: int) -> None:
            changed = percent != self._download_progress
            self._download_progress = percent
            if on_progress is not None:
                on_progress(percent)
            if changed and tracks_status and self._status is ModelStatus.DOWNLOADING:
                self._notify()

        try:
            path = await self._downloader.download(config, report, token)
        except (DownloadCancelledError, asyncio.CancelledError) as exc:
            self._download_progress = 0
            if tracks_status:
                self._set_status(ModelStatus.NOT_DOWNLOADED)
            if isinstance(exc, asyncio.CancelledError):
                raise
            return None
        except Exception as exc:
            logger.error("Model download failed for %s: %s", model_id, exc)
            if tracks_status:
                self._set_status(ModelStatus.ERROR, str(exc))
            raise
        finally:
            if self._download_cancel is token:
                self._download_cancel = None

        self._download_progress = 100
        if model_id == self._model_id:
            self._model_path = path
        if tracks_status:
            self._set_status(ModelStatus.NOT_DOWNLOADED)
        return path

    def cancel_download(self) -> None:
        if self._download_cancel is not None:
            logger.info("Cancelling download")
            self._download_cancel.cancel()

    # ------------------------------------------------------------------
    # Load / unload
    # ------------------------------------------------------------------

    async def load_model(self) -> None:
        """Load the current model into memory, falling back to CPU if needed.

        Raises ``AlreadyLoadingError``, ``AlreadyDownloadingError`` or
        ``ModelNotDownloadedError`` without touching status, and
        ``LoadFailedError`` after moving to ``error``.
        """
        if self._loading or self._status is ModelStatus.INITIALIZING:
            raise AlreadyLoadingError("Model is currently loading")
        if self._download_cancel is not None:
            raise AlreadyDownloadingError("Download already in progress")

        model_id = self._model_id
        path = self._downloader.target_path(get_model(model_id))
        if not path.is_file():
            raise ModelNotDownloadedError(
                f"Model {model_id!r} not downloaded. Call download_model() first."
            )

        current = self._loaded
        if current is not None and not current.matches(model_id, path, self._gpu_enabled):
            # Settings changed since the last load; rebuild from scratch.
            self._release_loaded()
            current = None

        if current is not None:
            self._loaded = await self._loader.load(
                model_id, path, self._gpu_enabled, current=current
            )
            return

        self._loading = True
        generation = self._generation
        logger.info("Loading model %s (gpu=%s)", model_id, self._gpu_enabled)
        self._set_status(ModelStatus.INITIALIZING)
        try:
            handle = await self._loader.load(model_id, path, self._gpu_enabled)
        except asyncio.CancelledError:
            if generation == self._generation:
                self._set_status(ModelStatus.NOT_DOWNLOADED)
            raise
        except Exception as exc:
            if generation == self._generation:
                self._set_status(ModelStatus.ERROR, str(exc))
            raise
        finally:
            self._loading = False

        if generation != self._generation:
            logger.info("Load of %s superseded, releasing it", model_id)
            handle.release()
            return

        if handle.gpu != self._gpu_enabled:
            logger.info("GPU unavailable, continuing on CPU")
            self._gpu_enabled = handle.gpu
        self._loaded = handle
        self._model_path = path
        self._set_status(ModelStatus.READY)

    def unload_model(self) -> None:
        """Release the live handle, if any.  Safe to call repeatedly."""
        self._generation += 1
        self._release_loaded()
        if self._status in (
            ModelStatus.READY,
            ModelStatus.INITIALIZING,
            ModelStatus.ERROR,
        ):
            self._set_status(ModelStatus.NOT_DOWNLOADED)

    def _release_loaded(self) -> None:
        if self._loaded is None:
            return
        logger.info("Unloading model %s", self._loaded.model_id)
        self._loaded.release()
        self._loaded = None

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def predict(
        self, partial_text: str, timeout_ms: int | None = None
    ) -> str | None:
        """Suggest a continuation of *partial_text*; ``None`` if not ready."""
        handle = self._loaded
        if self._status is not ModelStatus.READY or handle is None:
            logger.debug("Predict called but model not ready")
            return None
        return await self._inference.complete(
            handle.context,
            partial_text,
            DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms,
        )

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def set_current_model(self, model_id: str) -> None:
        """Select *model_id*, unloading a different model first.

        Does not download or load the new selection.
        """
        config = get_model(model_id)
        if model_id == self._model_id:
            return

        self.unload_model()
        self._model_id = model_id
        path = self._downloader.target_path(config)
        self._model_path = path if path.is_file() else None
        logger.info("Current model set to %s", model_id)

    def set_gpu_enabled(self, enabled: bool) -> None:
        """Change the GPU preference; applies on the next load."""
        if self._gpu_enabled == enabled:
            return
        self._gpu_enabled = enabled
        logger.info("GPU acceleration setting changed to %s", enabled)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Cancel any download, release the model, drop subscribers."""
        logger.info("Disposing lifecycle manager")
        self.cancel_download()
        self.unload_model()
        self._subscribers.clear()
