"""Text prediction service: the boundary between UI surfaces and the model.

Persists user preferences, drives the ``LifecycleManager`` in response to
user actions, and rebroadcasts every status transition and download
progress update to all registered listeners (one per open UI surface).
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import BaseModel

from quill_local.errors import QuillError
from quill_local.models.manager import LifecycleManager, ModelStatus
from quill_local.settings import (
    ENABLED_KEY,
    GPU_ENABLED_KEY,
    MODEL_ID_KEY,
    MODEL_STATUS_KEY,
    SettingsStore,
)
from quill_local.types import ProgressMessage, StatusMessage

logger = logging.getLogger(__name__)

Listener = Callable[[BaseModel], None]


class TextPredictionService:
    """Wires a ``LifecycleManager`` to settings storage and UI listeners."""

    def __init__(self, manager: LifecycleManager, store: SettingsStore) -> None:
        self._manager = manager
        self._store = store
        self._listeners: list[Listener] = []
        self._unsubscribe: Callable[[], None] | None = None
        self._last_persisted_status: str | None = None

    @property
    def manager(self) -> LifecycleManager:
        return self._manager

    # -- Registration ---------------------------------------------------

    def register(self) -> None:
        """Subscribe to manager status changes."""
        if self._unsubscribe is None:
            self._unsubscribe = self._manager.on_status_change(self._on_status_change)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a UI listener; return a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # -- Startup --------------------------------------------------------

    async def initialize_on_startup(self) -> None:
        """Load the model eagerly if prediction was left enabled.

        Never raises; failures are logged and show up in the status.
        """
        self._manager.initialize()
        enabled = bool(self._store.get(ENABLED_KEY, False))
        gpu_enabled = bool(self._store.get(GPU_ENABLED_KEY, False))
        model_id = self._store.get(MODEL_ID_KEY)
        logger.info(
            "Initializing text prediction on startup (enabled=%s, gpu=%s)",
            enabled,
            gpu_enabled,
        )

        try:
            if model_id and model_id != self._manager.current_model_id:
                self._manager.set_current_model(model_id)

            if not enabled:
                logger.info("Text prediction disabled, skipping model load")
                return

            self._manager.set_gpu_enabled(gpu_enabled)

            if not self._manager.is_model_downloaded():
                logger.info("Text prediction enabled but model not downloaded")
                return

            logger.info("Auto-loading text prediction model on startup")
            await self._manager.load_model()
        except QuillError as exc:
            logger.error("Failed to initialize text prediction on startup: %s", exc)

        self._broadcast_status()

    # -- Queries --------------------------------------------------------

    def get_status(self) -> StatusMessage:
        snap = self._manager.snapshot()
        return StatusMessage(
            enabled=bool(self._store.get(ENABLED_KEY, False)),
            gpu_enabled=bool(self._store.get(GPU_ENABLED_KEY, False)),
            status=snap.status.value,
            model_id=snap.model_id,
            download_progress=snap.download_progress,
            error_message=snap.error_message,
        )

    # -- Commands -------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> StatusMessage:
        """Persist *enabled*; download and load, or unload, to match it."""
        self._store.set(ENABLED_KEY, enabled)
        logger.info("Text prediction enabled set to %s", enabled)

        try:
            if enabled:
                if not self._manager.is_model_downloaded():
                    logger.info("Model not downloaded, starting download")
                    path = await self._manager.download_model(self._broadcast_progress)
                    if path is None:
                        return self._broadcast_status()
                if not self._manager.is_model_loaded():
                    await self._manager.load_model()
            else:
                self._manager.unload_model()
        except QuillError as exc:
            logger.error("Failed to set text prediction enabled=%s: %s", enabled, exc)

        return self._broadcast_status()

    async def set_gpu_enabled(self, enabled: bool) -> StatusMessage:
        """Persist the GPU preference and reload a loaded model to apply it."""
        self._store.set(GPU_ENABLED_KEY, enabled)
        was_loaded = self._manager.is_model_loaded()
        logger.info(
            "GPU setting change requested (was=%s, new=%s, loaded=%s)",
            self._manager.gpu_enabled,
            enabled,
            was_loaded,
        )
        self._manager.set_gpu_enabled(enabled)

        if was_loaded:
            try:
                self._manager.unload_model()
                await self._manager.load_model()
            except QuillError as exc:
                logger.error("Model reload after GPU change failed: %s", exc)

        return self._broadcast_status()

    def set_model(self, model_id: str) -> StatusMessage:
        """Switch models.  Raises ``UnknownModelError`` for unknown ids."""
        self._manager.set_current_model(model_id)
        self._store.set(MODEL_ID_KEY, model_id)
        return self._broadcast_status()

    def cancel_download(self) -> None:
        self._manager.cancel_download()

    async def predict(self, partial_text: str) -> str | None:
        try:
            return await self._manager.predict(partial_text)
        except Exception:
            logger.exception("Prediction failed")
            return None

    # -- Broadcast ------------------------------------------------------

    def _on_status_change(self, status: ModelStatus, error_message: str | None) -> None:
        if status.value != self._last_persisted_status:
            self._store.set(MODEL_STATUS_KEY, status.value)
            self._last_persisted_status = status.value

        # A silent CPU fallback becomes the stored preference.
        if (
            status is ModelStatus.READY
            and not self._manager.gpu_enabled
            and self._store.get(GPU_ENABLED_KEY, False)
        ):
            self._store.set(GPU_ENABLED_KEY, False)

        self._broadcast_status()

    def _broadcast_progress(self, percent: int) -> None:
        self._broadcast(
            ProgressMessage(model_id=self._manager.current_model_id, percent=percent)
        )

    def _broadcast_status(self) -> StatusMessage:
        status = self.get_status()
        self._broadcast(status)
        return status

    def _broadcast(self, message: StatusMessage | ProgressMessage) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Error broadcasting %s to listener", message.type)
