"""Turn a downloaded model file into a ready inference context."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from quill_local.backends import Engine, EngineBinding, InferenceContext, LoadedWeights
from quill_local.errors import LoadFailedError

logger = logging.getLogger(__name__)


@dataclass
class LoadedModel:
    """Live handle to a loaded model; owned by exactly one manager.

    ``gpu`` is the effective setting used to build it, which may be
    ``False`` even when GPU offload was requested.
    """

    model_id: str
    path: Path
    gpu: bool
    engine: Engine
    weights: LoadedWeights
    context: InferenceContext

    def matches(self, model_id: str, path: Path, gpu: bool) -> bool:
        return self.model_id == model_id and self.path == path and self.gpu == gpu

    def release(self) -> None:
        release_resources(self.engine, self.weights, self.context)


def release_resources(
    engine: Engine | None,
    weights: LoadedWeights | None,
    context: InferenceContext | None,
) -> None:
    """Dispose context, then weights, then engine.

    A failing step is logged and the remaining steps still run.
    """
    for name, resource in (("context", context), ("model", weights), ("engine", engine)):
        if resource is None:
            continue
        try:
            resource.dispose()
        except Exception:
            logger.warning("Failed to release %s", name, exc_info=True)


def _release_orphan(worker: asyncio.Future) -> None:
    if worker.cancelled() or worker.exception() is not None:
        return
    worker.result().release()


class LoadCoordinator:
    """Build engine, weights and context, falling back from GPU to CPU.

    Args:
        binding: Native runtime capability used for every load attempt.
    """

    def __init__(self, binding: EngineBinding) -> None:
        self._binding = binding

    async def load(
        self,
        model_id: str,
        path: Path,
        gpu_requested: bool,
        current: LoadedModel | None = None,
    ) -> LoadedModel:
        """Return a live handle for *path*.

        If *current* was already built for the same model, file and GPU
        setting it is returned as-is.  A failed GPU attempt is retried once
        on CPU; when both fail, the CPU failure is reported.  Raises
        ``LoadFailedError``.
        """
        if current is not None and current.matches(model_id, path, gpu_requested):
            logger.info("Model %s already loaded", model_id)
            return current

        try:
            return await self._build(model_id, path, gpu_requested)
        except Exception as exc:
            if not gpu_requested:
                logger.error("Failed to load model %s: %s", model_id, exc)
                raise LoadFailedError(str(exc) or type(exc).__name__) from exc
            logger.warning("GPU load failed (%s), attempting CPU fallback", exc)

        try:
            return await self._build(model_id, path, False)
        except Exception as exc:
            logger.error("CPU fallback also failed for %s: %s", model_id, exc)
            raise LoadFailedError(str(exc) or type(exc).__name__) from exc

    async def _build(self, model_id: str, path: Path, gpu: bool) -> LoadedModel:
        worker = asyncio.ensure_future(
            asyncio.to_thread(self._construct, model_id, path, gpu)
        )
        try:
            return await asyncio.shield(worker)
        except asyncio.CancelledError:
            # The thread cannot be interrupted; release whatever it builds.
            logger.info("Load of %s cancelled, releasing it when done", model_id)
            worker.add_done_callback(_release_orphan)
            raise

    def _construct(self, model_id: str, path: Path, gpu: bool) -> LoadedModel:
        """Build all three native objects.  Runs in a worker thread."""
        engine: Engine | None = None
        weights: LoadedWeights | None = None
        context: InferenceContext | None = None
        try:
            engine = self._binding.create_engine(gpu)
            weights = engine.load_model(path)
            context = weights.create_context()
        except BaseException:
            release_resources(engine, weights, context)
            raise

        logger.info("Model %s loaded (gpu=%s)", model_id, gpu)
        return LoadedModel(
            model_id=model_id,
            path=path,
            gpu=gpu,
            engine=engine,
            weights=weights,
            context=context,
        )
