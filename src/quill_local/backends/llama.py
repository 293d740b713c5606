"""llama.cpp engine binding via ``llama-cpp-python``.

``llama_cpp.Llama`` owns weights and KV cache together, so the weights
object holds the ``Llama`` instance and each context is a thin session
over it that serializes completions and resets state on dispose.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from quill_local.backends import CompletionOptions
from quill_local.cancel import CancelToken
from quill_local.errors import InferenceCancelledError
from quill_local.types import DEFAULT_CONTEXT_SIZE

try:
    import llama_cpp
except ImportError:
    llama_cpp = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_ALL_LAYERS = -1


def _require_llama_cpp() -> None:
    if llama_cpp is None:
        msg = (
            "llama-cpp-python is not installed.  "
            "Install it with:  pip install quill-local[llama]"
        )
        raise ImportError(msg)


class LlamaContext:
    """Completion session over a loaded ``Llama`` instance."""

    def __init__(self, llm: llama_cpp.Llama) -> None:
        self._llm = llm
        # A single Llama instance is not safe for concurrent generation.
        self._lock = threading.Lock()

    def complete(
        self, text: str, options: CompletionOptions, cancel: CancelToken
    ) -> str:
        with self._lock:
            if cancel.cancelled:
                raise InferenceCancelledError("Completion cancelled before start")

            pieces: list[str] = []
            stream = self._llm.create_completion(
                text,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
                stream=True,
                # Evaluated before each token is sampled, so a cancelled
                # completion releases the lock within one token.
                stopping_criteria=llama_cpp.StoppingCriteriaList(
                    [lambda tokens, logits: cancel.cancelled]
                ),
            )
            try:
                for chunk in stream:
                    if cancel.cancelled:
                        raise InferenceCancelledError("Completion cancelled")
                    pieces.append(chunk["choices"][0]["text"])
            finally:
                stream.close()
            if cancel.cancelled:
                raise InferenceCancelledError("Completion cancelled")
            return "".join(pieces)

    def dispose(self) -> None:
        with self._lock:
            self._llm.reset()


class LlamaWeights:
    """GGUF weights loaded into a ``Llama`` instance."""

    def __init__(self, llm: llama_cpp.Llama) -> None:
        self._llm = llm
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def create_context(self) -> LlamaContext:
        return LlamaContext(self._llm)

    def dispose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._llm.close()


class LlamaEngine:
    """One load attempt (GPU offload or CPU only); owns the models it loads."""

    def __init__(
        self,
        gpu: bool,
        *,
        n_ctx: int = DEFAULT_CONTEXT_SIZE,
        n_threads: int | None = None,
    ) -> None:
        _require_llama_cpp()
        if gpu and not llama_cpp.llama_supports_gpu_offload():
            msg = "This llama-cpp-python build has no GPU offload support"
            raise RuntimeError(msg)
        self.gpu = gpu
        self._n_ctx = n_ctx
        self._n_threads = n_threads
        self._loaded: list[LlamaWeights] = []

    def load_model(self, path: Path) -> LlamaWeights:
        logger.debug("Loading %s (gpu=%s)", path, self.gpu)
        llm = llama_cpp.Llama(
            model_path=str(path),
            n_gpu_layers=_ALL_LAYERS if self.gpu else 0,
            n_ctx=self._n_ctx,
            n_threads=self._n_threads,
            verbose=False,
        )
        weights = LlamaWeights(llm)
        self._loaded.append(weights)
        return weights

    def dispose(self) -> None:
        """Close any model this engine loaded that is still open."""
        for weights in self._loaded:
            if not weights.closed:
                logger.debug("Closing model left open by its owner")
                weights.dispose()
        self._loaded.clear()


class LlamaBinding:
    """Production ``EngineBinding`` backed by llama.cpp."""

    def __init__(
        self, *, n_ctx: int = DEFAULT_CONTEXT_SIZE, n_threads: int | None = None
    ) -> None:
        _require_llama_cpp()
        self._n_ctx = n_ctx
        self._n_threads = n_threads

    def create_engine(self, gpu: bool) -> LlamaEngine:
        return LlamaEngine(gpu, n_ctx=self._n_ctx, n_threads=self._n_threads)
