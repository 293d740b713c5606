"""Inference engine binding interface for quill-local.

The lifecycle core never talks to a native runtime directly.  It drives
an ``EngineBinding`` through four steps: create an engine (with or
without GPU offload), load weights from a file, open an inference
context over those weights, and run completions on that context.  All
calls are blocking; coordinators run them in worker threads.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from quill_local.cancel import CancelToken
from quill_local.types import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE


@dataclass(frozen=True)
class CompletionOptions:
    """Generation limits for a single completion call."""

    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE


@runtime_checkable
class InferenceContext(Protocol):
    """An inference session bound to loaded weights."""

    def complete(
        self, text: str, options: CompletionOptions, cancel: CancelToken
    ) -> str: ...

    def dispose(self) -> None: ...


@runtime_checkable
class LoadedWeights(Protocol):
    """Model weights resident in memory."""

    def create_context(self) -> InferenceContext: ...

    def dispose(self) -> None: ...


@runtime_checkable
class Engine(Protocol):
    """An inference runtime instance."""

    gpu: bool

    def load_model(self, path: Path) -> LoadedWeights: ...

    def dispose(self) -> None: ...


@runtime_checkable
class EngineBinding(Protocol):
    """Factory for engines; the only entry point into a native runtime."""

    def create_engine(self, gpu: bool) -> Engine: ...
