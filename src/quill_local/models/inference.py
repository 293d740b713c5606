"""Bounded-time text completion against a ready inference context."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from quill_local.backends import CompletionOptions, InferenceContext
from quill_local.cancel import CancelToken
from quill_local.errors import InferenceCancelledError
from quill_local.types import DEFAULT_TIMEOUT_MS

logger = logging.getLogger(__name__)

# How long to wait for the engine to acknowledge a timeout cancellation.
_CANCEL_GRACE_S = 0.25


@dataclass(frozen=True)
class CompletionResult:
    """Outcome of one completion attempt.

    Attributes:
        suggestion: Trimmed continuation, or ``None`` if there is none.
        timed_out: The timer expired and the call was cancelled.
        error: Engine failure other than a timeout, if any.
    """

    suggestion: str | None = None
    timed_out: bool = False
    error: BaseException | None = None


def _discard_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class InferenceCoordinator:
    """Run single completions with a timeout independent of the engine's own."""

    def __init__(self, options: CompletionOptions | None = None) -> None:
        self._options = options or CompletionOptions()

    async def complete(
        self,
        context: InferenceContext,
        partial_text: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> str | None:
        """Return a suggestion for *partial_text*, or ``None``.

        Never raises for engine failures or timeouts; both are a normal
        "no suggestion" outcome.
        """
        return (await self.attempt(context, partial_text, timeout_ms)).suggestion

    async def attempt(
        self,
        context: InferenceContext,
        partial_text: str,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> CompletionResult:
        if not partial_text or not partial_text.strip():
            return CompletionResult()

        logger.debug(
            "Starting prediction (input %d chars, timeout %d ms)",
            len(partial_text),
            timeout_ms,
        )
        cancel = CancelToken()
        worker = asyncio.ensure_future(
            asyncio.to_thread(context.complete, partial_text, self._options, cancel)
        )
        try:
            done, _ = await asyncio.wait({worker}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            cancel.cancel()
            worker.add_done_callback(_discard_result)
            raise

        if not done:
            cancel.cancel()
            await asyncio.wait({worker}, timeout=_CANCEL_GRACE_S)
            worker.add_done_callback(_discard_result)
            logger.info("Prediction timed out after %d ms", timeout_ms)
            return CompletionResult(timed_out=True)

        try:
            raw = worker.result()
        except InferenceCancelledError:
            return CompletionResult(timed_out=True)
        except Exception as exc:
            logger.warning("Prediction failed", exc_info=True)
            return CompletionResult(error=exc)

        cleaned = raw.strip() if raw else ""
        logger.debug("Prediction complete (%d chars)", len(cleaned))
        return CompletionResult(suggestion=cleaned or None)
