"""Tests for InferenceCoordinator."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeBinding, FakeContext
from quill_local.backends import CompletionOptions
from quill_local.models import InferenceCoordinator
from quill_local.types import DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE


@pytest.fixture()
def context(binding: FakeBinding) -> FakeContext:
    return FakeContext(binding)


class TestComplete:
    @pytest.mark.asyncio
    async def test_returns_trimmed_suggestion(self, binding, context):
        binding.reply = "  world \n"

        result = await InferenceCoordinator().complete(context, "hello")

        assert result == "world"
        assert binding.complete_calls == [
            ("hello", CompletionOptions(DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE))
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    async def test_blank_input_skips_engine(self, binding, context, text):
        assert await InferenceCoordinator().complete(context, text) is None
        assert binding.complete_calls == []

    @pytest.mark.asyncio
    async def test_blank_output_is_none(self, binding, context):
        binding.reply = "   "
        assert await InferenceCoordinator().complete(context, "hello") is None

    @pytest.mark.asyncio
    async def test_engine_error_is_none(self, binding, context):
        binding.complete_error = RuntimeError("kv cache full")

        result = await InferenceCoordinator().attempt(context, "hello")

        assert result.suggestion is None
        assert result.timed_out is False
        assert isinstance(result.error, RuntimeError)

    @pytest.mark.asyncio
    async def test_custom_options_passed_through(self, binding, context):
        options = CompletionOptions(max_tokens=3, temperature=0.1)
        await InferenceCoordinator(options).complete(context, "hello")
        assert binding.complete_calls[0][1] == options


class TestTimeout:
    @pytest.mark.asyncio
    async def test_hung_completion_is_cancelled(self, binding, context):
        binding.hang = True
        loop = asyncio.get_running_loop()

        start = loop.time()
        result = await InferenceCoordinator().attempt(context, "hello", timeout_ms=50)
        elapsed = loop.time() - start

        assert result.suggestion is None
        assert result.timed_out is True
        assert elapsed < 0.5
        await asyncio.sleep(0.05)
        assert binding.cancel_observed is True
