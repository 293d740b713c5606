"""Tests for the llama.cpp binding against a stand-in ``llama_cpp`` module."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from quill_local.backends import CompletionOptions, EngineBinding
from quill_local.backends import llama as llama_backend
from quill_local.cancel import CancelToken
from quill_local.errors import InferenceCancelledError


class _StoppingCriteriaList(list):
    def __call__(self, tokens, logits) -> bool:
        return any(criterion(tokens, logits) for criterion in self)


class _FakeLlama:
    """Mimics the parts of ``llama_cpp.Llama`` the binding uses."""

    def __init__(self, **kwargs) -> None:
        self.kwargs = kwargs
        self.pieces = [" quick", " brown", " fox"]
        self.before_token = lambda index: None
        self.generated = 0
        self.close_calls = 0
        self.reset_calls = 0

    def create_completion(self, text, *, max_tokens, temperature, stream, stopping_criteria):
        assert stream is True
        self.max_tokens = max_tokens
        self.temperature = temperature
        return self._generate(stopping_criteria)

    def _generate(self, stopping_criteria):
        for index, piece in enumerate(self.pieces):
            self.before_token(index)
            if stopping_criteria(None, None):
                return
            self.generated += 1
            yield {"choices": [{"text": piece}]}

    def close(self) -> None:
        self.close_calls += 1

    def reset(self) -> None:
        self.reset_calls += 1


@pytest.fixture()
def fake_llama_cpp(monkeypatch):
    module = SimpleNamespace(
        Llama=_FakeLlama,
        StoppingCriteriaList=_StoppingCriteriaList,
        llama_supports_gpu_offload=lambda: False,
    )
    monkeypatch.setattr(llama_backend, "llama_cpp", module)
    return module


class TestBinding:
    def test_satisfies_protocol(self, fake_llama_cpp):
        assert isinstance(llama_backend.LlamaBinding(), EngineBinding)

    def test_missing_library(self, monkeypatch):
        monkeypatch.setattr(llama_backend, "llama_cpp", None)
        with pytest.raises(ImportError, match="llama-cpp-python"):
            llama_backend.LlamaBinding()

    def test_gpu_without_offload_support(self, fake_llama_cpp):
        with pytest.raises(RuntimeError, match="no GPU offload"):
            llama_backend.LlamaBinding().create_engine(True)

    def test_cpu_engine_offloads_nothing(self, fake_llama_cpp, tmp_path):
        engine = llama_backend.LlamaBinding(n_threads=2).create_engine(False)
        weights = engine.load_model(tmp_path / "m.gguf")
        llm = weights.create_context()._llm
        assert llm.kwargs["n_gpu_layers"] == 0
        assert llm.kwargs["n_threads"] == 2


def _open_context(tmp_path):
    engine = llama_backend.LlamaEngine(False)
    return engine.load_model(tmp_path / "m.gguf").create_context()


class TestComplete:
    def test_joins_streamed_pieces(self, fake_llama_cpp, tmp_path):
        context = _open_context(tmp_path)
        result = context.complete("The", CompletionOptions(max_tokens=3), CancelToken())
        assert result == " quick brown fox"
        assert context._llm.max_tokens == 3

    def test_cancel_stops_before_next_token(self, fake_llama_cpp, tmp_path):
        context = _open_context(tmp_path)
        cancel = CancelToken()

        def cancel_at_second(index: int) -> None:
            if index == 1:
                cancel.cancel()

        context._llm.before_token = cancel_at_second

        with pytest.raises(InferenceCancelledError):
            context.complete("The", CompletionOptions(), cancel)
        assert context._llm.generated == 1

    def test_cancelled_before_start(self, fake_llama_cpp, tmp_path):
        context = _open_context(tmp_path)
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(InferenceCancelledError):
            context.complete("The", CompletionOptions(), cancel)
        assert context._llm.generated == 0


class TestDispose:
    def test_engine_closes_models_left_open(self, fake_llama_cpp, tmp_path):
        engine = llama_backend.LlamaEngine(False)
        first = engine.load_model(tmp_path / "a.gguf")
        second = engine.load_model(tmp_path / "b.gguf")

        first.dispose()
        engine.dispose()

        assert first.closed and second.closed
        assert first.create_context()._llm.close_calls == 1
        assert second.create_context()._llm.close_calls == 1

    def test_context_dispose_resets_state(self, fake_llama_cpp, tmp_path):
        context = _open_context(tmp_path)
        context.dispose()
        assert context._llm.reset_calls == 1
