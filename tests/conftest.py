"""Shared fixtures and pytest configuration."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from quill_local.backends import CompletionOptions, EngineBinding
from quill_local.cancel import CancelToken
from quill_local.errors import InferenceCancelledError
from quill_local.models import LifecycleManager, get_model
from quill_local.models.registry import models_dir
from quill_local.server import create_app
from quill_local.service import TextPredictionService
from quill_local.settings import SettingsStore
from quill_local.types import DEFAULT_MODEL


# ---------------------------------------------------------------------------
# --slow flag
# ---------------------------------------------------------------------------


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="Run slow tests (requires a downloaded model and llama-cpp-python).",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--slow"):
        return
    skip_slow = pytest.mark.skip(reason="Use --slow to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ---------------------------------------------------------------------------
# Fake engine binding
# ---------------------------------------------------------------------------


class FakeContext:
    def __init__(self, binding: FakeBinding) -> None:
        self._binding = binding

    def complete(
        self, text: str, options: CompletionOptions, cancel: CancelToken
    ) -> str:
        b = self._binding
        b.complete_calls.append((text, options))
        if b.hang:
            # Never produces output on its own; only cancellation ends it.
            cancel.wait(10)
            b.cancel_observed = cancel.cancelled
            raise InferenceCancelledError("cancelled")
        if b.complete_error is not None:
            raise b.complete_error
        return b.reply

    def dispose(self) -> None:
        self._binding.released.append("context")
        if self._binding.fail_context_release:
            raise RuntimeError("context release failed")


class FakeWeights:
    def __init__(self, binding: FakeBinding) -> None:
        self._binding = binding

    def create_context(self) -> FakeContext:
        self._binding.constructed += 1
        return FakeContext(self._binding)

    def dispose(self) -> None:
        self._binding.released.append("model")


class FakeEngine:
    def __init__(self, binding: FakeBinding, gpu: bool) -> None:
        self._binding = binding
        self.gpu = gpu

    def load_model(self, path: Path) -> FakeWeights:
        b = self._binding
        if b.load_gate is not None:
            b.load_gate.wait(5)
        if self.gpu and b.fail_gpu:
            raise RuntimeError("gpu backend unavailable")
        if not self.gpu and b.fail_cpu:
            raise RuntimeError("cpu load failed: bad magic")
        return FakeWeights(b)

    def dispose(self) -> None:
        self._binding.released.append("engine")


class FakeBinding:
    """In-memory ``EngineBinding`` with failure switches and spies."""

    def __init__(self) -> None:
        self.fail_gpu = False
        self.fail_cpu = False
        self.fail_context_release = False
        self.hang = False
        self.reply = " world"
        self.complete_error: Exception | None = None
        self.load_gate: threading.Event | None = None

        self.engines_created: list[bool] = []
        self.constructed = 0
        self.released: list[str] = []
        self.complete_calls: list[tuple[str, CompletionOptions]] = []
        self.cancel_observed = False

    def create_engine(self, gpu: bool) -> FakeEngine:
        self.engines_created.append(gpu)
        return FakeEngine(self, gpu)


assert isinstance(FakeBinding(), EngineBinding)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class CountingTransport(httpx.MockTransport):
    """MockTransport that records how many requests it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def counted(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(counted)


def body_transport(body: bytes, status_code: int = 200) -> CountingTransport:
    return CountingTransport(lambda request: httpx.Response(status_code, content=body))


def stalled_transport(first_chunk: bytes = b"x" * 10, total: int = 1000) -> CountingTransport:
    """Sends one chunk, then hangs until the transfer is cancelled."""

    async def stream():
        yield first_chunk
        await asyncio.sleep(3600)
        yield b""

    return CountingTransport(
        lambda request: httpx.Response(
            200, headers={"content-length": str(total)}, content=stream()
        )
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def binding() -> FakeBinding:
    return FakeBinding()


@pytest.fixture()
def root(tmp_path: Path) -> Path:
    return tmp_path


def place_model(root: Path, model_id: str = DEFAULT_MODEL) -> Path:
    """Create a placeholder model file as if it had been downloaded."""
    path = models_dir(root) / get_model(model_id).file_name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture()
def model_file(root: Path) -> Path:
    return place_model(root)


@pytest.fixture()
def manager(binding: FakeBinding, root: Path):
    mgr = LifecycleManager(binding, root=root)
    yield mgr
    mgr.dispose()


@pytest.fixture()
def store(root: Path) -> SettingsStore:
    return SettingsStore(root / "settings.json")


@pytest.fixture()
def client(binding: FakeBinding, root: Path, store: SettingsStore):
    """Starlette TestClient wired to a service over the fake binding."""
    from starlette.testclient import TestClient

    manager = LifecycleManager(binding, root=root, transport=body_transport(b"G" * 64))
    app = create_app(TextPredictionService(manager, store))
    with TestClient(app) as c:
        yield c
