"""Model registry: selectable models, lookup helpers, and storage paths."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from quill_local.errors import UnknownModelError

# ---------------------------------------------------------------------------
# Storage root
# ---------------------------------------------------------------------------

_HOME_ENV = "QUILL_LOCAL_HOME"
_DEFAULT_HOME = Path.home() / ".local" / "share" / "quill-local"

_HF_PREFIX = "hf:"
_HF_RESOLVE = "https://huggingface.co/{repo}/resolve/main/{file}"


def data_dir() -> Path:
    """Return the per-user application data directory (may not exist yet)."""
    override = os.environ.get(_HOME_ENV)
    return Path(override).expanduser() if override else _DEFAULT_HOME


def models_dir(root: Path | None = None) -> Path:
    """Return the ``models/`` folder under *root* (default: :func:`data_dir`)."""
    return (root if root is not None else data_dir()) / "models"


# ---------------------------------------------------------------------------
# Model entry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelConfig:
    """A single model in the registry."""

    id: str
    display_name: str
    uri: str  # "hf:<org>/<repo>/<file>" or a direct http(s) URL
    file_name: str  # Local file name under models/
    size_bytes: int  # Approximate, for display
    sha256: str | None = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

# Official Qwen3 GGUF builds; no authentication required.
# fmt: off
_MODELS: dict[str, ModelConfig] = {
    "qwen3-0.6b": ModelConfig(
        id="qwen3-0.6b",
        display_name="Qwen3 0.6B",
        uri="hf:Qwen/Qwen3-0.6B-GGUF/Qwen3-0.6B-Q8_0.gguf",
        file_name="hf_Qwen_Qwen3-0.6B-Q8_0.gguf",
        size_bytes=640_000_000,  # q8_0
    ),
    "qwen3-1.7b": ModelConfig(
        id="qwen3-1.7b",
        display_name="Qwen3 1.7B",
        uri="hf:Qwen/Qwen3-1.7B-GGUF/Qwen3-1.7B-Q8_0.gguf",
        file_name="hf_Qwen_Qwen3-1.7B-Q8_0.gguf",
        size_bytes=1_800_000_000,  # q8_0
    ),
    "qwen3-4b": ModelConfig(
        id="qwen3-4b",
        display_name="Qwen3 4B",
        uri="hf:Qwen/Qwen3-4B-GGUF/Qwen3-4B-Q4_K_M.gguf",
        file_name="hf_Qwen_Qwen3-4B-Q4_K_M.gguf",
        size_bytes=2_560_000_000,  # Q4_K_M
    ),
}
# fmt: on

# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def get_model(model_id: str) -> ModelConfig:
    """Look up a model by id. Raises ``UnknownModelError`` if not found."""
    try:
        return _MODELS[model_id]
    except KeyError:
        available = ", ".join(sorted(_MODELS))
        msg = f"Unknown model {model_id!r}. Available: {available}"
        raise UnknownModelError(msg) from None


def list_models() -> list[ModelConfig]:
    """Return every registered model, in registry order."""
    return list(_MODELS.values())


def model_path(model_id: str, root: Path | None = None) -> Path:
    """Return the local file path for a given model (may not exist yet)."""
    return models_dir(root) / get_model(model_id).file_name


def is_downloaded(model_id: str, root: Path | None = None) -> bool:
    """Check whether the model file exists locally."""
    return model_path(model_id, root).is_file()


def resolve_uri(uri: str) -> str:
    """Turn a registry URI into a fetchable URL.

    ``hf:Qwen/Qwen3-0.6B-GGUF/Qwen3-0.6B-Q8_0.gguf`` becomes
    ``https://huggingface.co/Qwen/Qwen3-0.6B-GGUF/resolve/main/Qwen3-0.6B-Q8_0.gguf``.
    Anything else is returned unchanged.
    """
    if not uri.startswith(_HF_PREFIX):
        return uri
    repo, _, file = uri[len(_HF_PREFIX):].rpartition("/")
    if not repo or not file:
        msg = f"Malformed Hugging Face URI {uri!r}"
        raise ValueError(msg)
    return _HF_RESOLVE.format(repo=repo, file=file)
