"""Model registry and lifecycle management for quill-local."""

from quill_local.models.download import DownloadCoordinator
from quill_local.models.inference import InferenceCoordinator
from quill_local.models.load import LoadCoordinator, LoadedModel
from quill_local.models.manager import LifecycleManager, ModelStatus, StatusSnapshot
from quill_local.models.registry import (
    ModelConfig,
    data_dir,
    get_model,
    is_downloaded,
    list_models,
    model_path,
    models_dir,
)

__all__ = [
    "DownloadCoordinator",
    "InferenceCoordinator",
    "LifecycleManager",
    "LoadCoordinator",
    "LoadedModel",
    "ModelConfig",
    "ModelStatus",
    "StatusSnapshot",
    "data_dir",
    "get_model",
    "is_downloaded",
    "list_models",
    "model_path",
    "models_dir",
]
