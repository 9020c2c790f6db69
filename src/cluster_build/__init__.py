# Load .env vars from file before everything else
from dotenv import load_dotenv

load_dotenv()

from .logger import setup_logging  # noqa: E402

setup_logging()

# TYPE_CHECKING imports provide full IDE support (autocomplete, type hints)
# while __getattr__ defers loading the kubernetes client until it is needed
from typing import TYPE_CHECKING  # noqa: E402

if TYPE_CHECKING:
    from .build import BuildDispatcher, build_module, get_build_status
    from .config import (
        BuildMode,
        BuilderResources,
        ClusterType,
        Module,
        ProviderConfig,
        RegistryConfig,
        ResourceSpec,
    )
    from .models import BuildResult, BuildStatus


def __getattr__(name):
    """Lazily import core modules only when accessed."""
    if name in ("BuildDispatcher", "build_module", "get_build_status"):
        from .build import dispatcher

        return getattr(dispatcher, name)
    elif name in (
        "BuildMode",
        "BuilderResources",
        "ClusterType",
        "Module",
        "ProviderConfig",
        "RegistryConfig",
        "ResourceSpec",
    ):
        from . import config

        return getattr(config, name)
    elif name in ("BuildResult", "BuildStatus"):
        from . import models

        return getattr(models, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "BuildDispatcher",
    "build_module",
    "get_build_status",
    "BuildMode",
    "BuilderResources",
    "ClusterType",
    "Module",
    "ProviderConfig",
    "RegistryConfig",
    "ResourceSpec",
    "BuildResult",
    "BuildStatus",
]
