"""
modelsync - keep model registries in step

Reconciles model artifacts between a public source registry, a local runtime
registry and an optional mirror, moving them as resumable, atomically
packaged bundles.

Example:
    >>> from modelsync import Config, SyncPipeline
    >>> config = Config.load()
    >>> async with SyncPipeline(config) as pipeline:
    ...     report = await pipeline.download(["face"])
"""

__version__ = "1.0.0"

from .config import Config, get_config
from .transfer import SyncPipeline

__all__ = [
    "__version__",
    "Config",
    "get_config",
    "SyncPipeline",
]
