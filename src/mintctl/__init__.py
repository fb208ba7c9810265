"""Candy machine provisioning: upload assets, register config lines, run lifecycle ops."""

__version__ = "0.1.0"

from mintctl.models import Item, ItemResult, PassReport, StorageKind, UploadConfig

__all__ = [
    "Item",
    "ItemResult",
    "PassReport",
    "StorageKind",
    "UploadConfig",
    "__version__",
]
