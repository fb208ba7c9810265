"""Asset upload pipeline: storage backends, chunk scheduling, progress display.

Public API
----------
.. autoclass:: StorageBackend
.. autoclass:: ArweaveStorage
.. autoclass:: IpfsStorage
.. autoclass:: S3Storage
.. autoclass:: StorageSettings
.. autoclass:: BatchScheduler
.. autoclass:: UploadProgressTracker
"""

from mintctl.upload.progress import UploadProgressTracker
from mintctl.upload.scheduler import BatchScheduler
from mintctl.upload.storage import (
    ArweaveStorage,
    IpfsStorage,
    S3Storage,
    StorageBackend,
    StorageSettings,
    build_storage,
    link_image,
    parse_manifest,
)

__all__ = [
    "ArweaveStorage",
    "BatchScheduler",
    "IpfsStorage",
    "S3Storage",
    "StorageBackend",
    "StorageSettings",
    "UploadProgressTracker",
    "build_storage",
    "link_image",
    "parse_manifest",
]
