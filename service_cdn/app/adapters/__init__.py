"""
Adapters package for the CDN service.

Wraps the object storage backend. Adapters translate SDK failures into
``StorageError`` / ``StorageNotFoundError`` and never leak SDK types to
handlers.
"""

from .object_storage_client import (
    FileRecord,
    ObjectStorageClient,
    StorageError,
    StorageNotFoundError,
    StorageQuota,
    StoredObject,
)

__all__ = [
    "FileRecord",
    "ObjectStorageClient",
    "StorageError",
    "StorageNotFoundError",
    "StorageQuota",
    "StoredObject",
]
