"""Blob storage clients (Cloud Storage for Firebase and an in-memory double)."""

from services.storage.blob_store import (  # noqa: F401
    BlobStore,
    GcsBlobStore,
    InMemoryBlobStore,
)
from services.storage.models import BlobMetadata  # noqa: F401

__all__ = ["BlobStore", "GcsBlobStore", "InMemoryBlobStore", "BlobMetadata"]
