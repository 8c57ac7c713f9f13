from __future__ import annotations

import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol
from urllib.parse import quote

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import storage

from config.settings import get_gcp_credentials_path
from services.errors import NotFound
from services.logging import setup_logging
from services.storage.models import BlobMetadata

TAG = __name__
logger = setup_logging()

DOWNLOAD_TOKENS_KEY = "firebaseStorageDownloadTokens"
FIREBASE_DOWNLOAD_BASE = "https://firebasestorage.googleapis.com/v0/b"


class BlobStore(Protocol):
    """Operations the services need from object storage."""

    def put(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        ...

    def get_metadata(self, path: str) -> BlobMetadata:
        ...

    def get_download_url(self, path: str) -> str:
        ...

    def get_signed_url(self, path: str, expires: timedelta = timedelta(hours=1)) -> str:
        ...

    def delete(self, path: str) -> None:
        ...

    def list(self, prefix: str) -> List[BlobMetadata]:
        ...


def delete_prefix(store: BlobStore, prefix: str) -> int:
    """Delete every blob under prefix; storage has no folder delete."""
    deleted = 0
    for item in store.list(prefix):
        try:
            store.delete(item.path)
            deleted += 1
        except NotFound:
            continue
    return deleted


def firebase_download_url(bucket_name: str, path: str, token: str) -> str:
    return (
        f"{FIREBASE_DOWNLOAD_BASE}/{bucket_name}/o/{quote(path, safe='')}"
        f"?alt=media&token={token}"
    )


class GcsBlobStore:
    """Cloud Storage backed blob store using Firebase-style download tokens."""

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None):
        if not bucket_name:
            raise ValueError("A storage bucket name is required")
        self.bucket_name = bucket_name
        self._storage_client = client

    def _client(self) -> storage.Client:
        if self._storage_client is None:
            creds_path = get_gcp_credentials_path()
            if creds_path:
                os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", creds_path)
            self._storage_client = storage.Client()
        return self._storage_client

    def _bucket(self) -> storage.Bucket:
        return self._client().bucket(self.bucket_name)

    def _get_blob(self, path: str) -> storage.Blob:
        blob = self._bucket().get_blob(path)
        if blob is None:
            raise NotFound(f"gs://{self.bucket_name}/{path} does not exist")
        return blob

    def put(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        blob = self._bucket().blob(path)
        blob.metadata = {key: str(value) for key, value in (metadata or {}).items()}
        blob.upload_from_string(data, content_type=content_type)
        logger.bind(tag=TAG).debug(
            f"Uploaded gs://{self.bucket_name}/{path} ({len(data)} bytes, {content_type})"
        )

    def get_metadata(self, path: str) -> BlobMetadata:
        return _to_metadata(self._get_blob(path))

    def get_download_url(self, path: str) -> str:
        blob = self._get_blob(path)
        custom = dict(blob.metadata or {})
        token = (custom.get(DOWNLOAD_TOKENS_KEY) or "").split(",")[0].strip()
        if not token:
            token = str(uuid.uuid4())
            custom[DOWNLOAD_TOKENS_KEY] = token
            blob.metadata = custom
            blob.patch()
        return firebase_download_url(self.bucket_name, path, token)

    def get_signed_url(self, path: str, expires: timedelta = timedelta(hours=1)) -> str:
        blob = self._bucket().blob(path)
        return blob.generate_signed_url(version="v4", expiration=expires, method="GET")

    def delete(self, path: str) -> None:
        try:
            self._bucket().blob(path).delete()
        except gcloud_exceptions.NotFound as exc:
            raise NotFound(f"gs://{self.bucket_name}/{path} does not exist") from exc
        logger.bind(tag=TAG).debug(f"Deleted gs://{self.bucket_name}/{path}")

    def list(self, prefix: str) -> List[BlobMetadata]:
        blobs = self._client().list_blobs(self.bucket_name, prefix=prefix)
        return [_to_metadata(blob) for blob in blobs]


def _to_metadata(blob) -> BlobMetadata:
    custom = dict(blob.metadata or {})
    custom.pop(DOWNLOAD_TOKENS_KEY, None)
    return BlobMetadata(
        path=blob.name,
        size=int(blob.size or 0),
        content_type=blob.content_type,
        custom=custom,
        time_created=blob.time_created,
    )


class InMemoryBlobStore:
    """Test double and local-development store keeping blobs in a dict."""

    def __init__(self, bucket_name: str = "local-bucket"):
        self.bucket_name = bucket_name
        self.objects: Dict[str, Dict] = {}

    def put(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        self.objects[path] = {
            "data": bytes(data),
            "content_type": content_type,
            "metadata": {key: str(value) for key, value in (metadata or {}).items()},
            "time_created": datetime.now(timezone.utc),
        }

    def get_metadata(self, path: str) -> BlobMetadata:
        stored = self.objects.get(path)
        if stored is None:
            raise NotFound(path)
        return BlobMetadata(
            path=path,
            size=len(stored["data"]),
            content_type=stored["content_type"],
            custom=dict(stored["metadata"]),
            time_created=stored["time_created"],
        )

    def get_download_url(self, path: str) -> str:
        if path not in self.objects:
            raise NotFound(path)
        return firebase_download_url(self.bucket_name, path, "local")

    def get_signed_url(self, path: str, expires: timedelta = timedelta(hours=1)) -> str:
        return f"https://storage.test/{self.bucket_name}/{path}?expires={int(expires.total_seconds())}"

    def delete(self, path: str) -> None:
        if self.objects.pop(path, None) is None:
            raise NotFound(path)

    def list(self, prefix: str) -> List[BlobMetadata]:
        return [
            self.get_metadata(path)
            for path in sorted(self.objects)
            if path.startswith(prefix)
        ]
