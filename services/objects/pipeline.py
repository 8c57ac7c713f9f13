"""
Upload-verify-register pipeline for scanned objects.

Turns a captured photo into a catalog entry under users/{uid}/objects. The
catalog document is written only after the blob has been confirmed through a
metadata round-trip; any failure once an upload was attempted removes the
blob (best effort) and no document is written.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from google.cloud import firestore

from services import imaging
from services.auth.session import AuthSession
from services.catalog import firestore_client
from services.errors import NotFound, UploadFailed, WakeUpError
from services.logging import setup_logging
from services.objects import models
from services.removal.client import RemoveBgClient
from services.storage.blob_store import BlobStore

TAG = __name__
logger = setup_logging()

REMOVAL_INLINE = "inline"
REMOVAL_TRIGGER = "trigger"
REMOVAL_MODES = (REMOVAL_INLINE, REMOVAL_TRIGGER)


@dataclass
class PipelineSettings:
    removal_mode: str = REMOVAL_INLINE
    upload_max_attempts: int = 3
    backoff_base_seconds: float = 2
    settling_delay_seconds: float = 2
    verify_attempts: int = 1
    jpeg_quality: int = imaging.DEFAULT_JPEG_QUALITY

    def __post_init__(self):
        if self.removal_mode not in REMOVAL_MODES:
            raise ValueError(
                f"removal_mode must be one of {REMOVAL_MODES}, got {self.removal_mode!r}"
            )
        if self.upload_max_attempts < 1 or self.verify_attempts < 1:
            raise ValueError("upload_max_attempts and verify_attempts must be >= 1")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        section = config.get("objects", {})
        return cls(
            removal_mode=section.get("removal_mode", REMOVAL_INLINE),
            upload_max_attempts=int(section.get("upload_max_attempts", 3)),
            backoff_base_seconds=float(section.get("backoff_base_seconds", 2)),
            settling_delay_seconds=float(section.get("settling_delay_seconds", 2)),
            verify_attempts=int(section.get("verify_attempts", 1)),
            jpeg_quality=int(section.get("jpeg_quality", imaging.DEFAULT_JPEG_QUALITY)),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based): base, 2*base, 4*base, ..."""
        return self.backoff_base_seconds * (2 ** (attempt - 1))


class UploadPipeline:
    def __init__(
        self,
        blob_store: BlobStore,
        client: firestore.Client,
        removal_client: Optional[RemoveBgClient] = None,
        settings: Optional[PipelineSettings] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.settings = settings or PipelineSettings()
        if self.settings.removal_mode == REMOVAL_INLINE and removal_client is None:
            raise ValueError("Inline background removal requires a removal client")
        self._store = blob_store
        self._client = client
        self._removal = removal_client
        self._sleep = sleep
        self._id_factory = id_factory

    def _objects(self, user_id: str):
        return firestore_client.user_collection(
            self._client, user_id, firestore_client.OBJECTS_COLLECTION
        )

    def upload(
        self, auth: AuthSession, image_data: bytes, object_name: str
    ) -> models.ScannedObject:
        user_id = auth.require_user_id()
        jpeg_data = imaging.encode_jpeg(image_data, quality=self.settings.jpeg_quality)
        logger.bind(tag=TAG).info(f"Image converted to data: {len(jpeg_data)} bytes")

        name = (object_name or "").strip() or models.DEFAULT_OBJECT_NAME
        object_id = self._id_factory()
        safe_name = models.sanitize_name(name)

        inline = self.settings.removal_mode == REMOVAL_INLINE
        if inline:
            payload = self._removal.remove_background(jpeg_data)
            content_type, ext = "image/png", "png"
        else:
            payload = jpeg_data
            content_type, ext = "image/jpeg", "jpg"

        storage_path = models.build_storage_path(user_id, object_id, safe_name, ext)
        logger.bind(tag=TAG).info(f"Generated storage path: {storage_path}")
        metadata = {
            "uploadStartTime": f"{time.time():.3f}",
            "userId": user_id,
            "objectName": name,
            "objectId": object_id,
            "backgroundRemoved": "true" if inline else "false",
        }

        try:
            self._upload_with_retry(storage_path, payload, content_type, metadata)
            self._sleep(self.settings.settling_delay_seconds)
            image_url = self._verify(storage_path)

            scanned = models.ScannedObject(
                object_id=object_id,
                name=name,
                safe_name=safe_name,
                image_url=image_url,
                storage_path=storage_path,
                status=models.ObjectStatus.COMPLETED if inline else models.ObjectStatus.PENDING,
                processed=inline,
                background_removed=inline,
                date_scanned=datetime.now(timezone.utc),
            )
            document = scanned.to_document()
            document["timestamp"] = firestore.SERVER_TIMESTAMP
            self._objects(user_id).document(object_id).set(document)
        except WakeUpError as exc:
            logger.bind(tag=TAG).error(f"Error during upload process: {exc}")
            self._cleanup(storage_path)
            raise
        except Exception as exc:
            logger.bind(tag=TAG).error(f"Error during upload process: {exc}")
            self._cleanup(storage_path)
            raise UploadFailed(f"Failed to register {storage_path}: {exc}") from exc

        logger.bind(tag=TAG).info(
            f"Registered object {object_id} ({name}) for user {user_id} "
            f"status={scanned.status.value}"
        )
        return scanned

    def _upload_with_retry(
        self, path: str, data: bytes, content_type: str, metadata: Dict[str, str]
    ) -> None:
        attempts = self.settings.upload_max_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                logger.bind(tag=TAG).info(f"Upload attempt {attempt}/{attempts}")
                self._store.put(path, data, content_type=content_type, metadata=metadata)
                if not self._confirm_upload(path):
                    raise UploadFailed(f"{path} is missing or empty after upload")
                logger.bind(tag=TAG).info(f"Upload successful on attempt {attempt}")
                return
            except Exception as exc:
                last_error = exc
                logger.bind(tag=TAG).warning(f"Upload attempt {attempt} failed: {exc}")
                if attempt < attempts:
                    delay = self.settings.backoff_delay(attempt)
                    logger.bind(tag=TAG).info(f"Waiting {delay} seconds before retry...")
                    self._sleep(delay)
        raise UploadFailed(
            f"Upload of {path} failed after {attempts} attempts: {last_error}"
        ) from last_error

    def _confirm_upload(self, path: str) -> bool:
        try:
            return self._store.get_metadata(path).size > 0
        except NotFound:
            return False

    def _verify(self, path: str) -> str:
        attempts = self.settings.verify_attempts
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                url = self._store.get_download_url(path)
                metadata = self._store.get_metadata(path)
                if metadata.size <= 0:
                    raise UploadFailed(f"{path} reports size {metadata.size}")
                logger.bind(tag=TAG).info(
                    f"Verified {path}: size={metadata.size}, contentType={metadata.content_type}"
                )
                return url
            except Exception as exc:
                last_error = exc
                logger.bind(tag=TAG).warning(f"Verification attempt {attempt} failed: {exc}")
                if attempt < attempts:
                    self._sleep(self.settings.backoff_delay(attempt))
        raise UploadFailed(f"Could not verify upload of {path}: {last_error}") from last_error

    def _cleanup(self, path: str) -> None:
        try:
            self._store.delete(path)
            logger.bind(tag=TAG).info(f"Deleted {path} after failed upload")
        except NotFound:
            logger.bind(tag=TAG).debug(f"Nothing to clean up at {path}")
        except Exception as exc:
            logger.bind(tag=TAG).warning(f"Failed to delete {path} after error: {exc}")
