from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore

from services.catalog import firestore_client
from services.errors import NotFound
from services.logging import setup_logging
from services.objects import models
from services.removal.client import RemoveBgClient
from services.storage.blob_store import BlobStore
from services.storage.models import BlobMetadata

TAG = __name__
logger = setup_logging()

RESULT_OK = "ok"
RESULT_IGNORED = "ignored"
RESULT_SKIPPED = "skipped"
RESULT_MISSING = "missing"

_IMAGE_EXT = re.compile(r"\.(jpg|jpeg|png)$", re.IGNORECASE)


def parse_object_path(name: str) -> Optional[Tuple[str, str]]:
    """Return (user_id, object_id) for users/{uid}/objects/{id}_{name}.{ext} uploads."""
    parts = (name or "").split("/")
    if len(parts) != 4 or parts[0] != "users" or parts[2] != "objects":
        return None
    user_id, filename = parts[1], parts[3]
    if not user_id or not filename:
        return None
    stem = filename.rsplit(".", 1)[0]
    if stem.endswith(models.PROCESSED_SUFFIX):
        return None
    object_id = stem.split("_", 1)[0]
    if not object_id:
        return None
    return user_id, object_id


def processed_path(name: str) -> str:
    if _IMAGE_EXT.search(name):
        return _IMAGE_EXT.sub(f"{models.PROCESSED_SUFFIX}.png", name)
    return f"{name}{models.PROCESSED_SUFFIX}.png"


class ObjectProcessor:
    """Background removal driven by storage finalize events.

    Work on an entry is claimed with a compare-and-set from `pending` to
    `processing`, so redelivered events and uploads whose background was
    already removed by the pipeline are not processed twice.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        client: firestore.Client,
        removal_client: RemoveBgClient,
        *,
        signed_url_ttl: timedelta = timedelta(hours=1),
        lookup_attempts: int = 3,
        lookup_delay_seconds: float = 2,
        settling_delay_seconds: float = 2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = blob_store
        self._client = client
        self._removal = removal_client
        self.signed_url_ttl = signed_url_ttl
        self.lookup_attempts = lookup_attempts
        self.lookup_delay_seconds = lookup_delay_seconds
        self.settling_delay_seconds = settling_delay_seconds
        self._sleep = sleep

    def process(self, name: str) -> str:
        parsed = parse_object_path(name)
        if not parsed:
            logger.bind(tag=TAG).info(f"Not an object image, skipping: {name}")
            return RESULT_IGNORED
        user_id, object_id = parsed

        metadata = self._wait_for_blob(name)
        if metadata is None:
            logger.bind(tag=TAG).error(f"File {name} does not exist after retries")
            return RESULT_MISSING
        if not (metadata.content_type or "").startswith("image/"):
            logger.bind(tag=TAG).error(
                f"File {name} is not an image ({metadata.content_type})"
            )
            return RESULT_IGNORED
        if metadata.custom.get("backgroundRemoved") == "true":
            logger.bind(tag=TAG).info(f"Background already removed for {name}")
            return RESULT_SKIPPED

        doc_ref = firestore_client.user_collection(
            self._client, user_id, firestore_client.OBJECTS_COLLECTION
        ).document(object_id)
        if not self._claim(doc_ref):
            return RESULT_SKIPPED

        try:
            self._sleep(self.settling_delay_seconds)
            signed_url = self._store.get_signed_url(name, self.signed_url_ttl)
            image_bytes = self._removal.remove_background_from_url(signed_url)

            output_path = processed_path(name)
            self._store.put(
                output_path,
                image_bytes,
                content_type="image/png",
                metadata={
                    "originalFile": name,
                    "processedAt": datetime.now(timezone.utc).isoformat(),
                    "backgroundRemoved": "true",
                },
            )
            processed_url = self._store.get_download_url(output_path)
            doc_ref.update(
                {
                    "processedImageUrl": processed_url,
                    "processedStoragePath": output_path,
                    "processed": True,
                    "status": models.ObjectStatus.COMPLETED.value,
                    "processedAt": firestore.SERVER_TIMESTAMP,
                }
            )
        except Exception as exc:
            logger.bind(tag=TAG).error(f"Error processing image {name}: {exc}")
            self._record_failure(doc_ref, exc)
            raise

        logger.bind(tag=TAG).info(f"Successfully processed image: {name} -> {output_path}")
        return RESULT_OK

    def _wait_for_blob(self, name: str) -> Optional[BlobMetadata]:
        for attempt in range(1, self.lookup_attempts + 1):
            try:
                return self._store.get_metadata(name)
            except NotFound:
                logger.bind(tag=TAG).info(
                    f"Checking file existence attempt {attempt}/{self.lookup_attempts}: not found"
                )
                if attempt < self.lookup_attempts:
                    self._sleep(self.lookup_delay_seconds)
        return None

    def _claim(self, doc_ref) -> bool:
        snapshot = None
        for attempt in range(1, self.lookup_attempts + 1):
            snapshot = doc_ref.get()
            if snapshot.exists:
                break
            if attempt < self.lookup_attempts:
                self._sleep(self.lookup_delay_seconds)
        if snapshot is None or not snapshot.exists:
            # Raising makes the platform redeliver the event once the entry lands.
            raise NotFound(f"Catalog entry {doc_ref.path} not registered yet")

        status = (snapshot.to_dict() or {}).get("status")
        if status != models.ObjectStatus.PENDING.value:
            logger.bind(tag=TAG).info(
                f"Entry {doc_ref.path} is {status!r}; not claiming"
            )
            return False
        try:
            doc_ref.update(
                {
                    "status": models.ObjectStatus.PROCESSING.value,
                    "processingStartedAt": firestore.SERVER_TIMESTAMP,
                },
                option=self._client.write_option(last_update_time=snapshot.update_time),
            )
        except gcloud_exceptions.FailedPrecondition:
            logger.bind(tag=TAG).info(f"Entry {doc_ref.path} claimed by another worker")
            return False
        return True

    def _record_failure(self, doc_ref, exc: Exception) -> None:
        try:
            doc_ref.update(
                {
                    "processed": False,
                    "status": models.ObjectStatus.ERROR.value,
                    "processingError": str(exc),
                    "processedAt": firestore.SERVER_TIMESTAMP,
                }
            )
        except Exception as update_exc:
            logger.bind(tag=TAG).error(
                f"Failed to update error state in Firestore: {update_exc}"
            )
