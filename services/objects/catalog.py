from __future__ import annotations

from typing import Callable, List, Optional, Set

from google.cloud import firestore

from services.auth.session import AuthSession
from services.catalog import firestore_client
from services.catalog.subscription import SnapshotEvent, Subscription
from services.errors import NotFound, SchemaError
from services.logging import setup_logging
from services.objects import models
from services.storage.blob_store import BlobStore
from services.storage.models import BlobMetadata

TAG = __name__
logger = setup_logging()


class ObjectCatalog:
    """Read side of the scanned-object gallery.

    The Firestore collection is the source of truth. Reading it drops (and
    deletes) entries whose blob no longer exists, so the gallery heals itself
    after blobs are removed out of band.
    """

    def __init__(self, blob_store: BlobStore, client: firestore.Client):
        self._store = blob_store
        self._client = client

    def _objects(self, user_id: str):
        return firestore_client.user_collection(
            self._client, user_id, firestore_client.OBJECTS_COLLECTION
        )

    def _query(self, user_id: str):
        return self._objects(user_id).order_by(
            "timestamp", direction=firestore.Query.DESCENDING
        )

    def list_objects(self, auth: AuthSession) -> List[models.ScannedObject]:
        user_id = auth.require_user_id()
        docs = list(self._query(user_id).stream())
        return self._sweep(user_id, docs)

    def subscribe(
        self,
        auth: AuthSession,
        handler: Callable[[SnapshotEvent], None],
    ) -> Subscription:
        user_id = auth.require_user_id()
        subscription = Subscription(
            self._query(user_id),
            lambda docs: self._sweep(user_id, docs),
            handler,
            name=f"users/{user_id}/objects",
        )
        return subscription.start()

    def get_object(self, auth: AuthSession, object_id: str) -> models.ScannedObject:
        user_id = auth.require_user_id()
        snapshot = self._objects(user_id).document(object_id).get()
        if not snapshot.exists:
            raise NotFound(f"Object {object_id} not found")
        return models.ScannedObject.from_document(snapshot.id, snapshot.to_dict() or {})

    def delete_object(self, auth: AuthSession, object_id: str) -> None:
        """Delete an entry and its blobs.

        Works from the raw document so entries that fail validation (and are
        hidden from reads) can still be removed.
        """
        user_id = auth.require_user_id()
        ref = self._objects(user_id).document(object_id)
        snapshot = ref.get()
        if not snapshot.exists:
            raise NotFound(f"Object {object_id} not found")
        data = snapshot.to_dict() or {}
        label = data.get("name") or object_id
        logger.bind(tag=TAG).info(f"Starting deletion of object: {label}")
        for key in ("storagePath", "processedStoragePath"):
            path = data.get(key)
            if not isinstance(path, str) or not path:
                continue
            try:
                self._store.delete(path)
            except NotFound:
                logger.bind(tag=TAG).debug(f"Blob {path} already gone")
        ref.delete()
        logger.bind(tag=TAG).info(f"Successfully deleted object: {label}")

    def _sweep(self, user_id: str, docs) -> List[models.ScannedObject]:
        live: List[models.ScannedObject] = []
        for doc in docs:
            try:
                scanned = models.ScannedObject.from_document(doc.id, doc.to_dict() or {})
            except SchemaError as exc:
                logger.bind(tag=TAG).warning(f"Skipping malformed object entry: {exc}")
                continue
            try:
                scanned.image_url = self._store.get_download_url(scanned.storage_path)
            except NotFound:
                logger.bind(tag=TAG).warning(
                    f"Blob {scanned.storage_path} missing; deleting orphan entry {doc.id}"
                )
                self._delete_orphan_entry(user_id, doc.id)
                continue
            live.append(scanned)
        return live

    def _delete_orphan_entry(self, user_id: str, object_id: str) -> None:
        try:
            self._objects(user_id).document(object_id).delete()
        except Exception as exc:
            # The entry is still excluded; the next read tries again.
            logger.bind(tag=TAG).warning(
                f"Failed to delete orphan entry {object_id}: {exc}"
            )

    def list_blobs(self, auth: AuthSession) -> List[models.ScannedObject]:
        """Build the gallery from a storage listing alone (no catalog reads)."""
        user_id = auth.require_user_id()
        results: List[models.ScannedObject] = []
        for item in self._store.list(models.objects_prefix(user_id)):
            if _is_processed_variant(item):
                continue
            object_id, display_name = models.parse_storage_name(item.name)
            try:
                url = self._store.get_download_url(item.path)
            except NotFound:
                continue
            custom = item.custom or {}
            removed = custom.get("backgroundRemoved") == "true"
            results.append(
                models.ScannedObject(
                    object_id=object_id,
                    name=custom.get("objectName") or display_name,
                    image_url=url,
                    storage_path=item.path,
                    status=models.ObjectStatus.COMPLETED if removed else models.ObjectStatus.PENDING,
                    processed=removed,
                    background_removed=removed,
                    date_scanned=item.time_created,
                )
            )
        results.sort(
            key=lambda obj: obj.date_scanned.timestamp() if obj.date_scanned else 0.0,
            reverse=True,
        )
        return results

    def find_orphan_blobs(self, auth: AuthSession) -> List[BlobMetadata]:
        """Blobs under the object prefix that no catalog entry references."""
        user_id = auth.require_user_id()
        referenced: Set[str] = set()
        for doc in self._objects(user_id).stream():
            data = doc.to_dict() or {}
            for key in ("storagePath", "processedStoragePath"):
                if isinstance(data.get(key), str):
                    referenced.add(data[key])
        return [
            item
            for item in self._store.list(models.objects_prefix(user_id))
            if item.path not in referenced
        ]

    def delete_orphan_blobs(self, auth: AuthSession, orphans: Optional[List[BlobMetadata]] = None) -> int:
        orphans = self.find_orphan_blobs(auth) if orphans is None else orphans
        deleted = 0
        for item in orphans:
            try:
                self._store.delete(item.path)
                deleted += 1
            except NotFound:
                continue
        logger.bind(tag=TAG).info(f"Deleted {deleted} orphan blobs")
        return deleted


def _is_processed_variant(item: BlobMetadata) -> bool:
    stem = item.name.rsplit(".", 1)[0]
    return stem.endswith(models.PROCESSED_SUFFIX)
