from __future__ import annotations

import dataclasses
from typing import Callable, Iterable, List, Optional, Sequence

from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore

from services import imaging
from services.alarms import models
from services.auth.session import AuthSession
from services.catalog import firestore_client
from services.catalog.subscription import SnapshotEvent, Subscription
from services.errors import InvalidImage, NotFound, SchemaError
from services.logging import setup_logging
from services.storage.blob_store import BlobStore, delete_prefix

TAG = __name__
logger = setup_logging()


def alarm_prefix(user_id: str, alarm_id: str) -> str:
    return f"users/{user_id}/alarms/{alarm_id}/"


class AlarmStore:
    """Firestore-backed alarms under users/{uid}/alarms."""

    def __init__(
        self,
        blob_store: BlobStore,
        client: firestore.Client,
        *,
        jpeg_quality: int = imaging.DEFAULT_JPEG_QUALITY,
    ):
        self._store = blob_store
        self._client = client
        self.jpeg_quality = jpeg_quality

    def _alarms(self, user_id: str):
        return firestore_client.user_collection(
            self._client, user_id, firestore_client.ALARMS_COLLECTION
        )

    def add_alarm(
        self,
        auth: AuthSession,
        alarm: models.Alarm,
        images: Sequence[bytes] = (),
    ) -> models.Alarm:
        user_id = auth.require_user_id()

        image_urls: List[str] = []
        for index, image in enumerate(images):
            try:
                image_data = imaging.encode_jpeg(image, quality=self.jpeg_quality)
            except InvalidImage as exc:
                logger.bind(tag=TAG).warning(
                    f"Skipping attachment {index} for alarm {alarm.alarm_id}: {exc}"
                )
                continue
            path = f"{alarm_prefix(user_id, alarm.alarm_id)}image{index}.jpg"
            self._store.put(path, image_data, content_type="image/jpeg")
            image_urls.append(self._store.get_download_url(path))

        stored = dataclasses.replace(alarm, image_urls=image_urls)
        data = stored.to_document()
        data["createdAt"] = firestore.SERVER_TIMESTAMP
        self._alarms(user_id).document(stored.alarm_id).set(data)
        logger.bind(tag=TAG).info(
            f"Created alarm {stored.alarm_id} at {stored.time} for user {user_id} "
            f"({len(image_urls)} images)"
        )
        return stored

    def remove_alarm(self, auth: AuthSession, alarm_id: str) -> None:
        user_id = auth.require_user_id()
        deleted = delete_prefix(self._store, alarm_prefix(user_id, alarm_id))
        self._alarms(user_id).document(alarm_id).delete()
        logger.bind(tag=TAG).info(
            f"Removed alarm {alarm_id} for user {user_id} ({deleted} images)"
        )

    def toggle_alarm(self, auth: AuthSession, alarm_id: str, is_enabled: bool) -> None:
        user_id = auth.require_user_id()
        self._update(user_id, alarm_id, {"isEnabled": bool(is_enabled)})
        logger.bind(tag=TAG).info(f"Alarm {alarm_id} isEnabled={bool(is_enabled)}")

    def update_alarm(
        self,
        auth: AuthSession,
        alarm_id: str,
        *,
        minutes: Optional[int] = None,
        label: Optional[str] = None,
        selected_days: Optional[Iterable] = None,
    ) -> models.Alarm:
        user_id = auth.require_user_id()
        current = self.get_alarm(auth, alarm_id)
        changes = {}
        if minutes is not None:
            changes["minutes"] = minutes
        if label is not None:
            changes["label"] = label
        if selected_days is not None:
            changes["selected_days"] = selected_days
        if not changes:
            return current
        updated = dataclasses.replace(current, **changes)
        document = updated.to_document()
        self._update(
            user_id,
            alarm_id,
            {
                key: document[key]
                for key in ("minutes", "time", "label", "selectedDays")
            },
        )
        return updated

    def get_alarm(self, auth: AuthSession, alarm_id: str) -> models.Alarm:
        user_id = auth.require_user_id()
        snapshot = self._alarms(user_id).document(alarm_id).get()
        if not snapshot.exists:
            raise NotFound(f"Alarm {alarm_id} not found")
        return models.Alarm.from_document(snapshot.id, snapshot.to_dict() or {})

    def list_alarms(self, auth: AuthSession) -> List[models.Alarm]:
        user_id = auth.require_user_id()
        return self._hydrate(list(self._alarms(user_id).stream()))

    def subscribe(
        self,
        auth: AuthSession,
        handler: Callable[[SnapshotEvent], None],
    ) -> Subscription:
        user_id = auth.require_user_id()
        subscription = Subscription(
            self._alarms(user_id),
            self._hydrate,
            handler,
            name=f"users/{user_id}/alarms",
        )
        return subscription.start()

    def _update(self, user_id: str, alarm_id: str, fields: dict) -> None:
        try:
            self._alarms(user_id).document(alarm_id).update(fields)
        except gcloud_exceptions.NotFound as exc:
            raise NotFound(f"Alarm {alarm_id} not found") from exc

    def _hydrate(self, docs) -> List[models.Alarm]:
        alarms: List[models.Alarm] = []
        for doc in docs:
            try:
                alarms.append(models.Alarm.from_document(doc.id, doc.to_dict() or {}))
            except SchemaError as exc:
                logger.bind(tag=TAG).warning(f"Skipping malformed alarm: {exc}")
        alarms.sort(key=lambda alarm: (alarm.minutes, alarm.label, alarm.alarm_id))
        return alarms
