"""Shared fakes for Firestore and the blob store."""

from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone

import pytest
from google.api_core import exceptions as gcloud_exceptions
from google.cloud import firestore
from PIL import Image

from services.auth.session import AuthSession
from services.storage.blob_store import InMemoryBlobStore

_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


class _FakeSnapshot:
    def __init__(self, path: str, data, update_time=None):
        self.id = path.rsplit("/", 1)[-1]
        self.path = path
        self._data = data
        self.update_time = update_time

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class _FakeWriteOption:
    def __init__(self, last_update_time):
        self.last_update_time = last_update_time


class _FakeWatch:
    def __init__(self, db, query, callback):
        self._db = db
        self.query = query
        self.callback = callback

    def unsubscribe(self):
        if self in self._db.watches:
            self._db.watches.remove(self)


class _FakeQuery:
    def __init__(self, db, path: str, order=None):
        self._db = db
        self.path = path
        self._order = order

    def order_by(self, field_path: str, direction=firestore.Query.ASCENDING):
        return _FakeQuery(self._db, self.path, (field_path, direction))

    def stream(self):
        docs = [
            _FakeSnapshot(path, data, self._db.update_times[path])
            for path, data in self._db.docs.items()
            if path.rsplit("/", 1)[0] == self.path
        ]
        if self._order:
            field_path, direction = self._order
            docs.sort(
                key=lambda snap: snap.to_dict().get(field_path) or _EPOCH,
                reverse=direction == firestore.Query.DESCENDING,
            )
        return iter(docs)

    def on_snapshot(self, callback):
        watch = _FakeWatch(self._db, self, callback)
        self._db.watches.append(watch)
        self._db.notify_watch(watch)
        return watch


class _FakeCollection(_FakeQuery):
    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    def document(self, document_id: str):
        return _FakeDocument(self._db, f"{self.path}/{document_id}")


class _FakeDocument:
    def __init__(self, db, path: str):
        self._db = db
        self.path = path
        self.id = path.rsplit("/", 1)[-1]

    def collection(self, name: str):
        return _FakeCollection(self._db, f"{self.path}/{name}")

    def get(self):
        return _FakeSnapshot(
            self.path, self._db.docs.get(self.path), self._db.update_times.get(self.path)
        )

    def set(self, data: dict, merge: bool = False):
        current = dict(self._db.docs.get(self.path) or {}) if merge else {}
        current.update(self._db.resolve(data))
        self._db.write(self.path, current)

    def update(self, fields: dict, option=None):
        if self.path not in self._db.docs:
            raise gcloud_exceptions.NotFound(f"No document to update: {self.path}")
        if option is not None and option.last_update_time != self._db.update_times[self.path]:
            raise gcloud_exceptions.FailedPrecondition(f"Stale write to {self.path}")
        current = dict(self._db.docs[self.path])
        current.update(self._db.resolve(fields))
        self._db.write(self.path, current)

    def delete(self):
        self._db.deletes.append(self.path)
        if self._db.docs.pop(self.path, None) is not None:
            self._db.update_times.pop(self.path, None)
            self._db.notify(self.path)


class FakeFirestore:
    """Enough of google.cloud.firestore.Client for the stores under test."""

    def __init__(self):
        self.docs = {}
        self.update_times = {}
        self.watches = []
        self.deletes = []
        self._clock = 0

    def collection(self, name: str):
        return _FakeCollection(self, name)

    def document(self, path: str):
        return _FakeDocument(self, path)

    def write_option(self, last_update_time=None, **kwargs):
        return _FakeWriteOption(last_update_time)

    def resolve(self, data: dict) -> dict:
        now = self._tick()
        return {
            key: now if value is firestore.SERVER_TIMESTAMP else value
            for key, value in data.items()
        }

    def touch(self, path: str):
        """Bump a document's update time without changing it (a concurrent writer)."""
        self.update_times[path] = self._tick()

    def write(self, path: str, data: dict):
        self.docs[path] = data
        self.update_times[path] = self._tick()
        self.notify(path)

    def notify(self, path: str):
        parent = path.rsplit("/", 1)[0]
        for watch in list(self.watches):
            if watch.query.path == parent:
                self.notify_watch(watch)

    def notify_watch(self, watch):
        watch.callback(list(watch.query.stream()), [], self._tick())

    def _tick(self) -> datetime:
        self._clock += 1
        return _EPOCH + timedelta(seconds=self._clock)


def make_image_bytes(size=(8, 8), color=(200, 30, 30), fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def fake_db():
    return FakeFirestore()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore("test-bucket")


@pytest.fixture
def auth():
    return AuthSession.for_user("u1", email="u1@example.com")


@pytest.fixture
def image_bytes():
    return make_image_bytes()
