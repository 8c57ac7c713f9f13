from __future__ import annotations

import io
from datetime import datetime

import pytest
from PIL import Image

from services.auth.session import AuthSession
from services.errors import InvalidImage, RemovalServiceError, Unauthenticated, UploadFailed
from services.objects import models
from services.objects.pipeline import (
    REMOVAL_INLINE,
    REMOVAL_TRIGGER,
    PipelineSettings,
    UploadPipeline,
)
from services.storage.blob_store import InMemoryBlobStore


class _RecordingBlobStore(InMemoryBlobStore):
    def __init__(self, put_failures: int = 0):
        super().__init__("test-bucket")
        self.put_failures = put_failures
        self.put_calls = 0
        self.deleted = []

    def put(self, path, data, *, content_type, metadata=None):
        self.put_calls += 1
        if self.put_calls <= self.put_failures:
            raise ConnectionError("transient upload failure")
        super().put(path, data, content_type=content_type, metadata=metadata)

    def delete(self, path):
        self.deleted.append(path)
        super().delete(path)


class _FakeRemoval:
    def __init__(self, error: Exception = None):
        self.error = error
        self.calls = 0

    def remove_background(self, image_data: bytes) -> bytes:
        self.calls += 1
        if self.error:
            raise self.error
        buffer = io.BytesIO()
        Image.new("RGBA", (8, 8), (0, 0, 0, 0)).save(buffer, format="PNG")
        return buffer.getvalue()


def _pipeline(store, db, removal=None, mode=REMOVAL_INLINE, sleeps=None):
    sleeps = [] if sleeps is None else sleeps
    return UploadPipeline(
        store,
        db,
        removal if removal is not None else _FakeRemoval(),
        PipelineSettings(removal_mode=mode),
        sleep=sleeps.append,
        id_factory=lambda: "obj1",
    )


def test_upload_registers_exactly_one_entry(fake_db, auth, image_bytes):
    store = _RecordingBlobStore()
    sleeps = []

    scanned = _pipeline(store, fake_db, sleeps=sleeps).upload(auth, image_bytes, "Coffee Mug!!")

    assert scanned.storage_path == "users/u1/objects/obj1_Coffee_Mug.png"
    assert store.get_metadata(scanned.storage_path).size > 0
    assert store.get_metadata(scanned.storage_path).content_type == "image/png"
    assert list(fake_db.docs) == ["users/u1/objects/obj1"]
    doc = fake_db.docs["users/u1/objects/obj1"]
    assert doc["name"] == "Coffee Mug!!"
    assert doc["safeName"] == "Coffee_Mug"
    assert doc["storagePath"] == scanned.storage_path
    assert doc["imageUrl"] == scanned.image_url
    assert doc["status"] == "completed"
    assert doc["processed"] is True
    assert isinstance(doc["timestamp"], datetime)
    # settling delay only
    assert sleeps == [2]
    assert store.deleted == []


def test_upload_metadata_marks_background_removed(fake_db, auth, image_bytes):
    store = _RecordingBlobStore()

    _pipeline(store, fake_db).upload(auth, image_bytes, "Mug")

    custom = store.get_metadata("users/u1/objects/obj1_Mug.png").custom
    assert custom["backgroundRemoved"] == "true"
    assert custom["userId"] == "u1"
    assert custom["objectId"] == "obj1"
    assert custom["objectName"] == "Mug"


def test_trigger_mode_uploads_jpeg_pending(fake_db, auth, image_bytes):
    store = _RecordingBlobStore()

    scanned = _pipeline(store, fake_db, mode=REMOVAL_TRIGGER).upload(auth, image_bytes, "Mug")

    assert scanned.storage_path == "users/u1/objects/obj1_Mug.jpg"
    assert store.get_metadata(scanned.storage_path).content_type == "image/jpeg"
    assert store.get_metadata(scanned.storage_path).custom["backgroundRemoved"] == "false"
    doc = fake_db.docs["users/u1/objects/obj1"]
    assert doc["status"] == "pending"
    assert doc["processed"] is False


def test_blank_name_uses_default(fake_db, auth, image_bytes):
    store = _RecordingBlobStore()

    scanned = _pipeline(store, fake_db).upload(auth, image_bytes, "   ")

    assert scanned.name == models.DEFAULT_OBJECT_NAME
    assert scanned.storage_path == "users/u1/objects/obj1_Untitled_Object.png"


@pytest.mark.parametrize("failures", [1, 2])
def test_transient_upload_failures_are_retried(fake_db, auth, image_bytes, failures):
    store = _RecordingBlobStore(put_failures=failures)
    sleeps = []

    _pipeline(store, fake_db, sleeps=sleeps).upload(auth, image_bytes, "Mug")

    assert store.put_calls == failures + 1
    assert sleeps == [2, 4][:failures] + [2]
    assert "users/u1/objects/obj1" in fake_db.docs


def test_upload_gives_up_after_three_attempts(fake_db, auth, image_bytes):
    store = _RecordingBlobStore(put_failures=3)
    sleeps = []

    with pytest.raises(UploadFailed):
        _pipeline(store, fake_db, sleeps=sleeps).upload(auth, image_bytes, "Mug")

    assert store.put_calls == 3
    assert sleeps == [2, 4]
    assert fake_db.docs == {}
    assert store.deleted == ["users/u1/objects/obj1_Mug.png"]


def test_registration_failure_removes_blob_once(fake_db, auth, image_bytes, monkeypatch):
    store = _RecordingBlobStore()

    def broken_write(path, data):
        raise RuntimeError("firestore unavailable")

    monkeypatch.setattr(fake_db, "write", broken_write)

    with pytest.raises(UploadFailed):
        _pipeline(store, fake_db).upload(auth, image_bytes, "Mug")

    assert store.deleted == ["users/u1/objects/obj1_Mug.png"]
    assert store.objects == {}
    assert fake_db.docs == {}


def test_verification_failure_removes_blob_once(fake_db, auth, image_bytes, monkeypatch):
    store = _RecordingBlobStore()

    def no_url(path):
        raise RuntimeError("token lookup failed")

    monkeypatch.setattr(store, "get_download_url", no_url)

    with pytest.raises(UploadFailed):
        _pipeline(store, fake_db).upload(auth, image_bytes, "Mug")

    assert store.deleted == ["users/u1/objects/obj1_Mug.png"]
    assert fake_db.docs == {}


def test_removal_error_stops_before_upload(fake_db, auth, image_bytes):
    store = _RecordingBlobStore()
    removal = _FakeRemoval(RemovalServiceError(402, ["Insufficient credits"]))

    with pytest.raises(RemovalServiceError) as excinfo:
        _pipeline(store, fake_db, removal=removal).upload(auth, image_bytes, "Mug")

    assert excinfo.value.titles == ["Insufficient credits"]
    assert store.put_calls == 0
    assert store.deleted == []
    assert fake_db.docs == {}


def test_requires_authenticated_user(fake_db, image_bytes):
    store = _RecordingBlobStore()
    removal = _FakeRemoval()

    with pytest.raises(Unauthenticated):
        _pipeline(store, fake_db, removal=removal).upload(
            AuthSession.anonymous(), image_bytes, "Mug"
        )

    assert removal.calls == 0
    assert store.put_calls == 0


def test_rejects_undecodable_image(fake_db, auth):
    store = _RecordingBlobStore()

    with pytest.raises(InvalidImage):
        _pipeline(store, fake_db).upload(auth, b"not an image", "Mug")

    assert store.put_calls == 0
    assert fake_db.docs == {}


def test_inline_mode_requires_removal_client(fake_db):
    with pytest.raises(ValueError):
        UploadPipeline(_RecordingBlobStore(), fake_db, None, PipelineSettings())


def test_settings_from_config_and_backoff():
    settings = PipelineSettings.from_config(
        {"objects": {"removal_mode": "trigger", "upload_max_attempts": 5, "backoff_base_seconds": 1}}
    )

    assert settings.removal_mode == REMOVAL_TRIGGER
    assert settings.upload_max_attempts == 5
    assert [settings.backoff_delay(n) for n in (1, 2, 3, 4)] == [1, 2, 4, 8]

    with pytest.raises(ValueError):
        PipelineSettings(removal_mode="sometimes")
