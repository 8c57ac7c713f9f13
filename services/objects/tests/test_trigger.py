from __future__ import annotations

from datetime import timedelta

import pytest

from services.errors import NotFound, RemovalServiceError
from services.objects import trigger
from services.objects.pipeline import REMOVAL_TRIGGER, PipelineSettings, UploadPipeline

RAW_PATH = "users/u1/objects/obj1_Mug.jpg"
DOC_PATH = "users/u1/objects/obj1"


class _FakeRemoval:
    def __init__(self, error: Exception = None):
        self.error = error
        self.urls = []

    def remove_background_from_url(self, image_url: str) -> bytes:
        self.urls.append(image_url)
        if self.error:
            raise self.error
        return b"\x89PNG processed"


def _upload_pending(blob_store, db, auth, image_bytes):
    pipeline = UploadPipeline(
        blob_store,
        db,
        None,
        PipelineSettings(removal_mode=REMOVAL_TRIGGER),
        sleep=lambda seconds: None,
        id_factory=lambda: "obj1",
    )
    return pipeline.upload(auth, image_bytes, "Mug")


def _processor(blob_store, db, removal=None, sleeps=None):
    return trigger.ObjectProcessor(
        blob_store,
        db,
        removal or _FakeRemoval(),
        sleep=(sleeps if sleeps is not None else []).append,
    )


@pytest.mark.parametrize(
    "name, expected",
    [
        ("users/u1/objects/obj1_Mug.jpg", ("u1", "obj1")),
        ("users/u1/objects/3f2a-99_Coffee_Mug.png", ("u1", "3f2a-99")),
        ("users/u1/objects/obj1_Mug_nobg.png", None),
        ("users/u1/alarms/a1/image0.jpg", None),
        ("users/u1/objects/nested/obj1_Mug.jpg", None),
        ("other/obj1_Mug.jpg", None),
        ("", None),
    ],
)
def test_parse_object_path(name, expected):
    assert trigger.parse_object_path(name) == expected


def test_processed_path():
    assert trigger.processed_path(RAW_PATH) == "users/u1/objects/obj1_Mug_nobg.png"
    assert trigger.processed_path("users/u1/objects/obj1_Mug") == "users/u1/objects/obj1_Mug_nobg.png"


def test_process_removes_background_and_updates_entry(blob_store, fake_db, auth, image_bytes):
    _upload_pending(blob_store, fake_db, auth, image_bytes)
    removal = _FakeRemoval()
    sleeps = []

    result = _processor(blob_store, fake_db, removal, sleeps).process(RAW_PATH)

    assert result == trigger.RESULT_OK
    assert removal.urls == [blob_store.get_signed_url(RAW_PATH, timedelta(hours=1))]
    processed = blob_store.get_metadata("users/u1/objects/obj1_Mug_nobg.png")
    assert processed.content_type == "image/png"
    assert processed.custom["backgroundRemoved"] == "true"
    assert processed.custom["originalFile"] == RAW_PATH
    doc = fake_db.docs[DOC_PATH]
    assert doc["status"] == "completed"
    assert doc["processed"] is True
    assert doc["processedStoragePath"] == "users/u1/objects/obj1_Mug_nobg.png"
    assert doc["processedImageUrl"] == blob_store.get_download_url(doc["processedStoragePath"])
    # original entry fields survive
    assert doc["storagePath"] == RAW_PATH
    assert sleeps == [2]


def test_processed_output_does_not_retrigger(blob_store, fake_db, auth, image_bytes):
    _upload_pending(blob_store, fake_db, auth, image_bytes)
    processor = _processor(blob_store, fake_db)
    processor.process(RAW_PATH)

    assert processor.process("users/u1/objects/obj1_Mug_nobg.png") == trigger.RESULT_IGNORED


def test_redelivered_event_is_not_processed_twice(blob_store, fake_db, auth, image_bytes):
    _upload_pending(blob_store, fake_db, auth, image_bytes)
    removal = _FakeRemoval()
    processor = _processor(blob_store, fake_db, removal)

    assert processor.process(RAW_PATH) == trigger.RESULT_OK
    assert processor.process(RAW_PATH) == trigger.RESULT_SKIPPED
    assert len(removal.urls) == 1


def test_skips_blob_already_processed_inline(blob_store, fake_db):
    blob_store.put(
        "users/u1/objects/obj1_Mug.png",
        b"png",
        content_type="image/png",
        metadata={"backgroundRemoved": "true"},
    )
    removal = _FakeRemoval()

    result = _processor(blob_store, fake_db, removal).process("users/u1/objects/obj1_Mug.png")

    assert result == trigger.RESULT_SKIPPED
    assert removal.urls == []
    assert fake_db.docs == {}


def test_lost_claim_race_skips(blob_store, fake_db, auth, image_bytes, monkeypatch):
    _upload_pending(blob_store, fake_db, auth, image_bytes)
    removal = _FakeRemoval()
    original = fake_db.write_option

    def racing_write_option(**kwargs):
        option = original(**kwargs)
        fake_db.touch(DOC_PATH)
        return option

    monkeypatch.setattr(fake_db, "write_option", racing_write_option)

    result = _processor(blob_store, fake_db, removal).process(RAW_PATH)

    assert result == trigger.RESULT_SKIPPED
    assert removal.urls == []
    assert fake_db.docs[DOC_PATH]["status"] == "pending"


def test_removal_failure_is_recorded_and_raised(blob_store, fake_db, auth, image_bytes):
    _upload_pending(blob_store, fake_db, auth, image_bytes)
    removal = _FakeRemoval(RemovalServiceError(403, ["API key invalid"]))

    with pytest.raises(RemovalServiceError):
        _processor(blob_store, fake_db, removal).process(RAW_PATH)

    doc = fake_db.docs[DOC_PATH]
    assert doc["status"] == "error"
    assert doc["processed"] is False
    assert "API key invalid" in doc["processingError"]
    assert "users/u1/objects/obj1_Mug_nobg.png" not in blob_store.objects


def test_missing_blob_after_retries(blob_store, fake_db):
    sleeps = []

    result = _processor(blob_store, fake_db, sleeps=sleeps).process(RAW_PATH)

    assert result == trigger.RESULT_MISSING
    assert sleeps == [2, 2]


def test_non_image_upload_is_ignored(blob_store, fake_db):
    blob_store.put("users/u1/objects/obj1_notes.jpg", b"text", content_type="text/plain")

    result = _processor(blob_store, fake_db).process("users/u1/objects/obj1_notes.jpg")

    assert result == trigger.RESULT_IGNORED


def test_unregistered_entry_raises_for_redelivery(blob_store, fake_db):
    blob_store.put(RAW_PATH, b"jpg", content_type="image/jpeg")
    sleeps = []

    with pytest.raises(NotFound):
        _processor(blob_store, fake_db, sleeps=sleeps).process(RAW_PATH)

    assert sleeps == [2, 2]
