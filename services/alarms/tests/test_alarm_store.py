from __future__ import annotations

import pytest

from services.alarms import models
from services.alarms.store import AlarmStore
from services.auth.session import AuthSession
from services.errors import NotFound, Unauthenticated


def _alarm(time_text="7:05 AM", **kwargs):
    kwargs.setdefault("alarm_id", "al1")
    return models.Alarm.at(time_text, **kwargs)


def test_add_alarm_uploads_images_and_writes_document(blob_store, fake_db, auth, image_bytes):
    store = AlarmStore(blob_store, fake_db)

    stored = store.add_alarm(
        auth, _alarm(label="Gym", selected_days=[2, 4]), [image_bytes, b"garbage", image_bytes]
    )

    # undecodable attachments are skipped; indexes keep their position
    assert sorted(blob_store.objects) == [
        "users/u1/alarms/al1/image0.jpg",
        "users/u1/alarms/al1/image2.jpg",
    ]
    assert blob_store.get_metadata("users/u1/alarms/al1/image0.jpg").content_type == "image/jpeg"
    assert len(stored.image_urls) == 2
    doc = fake_db.docs["users/u1/alarms/al1"]
    assert doc["time"] == "7:05 AM"
    assert doc["minutes"] == 425
    assert doc["selectedDays"] == [2, 4]
    assert doc["imageUrls"] == stored.image_urls
    assert doc["createdAt"] is not None


def test_list_alarms_sorted_and_skips_malformed(blob_store, fake_db, auth):
    store = AlarmStore(blob_store, fake_db)
    store.add_alarm(auth, _alarm("9:00 AM", alarm_id="late"))
    store.add_alarm(auth, _alarm("6:00 AM", alarm_id="early", label="b"))
    store.add_alarm(auth, _alarm("6:00 AM", alarm_id="early2", label="a"))
    fake_db.document("users/u1/alarms/bad").set({"label": "no time"})

    alarms = store.list_alarms(auth)

    assert [alarm.alarm_id for alarm in alarms] == ["early2", "early", "late"]


def test_toggle_alarm_only_changes_enabled_flag(blob_store, fake_db, auth):
    store = AlarmStore(blob_store, fake_db)
    store.add_alarm(auth, _alarm(label="Gym", selected_days=[2]))
    before = dict(fake_db.docs["users/u1/alarms/al1"])

    store.toggle_alarm(auth, "al1", False)

    after = fake_db.docs["users/u1/alarms/al1"]
    assert after["isEnabled"] is False
    assert {k: v for k, v in after.items() if k != "isEnabled"} == {
        k: v for k, v in before.items() if k != "isEnabled"
    }


def test_toggle_missing_alarm_raises_not_found(blob_store, fake_db, auth):
    with pytest.raises(NotFound):
        AlarmStore(blob_store, fake_db).toggle_alarm(auth, "nope", True)


def test_update_alarm_rewrites_time_and_days(blob_store, fake_db, auth):
    store = AlarmStore(blob_store, fake_db)
    store.add_alarm(auth, _alarm(label="Gym", selected_days=[2]))

    updated = store.update_alarm(auth, "al1", minutes=18 * 60, selected_days=["Sat"])

    doc = fake_db.docs["users/u1/alarms/al1"]
    assert updated.time == "6:00 PM"
    assert doc["time"] == "6:00 PM"
    assert doc["minutes"] == 1080
    assert doc["selectedDays"] == [7]
    assert doc["label"] == "Gym"
    assert doc["isEnabled"] is True


def test_remove_alarm_deletes_images_and_document(blob_store, fake_db, auth, image_bytes):
    store = AlarmStore(blob_store, fake_db)
    store.add_alarm(auth, _alarm(), [image_bytes])
    store.add_alarm(auth, _alarm(alarm_id="al2"), [image_bytes])

    store.remove_alarm(auth, "al1")

    assert list(blob_store.objects) == ["users/u1/alarms/al2/image0.jpg"]
    assert list(fake_db.docs) == ["users/u1/alarms/al2"]
    with pytest.raises(NotFound):
        store.get_alarm(auth, "al1")


def test_subscribe_delivers_full_snapshots(blob_store, fake_db, auth):
    store = AlarmStore(blob_store, fake_db)
    events = []

    subscription = store.subscribe(auth, events.append)
    store.add_alarm(auth, _alarm("8:00 AM", alarm_id="b"))
    store.add_alarm(auth, _alarm("7:00 AM", alarm_id="a"))
    store.toggle_alarm(auth, "a", False)

    assert [len(event.items) for event in events] == [0, 1, 2, 2]
    assert [alarm.alarm_id for alarm in events[-1].items] == ["a", "b"]
    assert events[-1].items[0].is_enabled is False
    subscription.unsubscribe()


def test_alarms_are_scoped_per_user(blob_store, fake_db, auth):
    store = AlarmStore(blob_store, fake_db)
    store.add_alarm(auth, _alarm())

    other = AuthSession.for_user("u2")

    assert store.list_alarms(other) == []
    with pytest.raises(Unauthenticated):
        store.list_alarms(AuthSession.anonymous())
