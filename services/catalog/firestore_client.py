from __future__ import annotations

import functools
import os
from datetime import datetime, timezone
from typing import Optional

from google.cloud import firestore

from config.settings import get_gcp_credentials_path

USERS_COLLECTION = "users"
ALARMS_COLLECTION = "alarms"
OBJECTS_COLLECTION = "objects"


@functools.lru_cache(maxsize=1)
def build_client(project_id: Optional[str] = None) -> firestore.Client:
    creds_path = get_gcp_credentials_path()
    if creds_path:
        os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", creds_path)
    return firestore.Client(project=project_id) if project_id else firestore.Client()


def user_collection(client: firestore.Client, user_id: str, name: str):
    """users/{user_id}/{name}"""
    if not user_id:
        raise ValueError("user_id is required to address a user collection")
    return client.collection(USERS_COLLECTION).document(user_id).collection(name)


def parse_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")
