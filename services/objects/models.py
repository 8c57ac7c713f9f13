from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from services.catalog.firestore_client import parse_datetime
from services.errors import SchemaError

DEFAULT_OBJECT_NAME = "Untitled Object"
FALLBACK_SAFE_NAME = "object"
PROCESSED_SUFFIX = "_nobg"

_SEPARATORS = re.compile(r"[/\\]")
_WHITESPACE = re.compile(r"\s+")
_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")


class ObjectStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


def sanitize_name(name: Optional[str]) -> str:
    """Make a label safe for a storage path: only [A-Za-z0-9_-], never empty."""
    value = _SEPARATORS.sub("-", name or "")
    value = _WHITESPACE.sub("_", value)
    value = _DISALLOWED.sub("", value)
    value = value.strip("_-")
    return value or FALLBACK_SAFE_NAME


def objects_prefix(user_id: str) -> str:
    return f"users/{user_id}/objects/"


def build_storage_path(user_id: str, object_id: str, safe_name: str, ext: str) -> str:
    return f"{objects_prefix(user_id)}{object_id}_{safe_name}.{ext}"


def parse_storage_name(filename: str) -> Tuple[str, str]:
    """Split `{id}_{safeName}.{ext}` into (id, display name)."""
    stem = filename.rsplit(".", 1)[0]
    if stem.endswith(PROCESSED_SUFFIX):
        stem = stem[: -len(PROCESSED_SUFFIX)]
    object_id, _, safe_name = stem.partition("_")
    return object_id, safe_name.replace("_", " ")


@dataclass
class ScannedObject:
    object_id: str
    name: str
    image_url: str
    storage_path: str
    status: ObjectStatus = ObjectStatus.PENDING
    processed: bool = False
    date_scanned: Optional[datetime] = None
    safe_name: Optional[str] = None
    background_removed: bool = False
    processed_image_url: Optional[str] = None
    processed_storage_path: Optional[str] = None
    processing_error: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.object_id,
            "name": self.name,
            "safeName": self.safe_name or sanitize_name(self.name),
            "imageUrl": self.image_url,
            "storagePath": self.storage_path,
            "status": self.status.value,
            "processed": self.processed,
            "uploadComplete": True,
            "backgroundRemoved": self.background_removed,
        }
        if self.date_scanned is not None:
            data["dateScanned"] = self.date_scanned
        return data

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.object_id,
            "name": self.name,
            "imageUrl": self.image_url,
            "processedImageUrl": self.processed_image_url,
            "storagePath": self.storage_path,
            "status": self.status.value,
            "processed": self.processed,
            "dateScanned": self.date_scanned.isoformat() if self.date_scanned else None,
            "processingError": self.processing_error,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "ScannedObject":
        if not isinstance(data, dict):
            raise SchemaError(f"objects/{doc_id}: document body is not a mapping")
        name = _required_str(doc_id, data, "name")
        storage_path = _required_str(doc_id, data, "storagePath")
        image_url = _required_str(doc_id, data, "imageUrl")

        raw_status = data.get("status") or ObjectStatus.PENDING.value
        try:
            status = ObjectStatus(str(raw_status).lower())
        except ValueError as exc:
            raise SchemaError(f"objects/{doc_id}: unknown status {raw_status!r}") from exc

        processed = data.get("processed", False)
        if not isinstance(processed, bool):
            raise SchemaError(f"objects/{doc_id}: processed must be a boolean")

        return cls(
            object_id=str(data.get("id") or doc_id),
            name=name,
            image_url=image_url,
            storage_path=storage_path,
            status=status,
            processed=processed,
            date_scanned=parse_datetime(data.get("dateScanned") or data.get("timestamp")),
            safe_name=data.get("safeName"),
            background_removed=bool(data.get("backgroundRemoved", False)),
            processed_image_url=data.get("processedImageUrl"),
            processed_storage_path=data.get("processedStoragePath"),
            processing_error=data.get("processingError"),
        )


def _required_str(doc_id: str, data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise SchemaError(f"objects/{doc_id}: missing or malformed {key!r}")
    return value
