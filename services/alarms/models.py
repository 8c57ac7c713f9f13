from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from services.catalog.firestore_client import parse_datetime
from services.errors import SchemaError
from services.logging import setup_logging

TAG = __name__
logger = setup_logging()

MINUTES_PER_DAY = 24 * 60

_TIME_PATTERN = re.compile(
    r"^\s*(?P<hour>\d{1,2}):(?P<minute>\d{2})\s*(?P<meridiem>[AaPp][Mm])?\s*$"
)


class Weekday(IntEnum):
    """Calendar weekday numbering, Sunday first."""

    SUNDAY = 1
    MONDAY = 2
    TUESDAY = 3
    WEDNESDAY = 4
    THURSDAY = 5
    FRIDAY = 6
    SATURDAY = 7

    @property
    def short_name(self) -> str:
        return self.name[:3].title()

    @classmethod
    def parse(cls, value) -> "Weekday":
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid weekday {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip().lower()
            if text.isdigit():
                return cls(int(text))
            for day in cls:
                if text in (day.name.lower(), day.short_name.lower()):
                    return day
        raise ValueError(f"Invalid weekday {value!r}")


DAY_NAMES = tuple(day.short_name for day in Weekday)


def parse_time(value: str) -> int:
    """'7:05 AM', '12:00 am' or '19:05' -> minutes since midnight."""
    match = _TIME_PATTERN.match(value or "")
    if not match:
        raise ValueError(f"Invalid alarm time {value!r}")
    hour = int(match.group("hour"))
    minute = int(match.group("minute"))
    meridiem = (match.group("meridiem") or "").upper()
    if minute > 59:
        raise ValueError(f"Invalid alarm time {value!r}")
    if meridiem:
        if not 1 <= hour <= 12:
            raise ValueError(f"Invalid alarm time {value!r}")
        hour = hour % 12 + (12 if meridiem == "PM" else 0)
    elif hour > 23:
        raise ValueError(f"Invalid alarm time {value!r}")
    return hour * 60 + minute


def format_time(minutes: int) -> str:
    hour, minute = divmod(minutes, 60)
    meridiem = "PM" if hour >= 12 else "AM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {meridiem}"


def normalize_days(days: Iterable[Any]) -> FrozenSet[Weekday]:
    normalized = set()
    for day in days or ():
        try:
            normalized.add(Weekday.parse(day))
        except ValueError:
            logger.bind(tag=TAG).warning(f"Invalid alarm day '{day}' encountered; dropping")
    return frozenset(normalized)


@dataclass
class Alarm:
    minutes: int
    label: str = ""
    selected_days: FrozenSet[Weekday] = frozenset()
    is_enabled: bool = True
    alarm_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    image_urls: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.minutes, bool) or not isinstance(self.minutes, int):
            raise ValueError(f"Alarm minutes must be an integer, got {self.minutes!r}")
        if not 0 <= self.minutes < MINUTES_PER_DAY:
            raise ValueError(f"Alarm minutes out of range: {self.minutes}")
        self.selected_days = normalize_days(self.selected_days)

    @classmethod
    def at(cls, time_text: str, **kwargs) -> "Alarm":
        return cls(minutes=parse_time(time_text), **kwargs)

    @property
    def time(self) -> str:
        return format_time(self.minutes)

    @property
    def sorted_days(self) -> List[Weekday]:
        return sorted(self.selected_days)

    def to_document(self) -> Dict[str, Any]:
        return {
            "id": self.alarm_id,
            "minutes": self.minutes,
            "time": self.time,
            "label": self.label,
            "selectedDays": [int(day) for day in self.sorted_days],
            "isEnabled": self.is_enabled,
            "imageUrls": list(self.image_urls),
        }

    def to_payload(self) -> Dict[str, Any]:
        payload = self.to_document()
        payload["selectedDayNames"] = [day.short_name for day in self.sorted_days]
        payload["createdAt"] = self.created_at.isoformat() if self.created_at else None
        return payload

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Alarm":
        if not isinstance(data, dict):
            raise SchemaError(f"alarms/{doc_id}: document body is not a mapping")

        minutes = data.get("minutes")
        if minutes is None:
            # Older documents only carry the display string.
            legacy_time = data.get("time")
            if not isinstance(legacy_time, str):
                raise SchemaError(f"alarms/{doc_id}: missing 'minutes' and 'time'")
            try:
                minutes = parse_time(legacy_time)
            except ValueError as exc:
                raise SchemaError(f"alarms/{doc_id}: {exc}") from exc
        if isinstance(minutes, bool) or not isinstance(minutes, int):
            raise SchemaError(f"alarms/{doc_id}: malformed 'minutes' {minutes!r}")

        label = data.get("label")
        if not isinstance(label, str):
            raise SchemaError(f"alarms/{doc_id}: missing or malformed 'label'")
        days = data.get("selectedDays")
        if not isinstance(days, list):
            raise SchemaError(f"alarms/{doc_id}: missing or malformed 'selectedDays'")
        is_enabled = data.get("isEnabled")
        if not isinstance(is_enabled, bool):
            raise SchemaError(f"alarms/{doc_id}: missing or malformed 'isEnabled'")
        image_urls = data.get("imageUrls") or []
        if not isinstance(image_urls, list):
            raise SchemaError(f"alarms/{doc_id}: malformed 'imageUrls'")

        try:
            return cls(
                minutes=minutes,
                label=label,
                selected_days=days,
                is_enabled=is_enabled,
                alarm_id=str(data.get("id") or doc_id),
                image_urls=[str(url) for url in image_urls],
                created_at=parse_datetime(data.get("createdAt")),
            )
        except ValueError as exc:
            raise SchemaError(f"alarms/{doc_id}: {exc}") from exc
