"""
Live queries delivered as full snapshots.

Every change to the watched query re-delivers the complete, current list to
the handler. Nothing here computes diffs: the cached list is replaced
wholesale on each notification.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from services.logging import setup_logging

TAG = __name__
logger = setup_logging()


@dataclass
class SnapshotEvent:
    items: List[Any] = field(default_factory=list)
    read_time: Optional[datetime] = None
    sequence: int = 0


class LiveList:
    """Last-known list for one subscription; Firestore calls back on its own thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._items: List[Any] = []
        self._sequence = 0

    def replace(self, items: List[Any]) -> int:
        with self._lock:
            self._items = list(items)
            self._sequence += 1
            return self._sequence

    @property
    def items(self) -> List[Any]:
        with self._lock:
            return list(self._items)

    @property
    def sequence(self) -> int:
        with self._lock:
            return self._sequence


class Subscription:
    def __init__(
        self,
        query,
        transform: Callable[[List[Any]], List[Any]],
        handler: Callable[[SnapshotEvent], None],
        *,
        name: str = "query",
    ):
        self._query = query
        self._transform = transform
        self._handler = handler
        self._watch = None
        self.name = name
        self.cache = LiveList()

    def start(self) -> "Subscription":
        if self._watch is None:
            self._watch = self._query.on_snapshot(self._on_snapshot)
            logger.bind(tag=TAG).info(f"Subscribed to {self.name}")
        return self

    def unsubscribe(self) -> None:
        if self._watch is not None:
            self._watch.unsubscribe()
            self._watch = None
            logger.bind(tag=TAG).info(f"Unsubscribed from {self.name}")

    @property
    def active(self) -> bool:
        return self._watch is not None

    @property
    def items(self) -> List[Any]:
        return self.cache.items

    def _on_snapshot(self, docs, changes, read_time) -> None:
        try:
            items = self._transform(list(docs))
        except Exception as exc:
            # Keep the previous snapshot; the next notification retries.
            logger.bind(tag=TAG).error(
                f"Failed to build snapshot for {self.name}: {exc}"
            )
            return
        sequence = self.cache.replace(items)
        logger.bind(tag=TAG).debug(
            f"Snapshot #{sequence} for {self.name}: {len(items)} items"
        )
        try:
            self._handler(SnapshotEvent(items=list(items), read_time=read_time, sequence=sequence))
        except Exception as exc:
            logger.bind(tag=TAG).error(
                f"Snapshot handler for {self.name} raised: {exc}"
            )
