from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass
class BlobMetadata:
    path: str
    size: int
    content_type: Optional[str] = None
    custom: Dict[str, str] = field(default_factory=dict)
    time_created: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]
