"""
Alarm service package.

Alarms live at users/{uid}/alarms/{alarmId}; attached images at
users/{uid}/alarms/{alarmId}/image{n}.jpg in the storage bucket.
"""

from . import models  # noqa: F401
from . import store  # noqa: F401

__all__ = [
    "models",
    "store",
]
