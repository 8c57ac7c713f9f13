"""
Scanned objects: the upload-verify-register pipeline, the catalog read path
with its orphan sweep, and the storage-triggered background removal.
"""

from . import models  # noqa: F401
from . import pipeline  # noqa: F401
from . import catalog  # noqa: F401
from . import trigger  # noqa: F401

__all__ = ["models", "pipeline", "catalog", "trigger"]
