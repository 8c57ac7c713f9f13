"""Per-user Firestore collections and live snapshot subscriptions."""

from . import firestore_client  # noqa: F401
from . import subscription  # noqa: F401

__all__ = ["firestore_client", "subscription"]
