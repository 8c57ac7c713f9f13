from __future__ import annotations

from typing import List, Optional


class WakeUpError(Exception):
    """Base class for errors raised by the backend services."""


class Unauthenticated(WakeUpError):
    def __init__(self, message: str = "No authenticated user"):
        super().__init__(message)


class InvalidImage(WakeUpError):
    pass


class UploadFailed(WakeUpError):
    pass


class RemovalServiceError(UploadFailed):
    """Non-200 answer from the background-removal API."""

    def __init__(
        self,
        status_code: Optional[int],
        titles: Optional[List[str]] = None,
        message: Optional[str] = None,
    ):
        self.status_code = status_code
        self.titles = titles or []
        if message is None:
            detail = "; ".join(self.titles) if self.titles else "no details"
            message = f"Background removal failed (status={status_code}): {detail}"
        super().__init__(message)


class NotFound(WakeUpError):
    pass


class SchemaError(WakeUpError, ValueError):
    """A stored document is missing a required field or has a malformed one."""


class RegistrationError(WakeUpError, ValueError):
    pass


class ServiceUnavailable(WakeUpError):
    """A backing service could not be reached."""
