from services.auth.models import AuthUser  # noqa: F401
from services.auth.session import AuthSession  # noqa: F401

__all__ = ["AuthUser", "AuthSession"]
