from __future__ import annotations

from typing import Optional

from services.auth.models import AuthUser
from services.errors import Unauthenticated


class AuthSession:
    """The identity a request runs as. Stores take one instead of a bare user id."""

    def __init__(self, user: Optional[AuthUser] = None):
        self.user = user

    @classmethod
    def anonymous(cls) -> "AuthSession":
        return cls(None)

    @classmethod
    def for_user(cls, uid: str, **kwargs) -> "AuthSession":
        return cls(AuthUser(uid=uid, **kwargs))

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user and self.user.uid)

    @property
    def user_id(self) -> Optional[str]:
        return self.user.uid if self.is_authenticated else None

    def require_user_id(self) -> str:
        if not self.is_authenticated:
            raise Unauthenticated()
        return self.user.uid

    def __repr__(self) -> str:
        return f"AuthSession(user_id={self.user_id!r})"
