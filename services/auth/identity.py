from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import requests
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from services.auth.models import AuthUser
from services.errors import RegistrationError, ServiceUnavailable, Unauthenticated
from services.logging import setup_logging

TAG = __name__
logger = setup_logging()

DEFAULT_BASE_URL = "https://identitytoolkit.googleapis.com/v1"
MIN_PASSWORD_LENGTH = 6


def validate_login(email: str, password: str) -> None:
    if not email:
        raise ValueError("Please enter your email")
    if not password:
        raise ValueError("Please enter your password")


def validate_registration(
    username: str, email: str, password: str, confirm_password: str
) -> None:
    if not username:
        raise RegistrationError("Please enter a username")
    if not email:
        raise RegistrationError("Please enter an email")
    if not password:
        raise RegistrationError("Please enter a password")
    if password != confirm_password:
        raise RegistrationError("Passwords do not match")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise RegistrationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


class IdentityClient:
    """Email/password accounts via the Identity Toolkit REST API."""

    def __init__(
        self,
        api_key: str,
        project_id: Optional[str] = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.project_id = project_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Dict[str, Any], session: Optional[requests.Session] = None):
        firebase = config.get("firebase", {})
        return cls(
            firebase.get("web_api_key", ""),
            firebase.get("project_id") or None,
            base_url=firebase.get("identity_toolkit_url", DEFAULT_BASE_URL),
            session=session,
        )

    def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._session.post(
                f"{self.base_url}/accounts:{method}",
                params={"key": self.api_key},
                json=payload,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.bind(tag=TAG).error(f"Identity Toolkit {method} request failed: {exc}")
            raise ServiceUnavailable(f"Authentication service unavailable: {exc}") from exc
        if response.status_code != 200:
            message = _error_message(response)
            logger.bind(tag=TAG).warning(
                f"Identity Toolkit {method} failed: {response.status_code} {message}"
            )
            raise _IdentityError(method, response.status_code, message)
        return response.json()

    def sign_in(self, email: str, password: str) -> AuthUser:
        validate_login(email, password)
        try:
            data = self._call(
                "signInWithPassword",
                {"email": email, "password": password, "returnSecureToken": True},
            )
        except _IdentityError as exc:
            raise Unauthenticated(exc.message) from exc
        logger.bind(tag=TAG).info(f"Signed in user {data.get('localId')}")
        return _user_from_response(data)

    def register(
        self, username: str, email: str, password: str, confirm_password: str
    ) -> AuthUser:
        validate_registration(username, email, password, confirm_password)
        try:
            data = self._call(
                "signUp",
                {"email": email, "password": password, "returnSecureToken": True},
            )
        except _IdentityError as exc:
            raise RegistrationError(exc.message) from exc
        user = _user_from_response(data)
        try:
            self._call(
                "update",
                {
                    "idToken": user.id_token,
                    "displayName": username,
                    "returnSecureToken": False,
                },
            )
            user.display_name = username
        except (_IdentityError, ServiceUnavailable) as exc:
            # The account exists; a missing display name is not fatal.
            logger.bind(tag=TAG).warning(f"Error updating profile for {user.uid}: {exc}")
        logger.bind(tag=TAG).info(f"Registered user {user.uid}")
        return user

    def verify_id_token(self, token: str) -> AuthUser:
        if not token:
            raise Unauthenticated("Missing ID token")
        try:
            claims = google_id_token.verify_firebase_token(
                token, google_requests.Request(), audience=self.project_id
            )
        except google_auth_exceptions.TransportError as exc:
            raise ServiceUnavailable(f"Could not fetch token signing keys: {exc}") from exc
        except ValueError as exc:
            raise Unauthenticated(f"Invalid ID token: {exc}") from exc
        if not claims or not claims.get("sub"):
            raise Unauthenticated("Invalid ID token")
        return AuthUser(
            uid=claims["sub"],
            email=claims.get("email"),
            display_name=claims.get("name"),
            id_token=token,
        )


class _IdentityError(Exception):
    def __init__(self, method: str, status_code: int, message: str):
        super().__init__(f"{method}: {status_code} {message}")
        self.status_code = status_code
        self.message = message


def _error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.text[:200]


def _user_from_response(data: Dict[str, Any]) -> AuthUser:
    expires_at = None
    expires_in = data.get("expiresIn")
    if expires_in:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
    return AuthUser(
        uid=data["localId"],
        email=data.get("email"),
        display_name=data.get("displayName") or None,
        id_token=data.get("idToken"),
        refresh_token=data.get("refreshToken"),
        expires_at=expires_at,
    )
