"""
JWT access-token handling for the HTTP adapter.

Tokens are issued by the institution's sign-on service; this module only
needs to verify them (and mint them for scripts and tests).
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from taskflow.config import get_settings


class AccessTokenPayload(BaseModel):
    """JWT access token payload."""

    sub: str  # User ID
    username: str
    exp: datetime
    iat: datetime
    jti: str


class JWTManager:
    """
    JWT token creation and verification.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        access_token_expire_minutes: Optional[int] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.secret_key
        self.algorithm = algorithm or settings.algorithm
        self.access_token_expire_minutes = (
            access_token_expire_minutes or settings.access_token_expire_minutes
        )

    def create_access_token(
        self,
        user_id: uuid.UUID,
        username: str,
        expires_delta: Optional[timedelta] = None,
    ) -> tuple[str, datetime, str]:
        """
        Create a new access token.

        Returns:
            Tuple of (token, expiration_datetime, token_id)
        """
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.access_token_expire_minutes))
        jti = str(uuid.uuid4())

        payload = {
            "sub": str(user_id),
            "username": username,
            "exp": expire,
            "iat": now,
            "jti": jti,
            "type": "access",
        }

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        return token, expire, jti

    def verify_access_token(self, token: str) -> Optional[AccessTokenPayload]:
        """
        Verify and decode an access token.

        Returns:
            AccessTokenPayload if valid, None otherwise
        """
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
            )

            if payload.get("type") != "access":
                return None

            return AccessTokenPayload(
                sub=payload["sub"],
                username=payload["username"],
                exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                jti=payload["jti"],
            )
        except (JWTError, KeyError):
            return None


def create_access_token(
    user_id: uuid.UUID,
    username: str,
    expires_delta: Optional[timedelta] = None,
) -> tuple[str, datetime, str]:
    """Create an access token."""
    return JWTManager().create_access_token(user_id, username, expires_delta)


def verify_access_token(token: str) -> Optional[AccessTokenPayload]:
    """Verify an access token."""
    return JWTManager().verify_access_token(token)
