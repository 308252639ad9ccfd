"""
Identity Core - bearer token verification.
"""

from taskflow.kernel.identity.jwt import (
    JWTManager,
    AccessTokenPayload,
    create_access_token,
    verify_access_token,
)

__all__ = [
    "JWTManager",
    "AccessTokenPayload",
    "create_access_token",
    "verify_access_token",
]
