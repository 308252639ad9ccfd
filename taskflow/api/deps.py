"""
FastAPI dependencies for authentication, database sessions and the
submission pipeline.
"""

import uuid
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow.database import get_db
from taskflow.engines.submission.pipeline import SubmissionPipeline
from taskflow.kernel.identity.jwt import verify_access_token
from taskflow.kernel.models.user import User


# Security scheme
security = HTTPBearer(auto_error=False)


DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DbSession,
) -> User:
    """Get current authenticated user or raise 401."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = uuid.UUID(payload.sub)
    except ValueError:
        user_id = None
    user = await db.get(User, user_id) if user_id is not None else None

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


def get_pipeline(request: Request) -> SubmissionPipeline:
    """The process-wide pipeline created at startup."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = SubmissionPipeline()
        request.app.state.pipeline = pipeline
    return pipeline


Pipeline = Annotated[SubmissionPipeline, Depends(get_pipeline)]


def get_request_id(request: Request) -> Optional[str]:
    """Get request correlation ID (set by RequestIdMiddleware)."""
    return getattr(request.state, "request_id", None)
