"""FastAPI authentication dependencies for route protection."""

import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.jwt import decode_token
from app.database import get_db
from app.models.user import User

# auto_error=False so a missing header is a 401 (strict) or None (optional), never a 403
_bearer_scheme = HTTPBearer(auto_error=False)


class _InvalidToken(Exception):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


async def _user_from_token(db: AsyncSession, token: str) -> User:
    """Resolve an access token to its user.

    Raises:
        _InvalidToken: bad signature/expiry, refresh token, bad subject, unknown user.
    """
    try:
        payload = decode_token(token)
    except JWTError:
        raise _InvalidToken("Could not validate credentials") from None

    # Only accept access tokens, not refresh tokens
    if payload.get("type") != "access":
        raise _InvalidToken("Invalid token type")

    sub: str | None = payload.get("sub")
    try:
        user_id = uuid.UUID(sub) if sub is not None else None
    except ValueError:
        user_id = None
    if user_id is None:
        raise _InvalidToken("Could not validate credentials")

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise _InvalidToken("Could not validate credentials")
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the Bearer token, then return the authenticated user.

    Raises:
        HTTPException 401: Missing/invalid/expired token, wrong type, or user not found.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return await _user_from_token(db, credentials.credentials)
    except _InvalidToken as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.detail,
            headers={"WWW-Authenticate": "Bearer"},
        ) from None


async def get_current_active_user(
    user: User = Depends(get_current_user),
) -> User:
    """Return the current user only if their account is active.

    Raises:
        HTTPException 403: If the user account is inactive.
    """
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    return user


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Optionally authenticate a user from a Bearer token.

    Returns ``None`` instead of raising for a missing or unusable token, so
    the gate can answer anonymous callers with a login prompt.
    """
    if credentials is None:
        return None
    try:
        user = await _user_from_token(db, credentials.credentials)
    except _InvalidToken:
        return None
    return user if user.is_active else None
