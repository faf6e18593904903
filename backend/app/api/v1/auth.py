"""Auth API router — identity of the bearer token's user.

Sign-up, sign-in and token issuance belong to the auth provider; this service
only verifies the tokens it hands out.
"""

import logging

from fastapi import APIRouter, Depends

from app.auth.dependencies import get_current_active_user
from app.models.user import User
from app.schemas.auth import UserResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_active_user)) -> UserResponse:
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)
