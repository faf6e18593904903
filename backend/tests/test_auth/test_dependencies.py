"""Tests for auth dependencies — token resolution exercised through /api/v1/auth/me."""

import uuid
from datetime import timedelta

from httpx import AsyncClient

from app.auth.jwt import create_access_token, create_token_pair
from app.models.user import User

ME_URL = "/api/v1/auth/me"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


class TestGetCurrentUser:
    """Test get_current_user / get_current_active_user via the /me endpoint."""

    async def test_valid_token_returns_profile(
        self, client: AsyncClient, test_user: User, auth_headers: dict[str, str]
    ):
        response = await client.get(ME_URL, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(test_user.id)
        assert data["email"] == test_user.email
        assert data["is_active"] is True

    async def test_missing_header_is_unauthorized(self, client: AsyncClient):
        response = await client.get(ME_URL)
        assert response.status_code == 401
        assert response.json()["detail"] == "Not authenticated"
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_expired_token_rejected(self, client: AsyncClient, test_user: User):
        token = create_access_token({"sub": str(test_user.id)}, expires_delta=timedelta(seconds=-1))
        response = await client.get(ME_URL, headers=_bearer(token))
        assert response.status_code == 401

    async def test_invalid_token_format(self, client: AsyncClient):
        response = await client.get(ME_URL, headers=_bearer("not.a.valid.jwt"))
        assert response.status_code == 401

    async def test_refresh_token_type_rejected(self, client: AsyncClient, test_user: User):
        tokens = create_token_pair(str(test_user.id))
        response = await client.get(ME_URL, headers=_bearer(tokens["refresh_token"]))
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token type"

    async def test_non_uuid_subject_rejected(self, client: AsyncClient):
        token = create_access_token({"sub": "not-a-uuid"})
        response = await client.get(ME_URL, headers=_bearer(token))
        assert response.status_code == 401

    async def test_nonexistent_user_id_rejected(self, client: AsyncClient):
        token = create_access_token({"sub": str(uuid.uuid4())})
        response = await client.get(ME_URL, headers=_bearer(token))
        assert response.status_code == 401

    async def test_inactive_user_forbidden(self, client: AsyncClient, make_user, headers_for):
        user = await make_user(is_active=False)
        response = await client.get(ME_URL, headers=headers_for(user))
        assert response.status_code == 403
        assert response.json()["detail"] == "Account is inactive"


class TestGetOptionalUser:
    """get_optional_user backs the gate; bad credentials read as anonymous."""

    async def test_invalid_token_is_anonymous(self, client: AsyncClient):
        response = await client.get("/api/v1/billing/gate", headers=_bearer("garbage"))
        assert response.status_code == 200
        assert response.json()["view"] == "login_prompt"

    async def test_inactive_user_is_anonymous(self, client: AsyncClient, make_user, headers_for):
        user = await make_user(is_active=False)
        response = await client.get("/api/v1/billing/gate", headers=headers_for(user))
        assert response.json()["view"] == "login_prompt"
