"""Tests for the setup operator authentication endpoints."""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from setupkit.auth.jwt import create_access_token
from setupkit.config import settings


@pytest.mark.api
@pytest.mark.asyncio
class TestAuthEndpoints:
    """Test authentication endpoints."""

    async def test_login_success(self, client: AsyncClient):
        """Bootstrap credentials return a token bound to a new session."""
        response = await client.post(
            "/api/auth/login",
            json={
                "username": settings.bootstrap_admin_username,
                "password": settings.bootstrap_admin_password,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["session_id"]

        me = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert me.status_code == 200
        assert me.json()["username"] == settings.bootstrap_admin_username
        assert me.json()["role"] == "system_admin"
        assert me.json()["session_id"] == data["session_id"]

    async def test_login_wrong_password(self, client: AsyncClient):
        response = await client.post(
            "/api/auth/login",
            json={"username": settings.bootstrap_admin_username, "password": "wrong"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "HTTP_401"

    async def test_missing_token(self, client: AsyncClient):
        response = await client.get("/api/auth/me")
        assert response.status_code == 401

    async def test_invalid_token(self, client: AsyncClient):
        response = await client.get(
            "/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_expired_token(self, client: AsyncClient, setup_session):
        token = create_access_token(
            setup_session.operator, setup_session.session_id, expires_delta=timedelta(minutes=-1)
        )
        response = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_logout_closes_session(self, client: AsyncClient, auth_headers, setup_session):
        response = await client.post("/api/auth/logout", headers=auth_headers)
        assert response.status_code == 204
        assert setup_session.closed
        assert setup_session.cancel_event.is_set()

        response = await client.get("/api/auth/me", headers=auth_headers)
        assert response.status_code == 401
        assert "log in again" in response.json()["error"]["message"]
