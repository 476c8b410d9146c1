"""Setup wizard step endpoint tests."""

import pytest
from httpx import AsyncClient


ADMIN_STEP = {
    "step_id": "admin",
    "data": {"admin_name": "Ada", "admin_email": "ada@example.com"},
    "is_completed": True,
    "secrets": {"admin_password": {"action": "set", "value": "Sup3r-secret"}},
}


@pytest.mark.api
@pytest.mark.asyncio
class TestSetupSteps:
    """Test setup wizard endpoints."""

    async def test_status_is_anonymous(self, client: AsyncClient):
        response = await client.get("/api/setup/status")
        assert response.status_code == 200
        assert response.json() == {
            "is_configured": False,
            "active_step": "database",
            "provisioned": False,
            "restart_required": False,
        }

    async def test_save_step_hides_secrets(self, client: AsyncClient, auth_headers):
        response = await client.post("/api/setup/steps", headers=auth_headers, json=ADMIN_STEP)

        assert response.status_code == 200
        data = response.json()
        assert data["is_completed"] is True
        assert data["saved_secrets"] == {"admin_password": True}
        assert "Sup3r-secret" not in response.text

    async def test_unchanged_secret_survives_resave(self, client: AsyncClient, auth_headers):
        await client.post("/api/setup/steps", headers=auth_headers, json=ADMIN_STEP)
        resave = {
            **ADMIN_STEP,
            "data": {"admin_name": "Ada L.", "admin_email": "ada@example.com"},
            "secrets": {"admin_password": {"action": "unchanged"}},
        }

        response = await client.post("/api/setup/steps", headers=auth_headers, json=resave)

        assert response.status_code == 200
        assert response.json()["saved_secrets"] == {"admin_password": True}

    async def test_secret_in_data_rejected(self, client: AsyncClient, auth_headers):
        body = {"step_id": "admin", "data": {"admin_password": "plain"}}
        response = await client.post("/api/setup/steps", headers=auth_headers, json=body)
        assert response.status_code == 422
        assert response.json()["error"]["details"]["field"] == "admin_password"

    async def test_set_without_value_rejected(self, client: AsyncClient, auth_headers):
        body = {**ADMIN_STEP, "secrets": {"admin_password": {"action": "set"}}}
        response = await client.post("/api/setup/steps", headers=auth_headers, json=body)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_completing_auth_needs_a_provider(self, client: AsyncClient, auth_headers):
        body = {"step_id": "auth", "data": {"auth_local": "false"}, "is_completed": True}
        response = await client.post("/api/setup/steps", headers=auth_headers, json=body)
        assert response.status_code == 422
        assert response.json()["error"]["details"]["field"] == "auth_local"

    async def test_draft_save_skips_validation(self, client: AsyncClient, auth_headers):
        body = {"step_id": "auth", "data": {"auth_azure": "true"}, "is_completed": False}
        response = await client.post("/api/setup/steps", headers=auth_headers, json=body)
        assert response.status_code == 200
        assert response.json()["is_completed"] is False

    async def test_list_and_clear(self, client: AsyncClient, auth_headers):
        await client.post("/api/setup/steps", headers=auth_headers, json=ADMIN_STEP)

        listed = await client.get("/api/setup/steps", headers=auth_headers)
        assert listed.status_code == 200
        assert [step["step_id"] for step in listed.json()["steps"]] == ["admin"]
        assert listed.json()["active_step"] == "database"

        cleared = await client.delete("/api/setup/steps/admin", headers=auth_headers)
        assert cleared.status_code == 204

        listed = await client.get("/api/setup/steps", headers=auth_headers)
        assert listed.json()["steps"] == []

    async def test_unknown_step(self, client: AsyncClient, auth_headers):
        response = await client.delete("/api/setup/steps/billing", headers=auth_headers)
        assert response.status_code == 422

    async def test_initialize_before_provisioning(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/setup/initialize",
            headers=auth_headers,
            json={"admin_email": "owner@example.com", "admin_name": "Owner"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["details"]["precondition"] == "provisioned"

    async def test_initialize_rejects_bad_email(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/setup/initialize",
            headers=auth_headers,
            json={"admin_email": "not-an-email", "admin_name": "Owner"},
        )
        assert response.status_code == 422
