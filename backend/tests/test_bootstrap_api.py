"""Database bootstrap and managed container endpoint tests."""

import pytest
from httpx import AsyncClient

from setupkit.config import settings
from setupkit.main import app
from setupkit.middleware.exceptions import ProvisioningError
from setupkit.routers import health
from setupkit.routers.health import get_health_tester
from setupkit.services.commands import CommandResult
from setupkit.services.runtime import RuntimeConnection
from tests.fakes import (
    MANAGED_CS,
    PG_CS,
    UNREACHABLE,
    ScriptedTester,
    container_env,
    container_listing,
)

NAME = settings.managed_container_name
CONNECTION = {"provider": "postgres", "connection_string": PG_CS}


@pytest.mark.api
@pytest.mark.asyncio
class TestDatabaseBootstrap:

    async def test_requires_operator(self, client: AsyncClient):
        response = await client.get("/api/bootstrap/database")
        assert response.status_code == 401

    async def test_unconfigured_status(self, client: AsyncClient, auth_headers):
        response = await client.get("/api/bootstrap/database", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["configured"] is False
        assert data["connection_string_masked"] == ""

    async def test_save_requires_successful_test(self, client: AsyncClient, auth_headers):
        response = await client.post("/api/bootstrap/database", headers=auth_headers, json=CONNECTION)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "PRECONDITION_FAILED"
        assert error["details"]["precondition"] == "tested_connection"

    async def test_test_then_save(self, client: AsyncClient, auth_headers):
        tested = await client.post("/api/bootstrap/database/test", headers=auth_headers, json=CONNECTION)
        assert tested.status_code == 200
        assert tested.json()["success"] is True

        saved = await client.post("/api/bootstrap/database", headers=auth_headers, json=CONNECTION)
        assert saved.status_code == 200
        data = saved.json()
        assert data["configured"] is True
        assert data["provider"] == "postgres"
        assert data["connection_string_masked"].endswith("Password=****")
        assert "Password=x" not in saved.text
        assert data["restart_required"] is True

    async def test_failed_test_is_reported_not_raised(self, client: AsyncClient, auth_headers, tester):
        tester.results = [UNREACHABLE]
        response = await client.post("/api/bootstrap/database/test", headers=auth_headers, json=CONNECTION)
        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Host is unreachable.", "elapsed_ms": 5}

    async def test_unknown_provider(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/bootstrap/database/test",
            headers=auth_headers,
            json={"provider": "oracle", "connection_string": PG_CS},
        )
        assert response.status_code == 422
        assert response.json()["error"]["details"]["field"] == "provider"

    async def test_provision_and_reload(self, client: AsyncClient, auth_headers):
        await client.post("/api/bootstrap/database/test", headers=auth_headers, json=CONNECTION)
        await client.post("/api/bootstrap/database", headers=auth_headers, json=CONNECTION)

        provisioned = await client.post("/api/bootstrap/database/provision", headers=auth_headers)
        assert provisioned.status_code == 200
        assert provisioned.json()["provisioned_at"] is not None

        reloaded = await client.post("/api/bootstrap/database/reload", headers=auth_headers)
        assert reloaded.json()["restart_required"] is False

    async def test_provisioning_error_envelope(self, client: AsyncClient, auth_headers, provisioner):
        provisioner.error = ProvisioningError("The database user lacks privileges.", reason="insufficient_privileges")
        await client.post("/api/bootstrap/database/test", headers=auth_headers, json=CONNECTION)
        await client.post("/api/bootstrap/database", headers=auth_headers, json=CONNECTION)

        response = await client.post("/api/bootstrap/database/provision", headers=auth_headers)

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "PROVISIONING_INSUFFICIENT_PRIVILEGES"

    async def test_build_connection_string(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/bootstrap/database/connection-string",
            headers=auth_headers,
            json={"provider": "postgres", "host": "localhost", "database": "app", "user": "app_user", "password": "x"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["complete"] is True
        assert data["connection_string"] == "Host=localhost;Port=5432;Database=app;Username=app_user;Password=x"
        assert data["connection_string_masked"].endswith("Password=****")

    async def test_build_incomplete_connection_string(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/bootstrap/database/connection-string",
            headers=auth_headers,
            json={"provider": "mysql", "host": "maria"},
        )
        assert response.json() == {"complete": False, "connection_string": "", "connection_string_masked": ""}

    async def test_build_rejects_non_numeric_port(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/bootstrap/database/connection-string",
            headers=auth_headers,
            json={
                "provider": "postgres", "host": "db", "port": "54x3",
                "database": "app", "user": "u", "password": "p",
            },
        )
        assert response.status_code == 422
        assert response.json()["error"]["details"]["field"] == "port"


@pytest.mark.api
@pytest.mark.asyncio
class TestManagedContainerEndpoints:

    async def test_status_with_resolutions(self, client: AsyncClient, auth_headers, runner):
        runner.script("ps", container_listing(NAME))
        runner.script("inspect", container_env(user="alice"))

        response = await client.get(
            "/api/bootstrap/managed-container/status", headers=auth_headers, params={"username": "alice"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["exists"] and data["configured"]
        assert data["resolutions"] == ["reuse", "backup_and_recreate"]

    async def test_runtime_unavailable(self, client: AsyncClient, auth_headers, runner):
        runner.script("ps", CommandResult(exit_code=127, stderr="docker: command not found"))
        response = await client.get("/api/bootstrap/managed-container/status", headers=auth_headers)
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "CONNECTIVITY_ERROR"

    async def test_start_conflict(self, client: AsyncClient, auth_headers, runner):
        runner.script("ps", container_listing(NAME))
        runner.script("inspect", container_env(user="bob"))

        response = await client.post(
            "/api/bootstrap/managed-container/start",
            headers=auth_headers,
            json={"connection_string": MANAGED_CS},
        )

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONTAINER_CONFLICT"
        assert error["details"]["resolutions"] == ["backup_and_recreate", "recreate_without_backup"]
        assert error["details"]["container"]["configured"] is False

    async def test_start_and_progress(self, client: AsyncClient, auth_headers, runner):
        runner.script("ps", CommandResult(exit_code=0, stdout=""))

        response = await client.post(
            "/api/bootstrap/managed-container/start",
            headers=auth_headers,
            json={"connection_string": MANAGED_CS, "timeout_seconds": 30},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["database"]["configured"] is True

        progress = await client.get("/api/bootstrap/managed-container/progress", headers=auth_headers)
        messages = [item["message"] for item in progress.json()["messages"]]
        assert "Managed database is ready." in messages

    async def test_timeout_bounds(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/api/bootstrap/managed-container/start",
            headers=auth_headers,
            json={"connection_string": MANAGED_CS, "timeout_seconds": 0},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_recreate_backup_failure(self, client: AsyncClient, auth_headers, runner, setup_session):
        runner.script("ps", container_listing(NAME))
        runner.script("inspect", container_env(user="alice"))
        runner.script("exec", CommandResult(exit_code=1, stderr="pg_dump failed"))

        response = await client.post(
            "/api/bootstrap/managed-container/recreate",
            headers=auth_headers,
            json={"connection_string": MANAGED_CS, "backup": True},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["code"] == "BACKUP_FAILED"
        assert data["fallback_offered"] is True
        assert setup_session.backup_fallback_offered

    async def test_backup_download(self, client: AsyncClient, auth_headers, containers):
        containers.backup_directory.mkdir(parents=True)
        (containers.backup_directory / f"{NAME}_20260101_120000.sql").write_text("-- dump\n")

        response = await client.get(
            f"/api/bootstrap/managed-container/backup/{NAME}_20260101_120000.sql", headers=auth_headers
        )
        assert response.status_code == 200
        assert response.text == "-- dump\n"

        missing = await client.get("/api/bootstrap/managed-container/backup/nothing.sql", headers=auth_headers)
        assert missing.status_code == 404


@pytest.mark.api
@pytest.mark.asyncio
class TestHealth:

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["cache-control"] == "no-store"

    async def test_ready_reports_unreachable_target(self, client: AsyncClient, state_engine, monkeypatch):
        loaded = RuntimeConnection()
        loaded.provider, loaded.connection_string = "postgres", PG_CS
        monkeypatch.setattr(health, "engine", state_engine)
        monkeypatch.setattr(health, "runtime", loaded)
        app.dependency_overrides[get_health_tester] = lambda: ScriptedTester(UNREACHABLE)

        response = await client.get("/health/ready")

        assert response.status_code == 503
        checks = response.json()["checks"]
        assert checks["state_database"] == "ok"
        assert checks["target_database"] == "error: Host is unreachable."
