"""Pytest configuration and fixtures for setupkit tests.

Provides an in-memory state database, scripted fakes for the connectivity
tester, command runner and provisioner, and an authenticated operator
session for the API tests.
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import setupkit.models  # noqa: F401  (register tables)
from setupkit.auth.jwt import create_access_token
from setupkit.database import StateBase, get_db
from setupkit.main import app
from setupkit.services.managed_container import ManagedContainerController
from setupkit.services.orchestrator import SetupOrchestrator, get_orchestrator
from setupkit.services.runtime import RuntimeConnection
from setupkit.services.sessions import registry
from tests.fakes import FakeProvisioner, RecordingRunner, ScriptedTester


# ── State database ───────────────────────────────────────────────

@pytest_asyncio.fixture
async def state_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(StateBase.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(state_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session on the in-memory state database."""
    session_factory = async_sessionmaker(state_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


# ── Services ─────────────────────────────────────────────────────

@pytest.fixture
def tester() -> ScriptedTester:
    return ScriptedTester()


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def runtime_connection() -> RuntimeConnection:
    return RuntimeConnection()


@pytest.fixture
def containers(runner, tester, tmp_path) -> ManagedContainerController:
    return ManagedContainerController(
        runner, tester, poll_interval=0, max_attempts=12, backup_directory=str(tmp_path / "backups")
    )


@pytest.fixture
def orchestrator(db_session, tester, containers, provisioner, runtime_connection) -> SetupOrchestrator:
    return SetupOrchestrator(
        db_session,
        tester=tester,
        containers=containers,
        provisioner=provisioner,
        runtime_connection=runtime_connection,
    )


@pytest.fixture(autouse=True)
def _reset_sessions():
    yield
    registry.clear()


@pytest.fixture
def setup_session():
    return registry.open("setup_admin")


# ── HTTP client ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(db_session, orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Test client with the state database and orchestrator overridden."""

    async def override_get_db():
        yield db_session

    async def override_get_orchestrator():
        return orchestrator

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = override_get_orchestrator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def test_token(setup_session) -> str:
    return create_access_token(setup_session.operator, setup_session.session_id)


@pytest.fixture
def auth_headers(test_token: str) -> dict:
    return {"Authorization": f"Bearer {test_token}"}


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")
