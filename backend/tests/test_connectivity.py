"""Tests for the connectivity tester and driver error translation."""

import asyncio

import pytest

from setupkit.services.connection_string import DatabaseProvider
from setupkit.services.connectivity import (
    ConnectivityTester,
    describe_connection_error,
    is_transient_error,
)

PG_CS = "Host=db;Database=app;Username=u;Password=p"


class FakeEngine:
    def __init__(self, error: Exception | None = None, delay: float = 0):
        self.error = error
        self.delay = delay
        self.executed: list[str] = []
        self.disposed = False
        self.url = None

    def connect(self):
        return self

    async def __aenter__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, statement):
        self.executed.append(str(statement))

    async def dispose(self):
        self.disposed = True


def factory_for(engine: FakeEngine):
    def factory(url, **kwargs):
        engine.url = url
        return engine
    return factory


@pytest.mark.unit
@pytest.mark.asyncio
class TestConnectivityTester:

    async def test_success(self):
        engine = FakeEngine()
        result = await ConnectivityTester(timeout=2, engine_factory=factory_for(engine)).test(
            DatabaseProvider.POSTGRES, PG_CS
        )
        assert result.success
        assert result.message == "Connection successful."
        assert engine.executed == ["SELECT 1"]
        assert engine.disposed

    async def test_admin_probe_uses_admin_database(self):
        engine = FakeEngine()
        await ConnectivityTester(engine_factory=factory_for(engine)).test(
            "postgres", PG_CS, admin=True
        )
        assert engine.url.database == "postgres"

    async def test_blank_connection_string(self):
        result = await ConnectivityTester().test("postgres", "   ")
        assert not result.success
        assert result.message == "Connection string is empty."

    async def test_authentication_failure(self):
        engine = FakeEngine(error=Exception('password authentication failed for user "u"'))
        result = await ConnectivityTester(engine_factory=factory_for(engine)).test("postgres", PG_CS)
        assert not result.success
        assert result.message == "Authentication failed for the given user."
        assert engine.disposed

    async def test_timeout(self):
        engine = FakeEngine(delay=1)
        result = await ConnectivityTester(timeout=0.05, engine_factory=factory_for(engine)).test(
            "postgres", PG_CS
        )
        assert not result.success
        assert result.message == "Connection timed out after 0.05 seconds."

    async def test_malformed_string_never_raises(self):
        result = await ConnectivityTester().test("postgres", "Host")
        assert not result.success
        assert result.message == "Malformed connection string."

    async def test_factory_error(self):
        def factory(url, **kwargs):
            raise ConnectionRefusedError("Connection refused")

        result = await ConnectivityTester(engine_factory=factory).test("postgres", PG_CS)
        assert result.message == "Host is unreachable."


@pytest.mark.unit
class TestErrorTranslation:

    @pytest.mark.parametrize("raw, expected", [
        ('database "app" does not exist', "The database does not exist."),
        ("Unknown database 'app'", "The database does not exist."),
        ("Login failed for user 'sa'.", "Authentication failed for the given user."),
        ("could not connect to server: Connection refused", "Host is unreachable."),
        ("SSL handshake failed", "Secure connection negotiation failed. Check the SSL settings and certificates."),
        ("something odd", "Could not connect to the database."),
    ])
    def test_describe(self, raw, expected):
        assert describe_connection_error(Exception(raw)) == expected

    def test_missing_driver(self):
        assert describe_connection_error(ImportError("asyncpg")) == (
            "The database driver for this provider is not installed."
        )

    def test_transient(self):
        assert is_transient_error(Exception("the database system is starting up"))
        assert is_transient_error(ConnectionResetError())
        assert not is_transient_error(Exception("permission denied for database app"))
