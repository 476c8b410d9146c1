"""Connectivity tester.

Opens a connection to the target database under a bounded timeout, runs
`SELECT 1` and closes it again. Nothing is persisted; the result only gates
later orchestrator actions within the same operator session.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from setupkit.config import settings
from setupkit.middleware.exceptions import SetupError
from setupkit.services.connection_string import (
    DatabaseProvider,
    mask_connection_string,
    normalize_provider,
    target_engine_options,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityTestResult:
    success: bool
    message: str
    elapsed_ms: int


def create_target_engine(
    provider: DatabaseProvider | str,
    connection_string: str,
    *,
    admin: bool = False,
    timeout: float | None = None,
    engine_factory=create_async_engine,
) -> AsyncEngine:
    """Short-lived engine on the target database (no pooling)."""
    url, connect_args = target_engine_options(
        provider, connection_string, admin=admin, timeout=timeout
    )
    return engine_factory(url, connect_args=connect_args, poolclass=NullPool)


_AUTH_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "access denied",
    "login failed",
    "invalid authorization",
)
_MISSING_DB_MARKERS = ("unknown database", "cannot open database")
_UNREACHABLE_MARKERS = (
    "connection refused",
    "could not connect",
    "name or service not known",
    "nodename nor servname",
    "no route to host",
    "getaddrinfo",
    "network is unreachable",
    "server was not found",
    "can't connect",
    "connection reset",
)
_TRANSIENT_MARKERS = _UNREACHABLE_MARKERS + (
    "the database system is starting up",
    "the database system is shutting down",
    "too many connections",
    "timeout",
    "timed out",
)


def describe_connection_error(exc: BaseException, timeout: float | None = None) -> str:
    """Operator-safe description of a driver failure."""
    if isinstance(exc, SetupError):
        return exc.message
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        seconds = timeout or settings.connect_timeout_seconds
        return f"Connection timed out after {seconds:g} seconds."
    if isinstance(exc, FileNotFoundError):
        return "A configured certificate file could not be found."
    if isinstance(exc, ImportError):
        return "The database driver for this provider is not installed."

    raw = str(exc).lower()
    if any(marker in raw for marker in _AUTH_MARKERS):
        return "Authentication failed for the given user."
    if any(marker in raw for marker in _MISSING_DB_MARKERS) or (
        "database" in raw and "does not exist" in raw
    ):
        return "The database does not exist."
    if isinstance(exc, ConnectionRefusedError) or any(
        marker in raw for marker in _UNREACHABLE_MARKERS
    ):
        return "Host is unreachable."
    if "ssl" in raw or "certificate" in raw or "tls" in raw:
        return "Secure connection negotiation failed. Check the SSL settings and certificates."
    return "Could not connect to the database."


def is_transient_message(raw: str) -> bool:
    raw = (raw or "").lower()
    return any(marker in raw for marker in _TRANSIENT_MARKERS)


def is_transient_error(exc: BaseException) -> bool:
    """True for failures worth retrying (server starting, network blips)."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return is_transient_message(str(exc))


class ConnectivityTester:
    """Open-and-close probe; `test` never raises."""

    def __init__(self, timeout: float | None = None, engine_factory=create_async_engine):
        self.timeout = timeout or settings.connect_timeout_seconds
        self._engine_factory = engine_factory

    async def test(
        self,
        provider: DatabaseProvider | str,
        connection_string: str,
        *,
        admin: bool = False,
    ) -> ConnectivityTestResult:
        started = time.perf_counter()
        try:
            provider = normalize_provider(provider) if isinstance(provider, str) else provider
            if not (connection_string or "").strip():
                return ConnectivityTestResult(False, "Connection string is empty.", 0)
            await asyncio.wait_for(
                self._probe(provider, connection_string, admin), timeout=self.timeout
            )
        except Exception as exc:  # captured into the result
            elapsed = int((time.perf_counter() - started) * 1000)
            logger.warning(
                "Connectivity test failed for %s: %s",
                mask_connection_string(connection_string),
                exc,
            )
            return ConnectivityTestResult(
                False, describe_connection_error(exc, self.timeout), elapsed
            )

        elapsed = int((time.perf_counter() - started) * 1000)
        logger.info("Connectivity test succeeded in %d ms", elapsed)
        return ConnectivityTestResult(True, "Connection successful.", elapsed)

    async def _probe(self, provider, connection_string: str, admin: bool) -> None:
        engine = create_target_engine(
            provider,
            connection_string,
            admin=admin,
            timeout=self.timeout,
            engine_factory=self._engine_factory,
        )
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        finally:
            await engine.dispose()
