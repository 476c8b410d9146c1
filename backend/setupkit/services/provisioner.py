"""Schema provisioner.

Applies the platform schema to the persisted target database:

  1. wait until the server accepts connections (administrative database)
  2. create the target database when missing (retried on transient errors)
  3. `alembic upgrade head` in a subprocess (retried on transient errors)
  4. verify that the `users` table exists

Every step is idempotent, so provisioning an already provisioned database
is a no-op. Failures raise ProvisioningError with a reason the operator can
act on; raw driver and migration output only goes to the log.
"""

import asyncio
import logging
import sys

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import create_async_engine

from setupkit.config import settings
from setupkit.middleware.exceptions import ProvisioningError
from setupkit.services.commands import CommandRunner
from setupkit.services.connection_string import (
    DatabaseProvider,
    mask_connection_string,
    parse_connection_string,
)
from setupkit.services.connectivity import (
    ConnectivityTester,
    create_target_engine,
    describe_connection_error,
    is_transient_error,
    is_transient_message,
)

logger = logging.getLogger(__name__)

MIGRATION_PROVIDER_ENV = "SETUPKIT_MIGRATION_PROVIDER"
MIGRATION_CONNECTION_ENV = "SETUPKIT_MIGRATION_CONNECTION"

_PRIVILEGE_MARKERS = (
    "permission denied",
    "must be owner",
    "access denied",
    "create database permission denied",
    "insufficient privilege",
)
_CONFLICT_MARKERS = ("already exists", "duplicate", "there is already an object")


def classify_failure(raw: str) -> str:
    """Map raw driver/migration output to a ProvisioningError reason."""
    lowered = (raw or "").lower()
    if any(marker in lowered for marker in _PRIVILEGE_MARKERS):
        return "insufficient_privileges"
    if any(marker in lowered for marker in _CONFLICT_MARKERS):
        return "schema_conflict"
    if "authentication failed" in lowered or is_transient_message(lowered):
        return "cannot_connect"
    return "failed"


_REASON_MESSAGES = {
    "insufficient_privileges": "The database user lacks the privileges required to create the schema.",
    "schema_conflict": "The database already contains objects that conflict with the platform schema.",
    "cannot_connect": "The database could not be reached while applying the schema.",
    "failed": "Applying the platform schema failed. Check the service logs for details.",
}


class SchemaProvisioner:

    def __init__(
        self,
        runner: CommandRunner,
        tester: ConnectivityTester,
        *,
        engine_factory=create_async_engine,
        sleep=asyncio.sleep,
        ready_timeout: float = 90.0,
        ready_interval: float = 3.0,
        alembic_directory: str | None = None,
    ):
        self.runner = runner
        self.tester = tester
        self._engine_factory = engine_factory
        self._sleep = sleep
        self.ready_timeout = ready_timeout
        self.ready_interval = ready_interval
        self.alembic_directory = alembic_directory or settings.alembic_directory

    async def provision(self, provider: DatabaseProvider, connection_string: str) -> None:
        logger.info("Provisioning schema on %s", mask_connection_string(connection_string))
        await self._wait_for_server(provider, connection_string)
        await self._with_retry(
            "database create", lambda: self._ensure_database(provider, connection_string), delay=2.0
        )
        await self._migrate(provider, connection_string)
        provisioned = await self._with_retry(
            "schema verification", lambda: self.is_provisioned(provider, connection_string), delay=3.0
        )
        if not provisioned:
            raise ProvisioningError(
                "Database tables are not ready yet. Try again in a few seconds.",
                reason="incomplete",
            )
        logger.info("Schema provisioned")

    # ── Steps ─────────────────────────────────────────────────

    async def _wait_for_server(self, provider, connection_string: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while True:
            result = await self.tester.test(provider, connection_string, admin=True)
            if result.success:
                return
            if loop.time() + self.ready_interval >= deadline:
                raise ProvisioningError(
                    f"Database is not ready yet: {result.message}", reason="cannot_connect"
                )
            await self._sleep(self.ready_interval)

    async def _with_retry(self, label: str, operation, *, delay: float, attempts: int = 4):
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except ProvisioningError:
                raise
            except Exception as exc:
                if attempt < attempts and is_transient_error(exc):
                    logger.warning(
                        "Transient %s error (attempt %d/%d), retrying: %s",
                        label, attempt, attempts, exc,
                    )
                    await self._sleep(delay)
                    delay *= 2
                    continue
                logger.warning("%s failed: %s", label.capitalize(), exc)
                reason = classify_failure(str(exc))
                message = (
                    describe_connection_error(exc)
                    if reason == "cannot_connect"
                    else _REASON_MESSAGES[reason]
                )
                raise ProvisioningError(message, reason=reason) from exc

    async def _ensure_database(self, provider: DatabaseProvider, connection_string: str) -> None:
        database = parse_connection_string(provider, connection_string).database.strip()
        if not database:
            return

        engine = create_target_engine(
            provider, connection_string, admin=True, engine_factory=self._engine_factory
        ).execution_options(isolation_level="AUTOCOMMIT")
        try:
            async with engine.connect() as conn:
                if provider == DatabaseProvider.MYSQL:
                    safe = database.replace("`", "``")
                    await conn.execute(text(f"CREATE DATABASE IF NOT EXISTS `{safe}`"))
                    return

                if provider == DatabaseProvider.SQLSERVER:
                    exists = await conn.scalar(
                        text("SELECT 1 FROM sys.databases WHERE name = :name"), {"name": database}
                    )
                    statement = f"CREATE DATABASE [{database.replace(']', ']]')}]"
                else:
                    exists = await conn.scalar(
                        text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": database}
                    )
                    statement = f'CREATE DATABASE "{database.replace(chr(34), chr(34) * 2)}"'

                if exists is None:
                    logger.info("Creating database %s", database)
                    await conn.execute(text(statement))
        finally:
            await engine.dispose()

    async def _migrate(self, provider: DatabaseProvider, connection_string: str) -> None:
        cmd = [sys.executable, "-m", "alembic", "upgrade", "head"]
        env = {
            MIGRATION_PROVIDER_ENV: provider.value,
            MIGRATION_CONNECTION_ENV: connection_string,
        }
        delay = 3.0
        attempts = 4
        for attempt in range(1, attempts + 1):
            result = await self.runner.run(
                cmd,
                timeout=settings.migration_timeout_seconds,
                env=env,
                cwd=self.alembic_directory,
            )
            if result.ok:
                return
            if result.timed_out:
                raise ProvisioningError(
                    "Schema migration timed out and may still be running. Check again shortly.",
                    reason="incomplete",
                )
            output = (result.stderr or result.stdout).strip()
            if attempt < attempts and is_transient_message(output):
                logger.warning(
                    "Transient migration error (attempt %d/%d), retrying: %s",
                    attempt, attempts, output[-500:],
                )
                await self._sleep(delay)
                delay *= 2
                continue
            logger.warning("alembic upgrade failed (exit %s): %s", result.exit_code, output)
            reason = classify_failure(output)
            raise ProvisioningError(_REASON_MESSAGES[reason], reason=reason)

    # ── Verification ──────────────────────────────────────────

    async def is_provisioned(self, provider: DatabaseProvider, connection_string: str) -> bool:
        """True when the `users` table exists. Connection errors propagate."""
        engine = create_target_engine(
            provider, connection_string, engine_factory=self._engine_factory
        )
        try:
            async with engine.connect() as conn:
                return await conn.run_sync(lambda sync_conn: inspect(sync_conn).has_table("users"))
        finally:
            await engine.dispose()
