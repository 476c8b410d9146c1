"""Setup orchestrator.

The single workflow API the routers consume. It sequences the builder,
tester, container controller, provisioner and step store, and refuses any
call made out of order with a PreconditionError:

  save_connection     needs the session's latest test to be a success for
                      the exact same provider + connection string
  provision_schema    needs a persisted connection whose latest test passed
  finalize            needs provisioned_at, no pending reload, and the admin
                      and auth steps completed

Nothing is mutated before its preconditions are checked.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from fastapi import Depends
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from setupkit.database import get_db
from setupkit.middleware.exceptions import (
    ConnectivityError,
    PreconditionError,
    ProvisioningError,
    SetupValidationError,
)
from setupkit.models.state.bootstrap_config import SINGLETON_ID, BootstrapConfig
from setupkit.models.state.setup_step import SetupStepState
from setupkit.schemas.setup import InitializeSetupRequest
from setupkit.services.commands import AsyncCommandRunner
from setupkit.services.connection_string import (
    DatabaseProvider,
    mask_connection_string,
    normalize_provider,
    parse_connection_string,
)
from setupkit.services.connectivity import (
    ConnectivityTester,
    ConnectivityTestResult,
    create_target_engine,
    describe_connection_error,
)
from setupkit.services.initializer import InitializeResult, initialize_platform
from setupkit.services.managed_container import (
    ContainerOperationResult,
    ManagedContainerController,
    ManagedContainerStatus,
)
from setupkit.services.provisioner import SchemaProvisioner
from setupkit.services.runtime import RuntimeConnection, runtime
from setupkit.services.sessions import SetupSession
from setupkit.services.step_store import (
    SECRET_FIELDS,
    STEP_ORDER,
    SecretValue,
    StepStateStore,
    missing_required_fields,
)

logger = logging.getLogger(__name__)

_MISSING_TABLE_RE = re.compile(
    r"no such table|relation \S+ does not exist|invalid object name|table \S+ doesn't exist", re.IGNORECASE
)


def finalize_failure(exc: Exception) -> Exception:
    """Seeding failures: a missing table means provisioning is incomplete."""
    if _MISSING_TABLE_RE.search(str(exc)):
        return ProvisioningError(
            "The platform schema is incomplete. Provision the database again.", reason="incomplete"
        )
    if isinstance(exc, (OperationalError, OSError)) or getattr(exc, "connection_invalidated", False):
        return ConnectivityError(describe_connection_error(exc))
    return ProvisioningError(
        "Writing the initial platform data failed. Check the service logs for details.",
        reason="failed",
    )


@dataclass(frozen=True)
class ManagedOutcome:
    result: ContainerOperationResult
    database: dict | None = None


def active_step(steps: list[SetupStepState]) -> str:
    """First incomplete step in canonical order; summary once the rest are done."""
    completed = {step.step_id for step in steps if step.is_completed}
    for step_id in STEP_ORDER[:-1]:
        if step_id not in completed:
            return step_id
    return "summary"


def step_view(step: SetupStepState) -> dict:
    secrets = step.secrets or {}
    return {
        "step_id": step.step_id,
        "data": dict(step.data or {}),
        "is_completed": step.is_completed,
        "saved_at": step.saved_at,
        "saved_secrets": {name: bool(secrets.get(name)) for name in SECRET_FIELDS[step.step_id]},
    }


class SetupOrchestrator:

    def __init__(
        self,
        db: AsyncSession,
        *,
        tester: ConnectivityTester,
        containers: ManagedContainerController,
        provisioner: SchemaProvisioner,
        runtime_connection: RuntimeConnection = runtime,
        platform_engine_factory=create_target_engine,
    ):
        self.db = db
        self.steps = StepStateStore(db)
        self.tester = tester
        self.containers = containers
        self.provisioner = provisioner
        self.runtime = runtime_connection
        self._platform_engine_factory = platform_engine_factory

    # ── Database connection ───────────────────────────────────

    async def get_config(self) -> BootstrapConfig | None:
        return await self.db.get(BootstrapConfig, SINGLETON_ID)

    def status_view(self, config: BootstrapConfig | None) -> dict:
        if config is None:
            return {
                "configured": False,
                "provider": None,
                "connection_string_masked": "",
                "provisioned_at": None,
                "updated_at": None,
                "restart_required": False,
            }
        return {
            "configured": True,
            "provider": config.provider,
            "connection_string_masked": mask_connection_string(config.connection_string),
            "provisioned_at": config.provisioned_at,
            "updated_at": config.updated_at,
            "restart_required": self.runtime.restart_required(config),
        }

    async def test_connection(
        self, session: SetupSession, provider: str, connection_string: str
    ) -> ConnectivityTestResult:
        provider = normalize_provider(provider)
        if not (connection_string or "").strip():
            raise SetupValidationError("Connection string is required.", field="connection_string")
        parse_connection_string(provider, connection_string)
        result = await self.tester.test(provider, connection_string)
        session.record_test(provider, connection_string, result)
        return result

    async def save_connection(
        self, session: SetupSession, provider: str, connection_string: str
    ) -> BootstrapConfig:
        provider = normalize_provider(provider)
        if not session.has_successful_test(provider, connection_string):
            raise PreconditionError(
                "Test this connection successfully before saving it.",
                precondition="tested_connection",
            )

        config = await self.get_config()
        if config is None:
            config = BootstrapConfig(id=SINGLETON_ID, provider=provider.value, connection_string="")
            self.db.add(config)
        config.provider = provider.value
        config.connection_string = connection_string
        config.provisioned_at = None
        config.updated_at = datetime.utcnow()
        await self.steps.mark_incomplete("database")
        await self.db.flush()
        logger.info(
            "Database connection saved (%s): %s",
            provider.value, mask_connection_string(connection_string),
        )
        return config

    async def database_status(self, reverify: bool = True) -> dict:
        """Persisted status; a provisioned database is re-checked for its tables."""
        config = await self.get_config()
        if config is not None and config.provisioned_at is not None and reverify:
            try:
                provisioned = await self.provisioner.is_provisioned(
                    normalize_provider(config.provider), config.connection_string
                )
            except Exception as exc:
                logger.warning("Could not re-verify provisioned database: %s", exc)
            else:
                if not provisioned:
                    logger.warning("Provisioned database lost its tables; resetting provisioned_at")
                    config.provisioned_at = None
                    await self.steps.mark_incomplete("database")
                    await self.db.flush()
        return self.status_view(config)

    async def provision_schema(self, session: SetupSession) -> BootstrapConfig:
        config = await self.get_config()
        if config is None:
            raise PreconditionError(
                "Save a database connection before provisioning.",
                precondition="persisted_connection",
            )
        provider = normalize_provider(config.provider)
        if not session.has_successful_test(provider, config.connection_string):
            raise PreconditionError(
                "Test the saved connection successfully before provisioning.",
                precondition="tested_connection",
            )

        await self.provisioner.provision(provider, config.connection_string)
        config.provisioned_at = datetime.utcnow()
        await self.db.flush()
        return config

    async def reload_connection(self) -> dict:
        config = await self.get_config()
        self.runtime.load(config)
        return self.status_view(config)

    # ── Managed container ─────────────────────────────────────

    async def managed_container_status(self, username: str | None = None) -> ManagedContainerStatus:
        return await self.containers.detect(username)

    async def _adopt_managed_connection(self, session: SetupSession, connection_string: str) -> dict:
        """Test, save and provision the managed connection."""
        session.report("Testing the managed database connection...")
        result = await self.test_connection(session, DatabaseProvider.POSTGRES.value, connection_string)
        if not result.success:
            raise ConnectivityError(result.message)
        await self.save_connection(session, DatabaseProvider.POSTGRES.value, connection_string)
        session.report("Provisioning the schema...")
        config = await self.provision_schema(session)
        session.report("Managed database is ready.")
        return self.status_view(config)

    async def _await_ready(self, session: SetupSession, connection_string: str, started: ContainerOperationResult):
        if started.ready:
            return started
        session.report(started.message)
        readiness = await self.containers.wait_for_ready(
            connection_string, session.report, session.cancel_event
        )
        if not readiness.success:
            return ContainerOperationResult(False, readiness.code, readiness.message)
        return ContainerOperationResult(True, "START_READY", readiness.message, ready=True)

    async def start_managed_container(
        self, session: SetupSession, connection_string: str, timeout: float | None = None
    ) -> ManagedOutcome:
        session.report("Starting the managed database container...")
        started = await self.containers.start(connection_string, timeout)
        if not started.success:
            session.report(started.message)
            return ManagedOutcome(started)
        ready = await self._await_ready(session, connection_string, started)
        if not ready.success:
            return ManagedOutcome(ready)
        return ManagedOutcome(ready, await self._adopt_managed_connection(session, connection_string))

    async def reuse_managed_container(
        self, session: SetupSession, connection_string: str, timeout: float | None = None
    ) -> ManagedOutcome:
        user = parse_connection_string(DatabaseProvider.POSTGRES, connection_string).user
        status = await self.containers.detect(user)
        if not status.exists or not status.configured:
            raise PreconditionError(
                "Only an existing container with matching credentials can be reused.",
                precondition="container_configured",
            )
        session.report("Starting the existing container...")
        started = await self.containers.start_existing(connection_string, timeout)
        if not started.success:
            return ManagedOutcome(started)
        ready = await self._await_ready(session, connection_string, started)
        if not ready.success:
            return ManagedOutcome(ready)
        return ManagedOutcome(ready, await self._adopt_managed_connection(session, connection_string))

    async def resolve_managed_container_conflict(
        self,
        session: SetupSession,
        connection_string: str,
        backup: bool,
        timeout: float | None = None,
    ) -> ManagedOutcome:
        user = parse_connection_string(DatabaseProvider.POSTGRES, connection_string).user
        status = await self.containers.detect(user)
        if not status.exists:
            raise PreconditionError(
                "There is no managed container to recreate. Start a new one instead.",
                precondition="container_exists",
            )

        if backup:
            result = await self.containers.backup_and_recreate(
                connection_string, timeout, session.report, session.cancel_event
            )
            if result.fallback_offered:
                session.backup_fallback_offered = True
        else:
            if status.configured and not session.backup_fallback_offered:
                raise PreconditionError(
                    "Recreating without a backup is only allowed after a failed backup "
                    "or when the container credentials do not match.",
                    precondition="backup_fallback_offered",
                )
            result = await self.containers.recreate_without_backup(
                connection_string, timeout, session.report, session.cancel_event
            )
            session.backup_fallback_offered = False

        if not result.success:
            return ManagedOutcome(result)
        return ManagedOutcome(result, await self._adopt_managed_connection(session, connection_string))

    # ── Steps ─────────────────────────────────────────────────

    async def list_steps(self) -> list[SetupStepState]:
        return await self.steps.list()

    async def resume(self) -> str:
        return active_step(await self.steps.list())

    async def _check_finalize_preconditions(self) -> BootstrapConfig:
        config = await self.get_config()
        if config is None or config.provisioned_at is None:
            raise PreconditionError(
                "The database schema has not been provisioned yet.", precondition="provisioned"
            )
        if self.runtime.restart_required(config):
            raise PreconditionError(
                "The database connection changed. Reload it before finishing setup.",
                precondition="restart_required",
            )
        for step_id in ("admin", "auth"):
            step = await self.steps.get(step_id)
            if step is None or not step.is_completed:
                raise PreconditionError(
                    f"The {step_id} step must be completed first.",
                    precondition=f"{step_id}_step_completed",
                )
        return config

    async def save_step(
        self,
        step_id: str,
        data: dict,
        is_completed: bool,
        secrets: dict[str, SecretValue] | None = None,
    ) -> SetupStepState:
        if is_completed:
            existing = await self.steps.get(step_id)
            effective = self.steps.effective_secrets(step_id, existing, secrets)
            missing = missing_required_fields(step_id, data, effective)
            if missing:
                raise SetupValidationError(f"'{missing[0]}' is required.", field=missing[0])
            if step_id == "database":
                config = await self.get_config()
                if config is None or config.provisioned_at is None:
                    raise PreconditionError(
                        "The database step can only be completed once the schema is provisioned.",
                        precondition="provisioned",
                    )
            elif step_id == "summary":
                await self._check_finalize_preconditions()
        return await self.steps.save(step_id, data, is_completed, secrets)

    async def clear_step(self, step_id: str) -> None:
        await self.steps.clear(step_id)

    async def setup_status(self) -> dict:
        config = await self.get_config()
        steps = await self.steps.list()
        summary = next((step for step in steps if step.step_id == "summary"), None)
        return {
            "is_configured": bool(summary and summary.is_completed),
            "active_step": active_step(steps),
            "provisioned": bool(config and config.provisioned_at),
            "restart_required": self.runtime.restart_required(config),
        }

    # ── Finalize ──────────────────────────────────────────────

    async def finalize(self, body: InitializeSetupRequest) -> InitializeResult:
        await self._check_finalize_preconditions()

        resolved = body.model_copy(update={
            "admin_password": body.admin_password
            or await self.steps.secret("admin", "admin_password"),
            "windows_ad_bind_password": body.windows_ad_bind_password
            or await self.steps.secret("auth", "windows_ad_bind_password"),
            "azure_client_secret": body.azure_client_secret
            or await self.steps.secret("auth", "azure_client_secret"),
        })
        auth_data = {
            "auth_local": str(resolved.enable_local_auth).lower(),
            "auth_ad": str(resolved.enable_windows_ad).lower(),
            "auth_azure": str(resolved.enable_azure_ad).lower(),
            **resolved.model_dump(include={
                "windows_ad_domain", "windows_ad_ldap_url", "windows_ad_base_dn",
                "azure_tenant_id", "azure_client_id", "azure_redirect_uri",
                "azure_auth_url", "azure_token_url",
            }),
        }
        missing = missing_required_fields(
            "auth", auth_data, {"azure_client_secret": resolved.azure_client_secret}
        )
        if missing:
            raise SetupValidationError(f"'{missing[0]}' is required.", field=missing[0])

        engine = self._platform_engine_factory(self.runtime.provider, self.runtime.connection_string)
        try:
            async with async_sessionmaker(engine, expire_on_commit=False)() as target:
                try:
                    result = await initialize_platform(target, self.runtime.provider, resolved)
                    await target.commit()
                except Exception:
                    await target.rollback()
                    raise
        except (DBAPIError, OSError) as exc:
            logger.warning("Platform initialization failed: %s", exc)
            raise finalize_failure(exc) from exc
        finally:
            await engine.dispose()

        summary = await self.steps.get("summary")
        await self.steps.save("summary", dict(summary.data or {}) if summary else {}, True)
        logger.info("Setup finalized (created=%s)", result.created)
        return result


# ── Dependency wiring ───────────────────────────────────────

_runner = AsyncCommandRunner()
_tester = ConnectivityTester()
_containers = ManagedContainerController(_runner, _tester)
_provisioner = SchemaProvisioner(_runner, _tester)


async def get_orchestrator(db: AsyncSession = Depends(get_db)) -> SetupOrchestrator:
    return SetupOrchestrator(
        db, tester=_tester, containers=_containers, provisioner=_provisioner
    )
