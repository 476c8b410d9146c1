"""Managed database container lifecycle.

Drives a single locally managed postgres container through the docker
CLI. Host, port, database, image, container and volume names are fixed by
configuration; the operator only chooses the username and password, which
arrive inside the managed connection string.

    detect()                    -> ManagedContainerStatus
    start(cs, timeout)          -> START_READY | START_NOT_READY | START_TIMEOUT | START_FAILED
                                   (raises ContainerConflictError if a container exists)
    start_existing(cs, timeout) -> reuse a container whose credentials match
    wait_for_ready(cs, ...)     -> READY | NOT_READY | CANCELLED
    backup_and_recreate(cs, timeout, ...)
    recreate_without_backup(cs, timeout, ...)
                                -> RECREATE_SUCCESS | RECREATE_TIMEOUT | RECREATE_REMOVE_FAILED
                                   | RECREATE_START_FAILED | BACKUP_FAILED

Only the readiness poll retries. Mutating operations are serialized by a
lock; a command that outlives its timeout is left running and reported as
"may still be in progress".
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from setupkit.config import settings
from setupkit.middleware.exceptions import (
    ConnectivityError,
    ContainerConflictError,
    SetupValidationError,
)
from setupkit.services.commands import CommandResult, CommandRunner
from setupkit.services.connection_string import (
    DatabaseProvider,
    parse_connection_string,
)
from setupkit.services.connectivity import ConnectivityTester

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

RESOLUTION_REUSE = "reuse"
RESOLUTION_BACKUP = "backup_and_recreate"
RESOLUTION_NO_BACKUP = "recreate_without_backup"

_CONTAINER_BACKUP_PATH = "/tmp/setupkit_backup.sql"
_DATA_DIR = "/var/lib/postgresql/data"


@dataclass(frozen=True)
class ManagedContainerStatus:
    exists: bool
    running: bool
    configured: bool
    username: str | None = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ContainerOperationResult:
    success: bool
    code: str
    message: str
    ready: bool = False
    backup_path: str | None = None
    fallback_offered: bool = False


@dataclass(frozen=True)
class ReadinessResult:
    success: bool
    code: str
    attempts: int
    message: str


def conflict_resolutions(status: ManagedContainerStatus) -> list[str]:
    """Decisions the operator may take for an existing container."""
    if status.configured:
        return [RESOLUTION_REUSE, RESOLUTION_BACKUP]
    return [RESOLUTION_BACKUP, RESOLUTION_NO_BACKUP]


def _credentials(connection_string: str) -> tuple[str, str]:
    params = parse_connection_string(DatabaseProvider.POSTGRES, connection_string)
    if not params.user.strip() or not params.password:
        raise SetupValidationError(
            "Username and password are required for the managed database.",
            field="connection_string",
        )
    return params.user.strip(), params.password


def _output(result: CommandResult) -> str:
    return (result.stderr or result.stdout).strip()


class _Deadline:
    def __init__(self, seconds: float):
        self._loop = asyncio.get_running_loop()
        self._end = self._loop.time() + seconds

    def remaining(self) -> float:
        return self._end - self._loop.time()

    def expired(self) -> bool:
        return self.remaining() <= 0


class ManagedContainerController:

    def __init__(
        self,
        runner: CommandRunner,
        tester: ConnectivityTester,
        *,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
        backup_directory: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.runner = runner
        self.tester = tester
        self.poll_interval = (
            settings.readiness_poll_interval_seconds if poll_interval is None else poll_interval
        )
        self.max_attempts = max_attempts or settings.readiness_max_attempts
        self.backup_directory = Path(backup_directory or settings.backup_directory)
        self.name = settings.managed_container_name
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def _docker(self, *args: str, timeout: float, env: dict | None = None) -> CommandResult:
        return await self.runner.run(
            [settings.docker_binary, *args], timeout=max(timeout, 1.0), env=env
        )

    # ── Detection ─────────────────────────────────────────────

    async def _container_env(self) -> dict[str, str]:
        result = await self._docker(
            "inspect", "--format", "{{range .Config.Env}}{{println .}}{{end}}", self.name,
            timeout=settings.connect_timeout_seconds,
        )
        if not result.ok:
            logger.warning("docker inspect failed: %s", _output(result))
            return {}
        env = {}
        for line in result.stdout.splitlines():
            key, sep, value = line.partition("=")
            if sep:
                env[key.strip()] = value
        return env

    async def detect(self, username: str | None = None) -> ManagedContainerStatus:
        result = await self._docker(
            "ps", "-a", "--filter", f"name={self.name}", "--format", "{{.Names}}|{{.Status}}",
            timeout=settings.connect_timeout_seconds,
        )
        if not result.ok:
            logger.warning("docker ps failed: %s", _output(result) or "timed out")
            raise ConnectivityError("The container runtime is not available.")

        status_text = None
        for line in result.stdout.splitlines():
            name, _, status = line.strip().partition("|")
            if name == self.name:
                status_text = status
                break
        if status_text is None:
            return ManagedContainerStatus(exists=False, running=False, configured=False)

        container_user = (await self._container_env()).get("POSTGRES_USER")
        wanted = (username or "").strip()
        return ManagedContainerStatus(
            exists=True,
            running=status_text.lower().startswith("up"),
            configured=bool(wanted) and container_user == wanted,
            username=container_user,
        )

    # ── Start ─────────────────────────────────────────────────

    async def _probe(self, connection_string: str) -> ContainerOperationResult:
        test = await self.tester.test(DatabaseProvider.POSTGRES, connection_string)
        if test.success:
            return ContainerOperationResult(True, "START_READY", "Database is ready.", ready=True)
        return ContainerOperationResult(
            True, "START_NOT_READY", "Container started; database is not ready yet."
        )

    async def _create(self, user: str, password: str, deadline: _Deadline) -> ContainerOperationResult:
        env = {
            "POSTGRES_DB": settings.managed_database,
            "POSTGRES_USER": user,
            "POSTGRES_PASSWORD": password,
        }
        result = await self._docker(
            "run", "-d",
            "--name", self.name,
            "-e", "POSTGRES_DB", "-e", "POSTGRES_USER", "-e", "POSTGRES_PASSWORD",
            "-p", f"{settings.managed_port}:5432",
            "-v", f"{settings.managed_volume_name}:{_DATA_DIR}",
            settings.managed_container_image,
            timeout=deadline.remaining(),
            env=env,
        )
        if result.timed_out:
            return ContainerOperationResult(
                False, "START_TIMEOUT",
                "Container start timed out and may still be in progress. Check the status again shortly.",
            )
        if not result.ok:
            logger.warning("docker run failed: %s", _output(result))
            return ContainerOperationResult(False, "START_FAILED", "The database container could not be started.")
        logger.info("Managed container %s created", self.name)
        return ContainerOperationResult(True, "START_READY", "Container created.")

    async def start(self, connection_string: str, timeout: float | None = None) -> ContainerOperationResult:
        """Create and start the container; never reuses an existing one."""
        user, password = _credentials(connection_string)
        async with self._lock:
            deadline = _Deadline(timeout or settings.container_operation_timeout_seconds)
            status = await self.detect(user)
            if status.exists:
                raise ContainerConflictError(
                    "A managed database container already exists.",
                    container_status=status.as_dict(),
                    resolutions=conflict_resolutions(status),
                )
            created = await self._create(user, password, deadline)
            if not created.success:
                return created
        return await self._probe(connection_string)

    async def start_existing(self, connection_string: str, timeout: float | None = None) -> ContainerOperationResult:
        """Reuse the existing container; its credentials must match."""
        user, _ = _credentials(connection_string)
        async with self._lock:
            status = await self.detect(user)
            if not status.exists or not status.configured:
                raise ContainerConflictError(
                    "The existing container cannot be reused with these credentials.",
                    container_status=status.as_dict(),
                    resolutions=conflict_resolutions(status) if status.exists else [],
                )
            if not status.running:
                result = await self._docker(
                    "start", self.name,
                    timeout=timeout or settings.container_operation_timeout_seconds,
                )
                if result.timed_out:
                    return ContainerOperationResult(
                        False, "START_TIMEOUT",
                        "Container start timed out and may still be in progress.",
                    )
                if not result.ok:
                    logger.warning("docker start failed: %s", _output(result))
                    return ContainerOperationResult(
                        False, "START_FAILED", "The existing container could not be started."
                    )
        return await self._probe(connection_string)

    # ── Readiness ─────────────────────────────────────────────

    async def _pause(self, cancel: asyncio.Event | None) -> bool:
        """Wait one poll interval; True when the wait was cancelled."""
        if cancel is None:
            await self._sleep(self.poll_interval)
            return False
        if cancel.is_set():
            return True
        try:
            await asyncio.wait_for(cancel.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_for_ready(
        self,
        connection_string: str,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ReadinessResult:
        """Probe every interval up to max_attempts; stop at the first success."""
        report = on_progress or (lambda message: None)
        for attempt in range(1, self.max_attempts + 1):
            if await self._pause(cancel):
                report("Readiness check cancelled.")
                return ReadinessResult(False, "CANCELLED", attempt - 1, "Readiness check cancelled.")
            test = await self.tester.test(DatabaseProvider.POSTGRES, connection_string)
            if test.success:
                message = f"Database ready after {attempt} attempt(s)."
                report(message)
                return ReadinessResult(True, "READY", attempt, message)
            report(f"Attempt {attempt}/{self.max_attempts}: {test.message}")

        waited = self.poll_interval * self.max_attempts
        message = f"Database did not become ready within {waited:g} seconds."
        return ReadinessResult(False, "NOT_READY", self.max_attempts, message)

    # ── Backup / remove / recreate ────────────────────────────

    def backup_file_name(self, moment: datetime | None = None) -> str:
        stamp = (moment or datetime.utcnow()).strftime("%Y%m%d_%H%M%S")
        return f"{self.name}_{stamp}.sql"

    def resolve_backup(self, file_name: str) -> Path | None:
        """Existing backup by base name; anything outside the directory is ignored."""
        safe = Path(file_name or "").name
        if not safe or safe in (".", ".."):
            return None
        path = self.backup_directory / safe
        return path if path.is_file() else None

    async def _accepting_connections(self, user: str, database: str, deadline: _Deadline) -> bool:
        """pg_isready inside the container, bounded by max_attempts and the deadline."""
        for attempt in range(1, self.max_attempts + 1):
            check = await self._docker(
                "exec", self.name, "pg_isready", "-U", user, "-d", database,
                timeout=min(settings.connect_timeout_seconds, max(deadline.remaining(), 0)),
            )
            if check.ok:
                logger.info("Container accepting connections after %d check(s)", attempt)
                return True
            if deadline.expired():
                break
            await self._sleep(self.poll_interval)
        logger.warning("pg_isready never succeeded before backup: %s", _output(check) or "timed out")
        return False

    async def _backup(self, status: ManagedContainerStatus, deadline: _Deadline) -> tuple[bool, str, str | None]:
        env = await self._container_env()
        user = env.get("POSTGRES_USER") or status.username or settings.managed_default_user
        database = env.get("POSTGRES_DB") or settings.managed_database
        password = env.get("POSTGRES_PASSWORD", "")

        if not status.running:
            started = await self._docker("start", self.name, timeout=deadline.remaining())
            if not started.ok:
                logger.warning("docker start before backup failed: %s", _output(started))
                return False, "The container could not be started for the backup.", None
            if not await self._accepting_connections(user, database, deadline):
                return False, "The database did not come up for the backup.", None

        dump = await self._docker(
            "exec", "-e", "PGPASSWORD", self.name,
            "pg_dump", "-U", user, "-d", database, "-f", _CONTAINER_BACKUP_PATH,
            timeout=deadline.remaining(),
            env={"PGPASSWORD": password},
        )
        if not dump.ok:
            logger.warning("pg_dump failed: %s", _output(dump) or "timed out")
            return False, "Backup of the existing database failed.", None

        self.backup_directory.mkdir(parents=True, exist_ok=True)
        target = self.backup_directory / self.backup_file_name()
        copy = await self._docker(
            "cp", f"{self.name}:{_CONTAINER_BACKUP_PATH}", str(target),
            timeout=deadline.remaining(),
        )
        if not copy.ok:
            logger.warning("docker cp failed: %s", _output(copy) or "timed out")
            return False, "Backup file could not be copied out of the container.", None

        cleanup = await self._docker(
            "exec", self.name, "rm", "-f", _CONTAINER_BACKUP_PATH,
            timeout=settings.connect_timeout_seconds,
        )
        if not cleanup.ok:
            logger.warning("Backup cleanup inside container failed: %s", _output(cleanup))
        logger.info("Managed container backed up to %s", target)
        return True, "Backup completed.", str(target)

    async def _remove(self, deadline: _Deadline) -> ContainerOperationResult | None:
        """Stop and remove container and volume; None on success."""
        stop = await self._docker("stop", self.name, timeout=deadline.remaining())
        if not stop.ok and "no such container" not in _output(stop).lower():
            logger.warning("Failed to stop container (continuing): %s", _output(stop))

        remove = await self._docker("rm", "-f", self.name, timeout=deadline.remaining())
        if remove.timed_out:
            return ContainerOperationResult(
                False, "RECREATE_TIMEOUT", "Removing the container timed out and may still be in progress."
            )
        if not remove.ok and "no such container" not in _output(remove).lower():
            logger.warning("docker rm failed: %s", _output(remove))
            return ContainerOperationResult(
                False, "RECREATE_REMOVE_FAILED", "The existing container could not be removed."
            )

        volume = await self._docker(
            "volume", "rm", settings.managed_volume_name, timeout=deadline.remaining()
        )
        if volume.timed_out:
            return ContainerOperationResult(
                False, "RECREATE_TIMEOUT", "Removing the data volume timed out and may still be in progress."
            )
        combined = f"{volume.stdout} {volume.stderr}".lower()
        if not volume.ok and "no such volume" not in combined:
            logger.warning("docker volume rm failed: %s", _output(volume))
            return ContainerOperationResult(
                False, "RECREATE_REMOVE_FAILED", "The existing data volume could not be removed."
            )
        return None

    async def _recreate(
        self,
        connection_string: str,
        timeout: float | None,
        backup: bool,
        on_progress: ProgressCallback | None,
        cancel: asyncio.Event | None,
    ) -> ContainerOperationResult:
        user, password = _credentials(connection_string)
        report = on_progress or (lambda message: None)
        async with self._lock:
            deadline = _Deadline(timeout or settings.container_operation_timeout_seconds)
            status = await self.detect(user)
            backup_path = None

            if status.exists and backup:
                report("Backing up the existing database...")
                ok, message, backup_path = await self._backup(status, deadline)
                if not ok:
                    report(message)
                    return ContainerOperationResult(
                        False, "BACKUP_FAILED",
                        f"{message} The container was left untouched.",
                        fallback_offered=True,
                    )

            if status.exists:
                report("Removing the existing container...")
                failure = await self._remove(deadline)
                if failure is not None:
                    return ContainerOperationResult(
                        failure.success, failure.code, failure.message, backup_path=backup_path
                    )

            report("Creating the database container...")
            created = await self._create(user, password, deadline)
            if not created.success:
                code = "RECREATE_TIMEOUT" if created.code == "START_TIMEOUT" else "RECREATE_START_FAILED"
                return ContainerOperationResult(False, code, created.message, backup_path=backup_path)

        readiness = await self.wait_for_ready(connection_string, on_progress, cancel)
        if not readiness.success:
            return ContainerOperationResult(
                False, "RECREATE_TIMEOUT", readiness.message, backup_path=backup_path
            )
        return ContainerOperationResult(
            True, "RECREATE_SUCCESS", "Container recreated and ready.",
            ready=True, backup_path=backup_path,
        )

    async def backup_and_recreate(
        self,
        connection_string: str,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ContainerOperationResult:
        """Back up, then recreate; stops before any removal if the backup fails."""
        return await self._recreate(connection_string, timeout, True, on_progress, cancel)

    async def recreate_without_backup(
        self,
        connection_string: str,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
    ) -> ContainerOperationResult:
        return await self._recreate(connection_string, timeout, False, on_progress, cancel)
