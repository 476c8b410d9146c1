"""Database bootstrap and managed container endpoints.

Endpoints:
  GET  /api/bootstrap/database                       → persisted status (re-verified)
  POST /api/bootstrap/database                       → save a tested connection
  POST /api/bootstrap/database/test                  → connectivity test
  POST /api/bootstrap/database/provision             → apply the schema
  POST /api/bootstrap/database/reload                → reload the runtime connection
  POST /api/bootstrap/database/connection-string     → build from form fields
  GET  /api/bootstrap/managed-container/status       → detect the container
  POST /api/bootstrap/managed-container/start        → create, wait, save, provision
  POST /api/bootstrap/managed-container/reuse        → reuse a matching container
  POST /api/bootstrap/managed-container/recreate     → backup-and-recreate / recreate
  GET  /api/bootstrap/managed-container/progress     → interim messages of this session
  GET  /api/bootstrap/managed-container/backup/{name} → download a backup

All endpoints require an open operator session.
"""

from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from setupkit.auth.deps import get_current_session
from setupkit.schemas.bootstrap import (
    ConnectionStringBuildRequest,
    ConnectionStringOut,
    ConnectivityTestOut,
    ContainerOperationOut,
    DatabaseBootstrapStatusOut,
    DatabaseConnectionRequest,
    ManagedContainerRecreateRequest,
    ManagedContainerReuseRequest,
    ManagedContainerStartRequest,
    ManagedContainerStatusOut,
    ProgressOut,
)
from setupkit.services.connection_string import (
    ConnectionParameters,
    build_connection_string,
    build_managed_connection_string,
    mask_connection_string,
    normalize_provider,
)
from setupkit.services.managed_container import conflict_resolutions
from setupkit.services.orchestrator import ManagedOutcome, SetupOrchestrator, get_orchestrator
from setupkit.services.sessions import SetupSession

router = APIRouter()


def _outcome(outcome: ManagedOutcome) -> ContainerOperationOut:
    result = outcome.result
    return ContainerOperationOut(
        success=result.success,
        code=result.code,
        message=result.message,
        backup_path=result.backup_path,
        backup_file=Path(result.backup_path).name if result.backup_path else None,
        fallback_offered=result.fallback_offered,
        database=outcome.database,
    )


# ── Database connection ─────────────────────────────────────

@router.get("/database", response_model=DatabaseBootstrapStatusOut)
async def get_database(
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.database_status()


@router.post("/database", response_model=DatabaseBootstrapStatusOut)
async def save_database(
    body: DatabaseConnectionRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    config = await orchestrator.save_connection(session, body.provider, body.connection_string)
    return orchestrator.status_view(config)


@router.post("/database/test", response_model=ConnectivityTestOut)
async def test_database(
    body: DatabaseConnectionRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.test_connection(session, body.provider, body.connection_string)
    return ConnectivityTestOut(
        success=result.success, message=result.message, elapsed_ms=result.elapsed_ms
    )


@router.post("/database/provision", response_model=DatabaseBootstrapStatusOut)
async def provision_database(
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    config = await orchestrator.provision_schema(session)
    return orchestrator.status_view(config)


@router.post("/database/reload", response_model=DatabaseBootstrapStatusOut)
async def reload_database(
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.reload_connection()


@router.post("/database/connection-string", response_model=ConnectionStringOut)
async def build_database_connection_string(
    body: ConnectionStringBuildRequest,
    session: SetupSession = Depends(get_current_session),
):
    if body.managed:
        value = build_managed_connection_string(body.user or "", body.password or "")
    else:
        params = ConnectionParameters(
            **body.model_dump(exclude={"provider", "managed"}, exclude_none=True)
        )
        value = build_connection_string(normalize_provider(body.provider), params)
    return ConnectionStringOut(
        complete=bool(value),
        connection_string=value,
        connection_string_masked=mask_connection_string(value),
    )


# ── Managed container ───────────────────────────────────────

@router.get("/managed-container/status", response_model=ManagedContainerStatusOut)
async def managed_container_status(
    username: str | None = None,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    detected = await orchestrator.managed_container_status(username)
    return ManagedContainerStatusOut(
        **detected.as_dict(),
        resolutions=conflict_resolutions(detected) if detected.exists else [],
    )


@router.post("/managed-container/start", response_model=ContainerOperationOut)
async def start_managed_container(
    body: ManagedContainerStartRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    return _outcome(
        await orchestrator.start_managed_container(
            session, body.connection_string, body.timeout_seconds
        )
    )


@router.post("/managed-container/reuse", response_model=ContainerOperationOut)
async def reuse_managed_container(
    body: ManagedContainerReuseRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    return _outcome(
        await orchestrator.reuse_managed_container(
            session, body.connection_string, body.timeout_seconds
        )
    )


@router.post("/managed-container/recreate", response_model=ContainerOperationOut)
async def recreate_managed_container(
    body: ManagedContainerRecreateRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    return _outcome(
        await orchestrator.resolve_managed_container_conflict(
            session, body.connection_string, body.backup, body.timeout_seconds
        )
    )


@router.get("/managed-container/progress", response_model=ProgressOut)
async def managed_container_progress(session: SetupSession = Depends(get_current_session)):
    return ProgressOut(messages=list(session.progress_messages))


@router.get("/managed-container/backup/{file_name}")
async def download_backup(
    file_name: str,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    path = orchestrator.containers.resolve_backup(file_name)
    if path is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Backup not found")
    return FileResponse(path, media_type="application/sql", filename=path.name)
