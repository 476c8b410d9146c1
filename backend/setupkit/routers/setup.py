"""Setup wizard steps and final initialization.

Endpoints:
  GET    /api/setup/status           → resume computation (anonymous)
  GET    /api/setup/steps            → all saved steps + active step
  POST   /api/setup/steps            → save (upsert) one step
  DELETE /api/setup/steps/{step_id}  → clear one step
  POST   /api/setup/initialize       → seed the platform and complete setup

Design:
  - Steps are resumable: the active step is the first incomplete one in
    database → admin → auth → summary order.
  - Completion is validated server-side, per step.
  - Secret values are write-only; responses expose `saved_secrets` flags.
"""

from fastapi import APIRouter, Depends, status

from setupkit.auth.deps import get_current_session
from setupkit.schemas.setup import (
    InitializeSetupOut,
    InitializeSetupRequest,
    SetupStatusOut,
    SetupStepOut,
    SetupStepSaveRequest,
    SetupStepsOut,
)
from setupkit.services.orchestrator import (
    SetupOrchestrator,
    active_step,
    get_orchestrator,
    step_view,
)
from setupkit.services.sessions import SetupSession
from setupkit.services.step_store import SecretAction, SecretValue

router = APIRouter()


@router.get("/status", response_model=SetupStatusOut)
async def setup_status(orchestrator: SetupOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.setup_status()


@router.get("/steps", response_model=SetupStepsOut)
async def list_steps(
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    steps = await orchestrator.list_steps()
    return SetupStepsOut(
        steps=[step_view(step) for step in steps],
        active_step=active_step(steps),
    )


@router.post("/steps", response_model=SetupStepOut)
async def save_step(
    body: SetupStepSaveRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    secrets = {
        name: SecretValue(SecretAction(item.action), item.value)
        for name, item in body.secrets.items()
    }
    step = await orchestrator.save_step(
        body.step_id.strip().lower(), body.data, body.is_completed, secrets
    )
    return step_view(step)


@router.delete("/steps/{step_id}", status_code=status.HTTP_204_NO_CONTENT)
async def clear_step(
    step_id: str,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.clear_step(step_id.strip().lower())


@router.post("/initialize", response_model=InitializeSetupOut)
async def initialize_setup(
    body: InitializeSetupRequest,
    session: SetupSession = Depends(get_current_session),
    orchestrator: SetupOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.finalize(body)
    return InitializeSetupOut(
        tenant_id=result.tenant_id,
        admin_user_id=result.admin_user_id,
        schema_name=result.schema_name,
        created=result.created,
    )
