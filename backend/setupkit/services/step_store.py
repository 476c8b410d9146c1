"""Persistence of wizard steps.

Each step (database, admin, auth, summary) is one upserted row holding the
non-secret form fields, the write-only secret values and the completion
flag. Secrets are updated through SecretValue, a tagged value:

    SecretValue.unchanged()      keep whatever was saved before
    SecretValue.cleared()        drop the saved value
    SecretValue.set("s3cret")    replace it

so an intentionally blank secret can never be confused with "not touched".
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from setupkit.middleware.exceptions import SetupValidationError
from setupkit.models.state.setup_step import SetupStepState

logger = logging.getLogger(__name__)

STEP_ORDER = ("database", "admin", "auth", "summary")

SECRET_FIELDS: dict[str, tuple[str, ...]] = {
    "database": ("password",),
    "admin": ("admin_password",),
    "auth": ("windows_ad_bind_password", "azure_client_secret"),
    "summary": (),
}

MANAGED_PROVIDER = "postgres-managed"

AD_REQUIRED = ("windows_ad_domain", "windows_ad_ldap_url", "windows_ad_base_dn")
AZURE_REQUIRED = (
    "azure_tenant_id",
    "azure_client_id",
    "azure_redirect_uri",
    "azure_auth_url",
    "azure_token_url",
)


class SecretAction(str, enum.Enum):
    UNCHANGED = "unchanged"
    CLEARED = "cleared"
    SET = "set"


@dataclass(frozen=True)
class SecretValue:
    action: SecretAction
    value: str | None = None

    @classmethod
    def unchanged(cls) -> "SecretValue":
        return cls(SecretAction.UNCHANGED)

    @classmethod
    def cleared(cls) -> "SecretValue":
        return cls(SecretAction.CLEARED)

    @classmethod
    def set(cls, value: str) -> "SecretValue":
        return cls(SecretAction.SET, value)

    def apply(self, previous: str | None) -> str | None:
        if self.action == SecretAction.SET:
            return self.value
        if self.action == SecretAction.CLEARED:
            return None
        return previous


def validate_step_id(step_id: str) -> str:
    if step_id not in STEP_ORDER:
        raise SetupValidationError(f"Unknown setup step '{step_id}'.", field="step_id")
    return step_id


def is_flag_set(data: dict, key: str) -> bool:
    return str(data.get(key) or "").strip().lower() == "true"


def _blank(data: dict, key: str) -> bool:
    return not str(data.get(key) or "").strip()


def missing_required_fields(step_id: str, data: dict, secrets: dict[str, str | None]) -> list[str]:
    """Required fields of `step_id` that are absent.

    `secrets` holds the effective secret values (after applying the
    request's SecretValues to what was saved). The database step's
    provisioning requirement and the summary step's finalize
    preconditions are checked by the orchestrator.
    """
    missing: list[str] = []
    if step_id == "database":
        if _blank(data, "provider"):
            return ["provider"]
        required = ("user",) if data.get("provider") == MANAGED_PROVIDER else ("host", "database", "user")
        missing = [key for key in required if _blank(data, key)]
    elif step_id == "admin":
        missing = [key for key in ("admin_name", "admin_email") if _blank(data, key)]
        if not secrets.get("admin_password"):
            missing.append("admin_password")
    elif step_id == "auth":
        flags = ("auth_local", "auth_ad", "auth_azure")
        if not any(is_flag_set(data, flag) for flag in flags):
            missing.append("auth_local")
        if is_flag_set(data, "auth_ad"):
            missing += [key for key in AD_REQUIRED if _blank(data, key)]
        if is_flag_set(data, "auth_azure"):
            missing += [key for key in AZURE_REQUIRED if _blank(data, key)]
            if not secrets.get("azure_client_secret"):
                missing.append("azure_client_secret")
    return missing


class StepStateStore:
    """Upsert/list/clear of SetupStepState rows. Last write wins."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, step_id: str) -> SetupStepState | None:
        return await self.db.get(SetupStepState, validate_step_id(step_id))

    async def list(self) -> list[SetupStepState]:
        result = await self.db.execute(select(SetupStepState))
        rows = {row.step_id: row for row in result.scalars().all()}
        return [rows[step_id] for step_id in STEP_ORDER if step_id in rows]

    def effective_secrets(
        self,
        step_id: str,
        existing: SetupStepState | None,
        secrets: dict[str, SecretValue] | None,
    ) -> dict[str, str | None]:
        secrets = secrets or {}
        allowed = SECRET_FIELDS[step_id]
        unknown = [name for name in secrets if name not in allowed]
        if unknown:
            raise SetupValidationError(
                f"'{unknown[0]}' is not a secret field of step '{step_id}'.", field=unknown[0]
            )
        previous = dict(existing.secrets or {}) if existing is not None else {}
        effective = {}
        for name in allowed:
            value = secrets.get(name, SecretValue.unchanged()).apply(previous.get(name))
            if value:
                effective[name] = value
        return effective

    async def save(
        self,
        step_id: str,
        data: dict,
        is_completed: bool,
        secrets: dict[str, SecretValue] | None = None,
    ) -> SetupStepState:
        validate_step_id(step_id)
        leaked = [key for key in data if key in SECRET_FIELDS[step_id]]
        if leaked:
            raise SetupValidationError(
                f"'{leaked[0]}' is a secret and must be sent under 'secrets'.", field=leaked[0]
            )

        row = await self.get(step_id)
        effective = self.effective_secrets(step_id, row, secrets)
        if row is None:
            row = SetupStepState(step_id=step_id)
            self.db.add(row)
        row.data = dict(data)
        row.secrets = effective
        row.is_completed = is_completed
        row.saved_at = datetime.utcnow()
        await self.db.flush()
        logger.info("Saved setup step %s (completed=%s)", step_id, is_completed)
        return row

    async def mark_incomplete(self, step_id: str) -> None:
        row = await self.get(step_id)
        if row is not None and row.is_completed:
            row.is_completed = False
            await self.db.flush()

    async def clear(self, step_id: str) -> None:
        await self.db.execute(
            delete(SetupStepState).where(SetupStepState.step_id == validate_step_id(step_id))
        )
        await self.db.flush()
        logger.info("Cleared setup step %s", step_id)

    async def secret(self, step_id: str, name: str) -> str | None:
        row = await self.get(step_id)
        if row is None:
            return None
        return (row.secrets or {}).get(name)
