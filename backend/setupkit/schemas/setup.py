"""Pydantic schemas for the setup wizard steps and final initialization.

Secrets never travel inside `data`: requests carry them under `secrets`
as tagged values, responses only say whether a value is saved.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, model_validator


# ── Steps ───────────────────────────────────────────────────

class SecretInput(BaseModel):
    action: Literal["unchanged", "cleared", "set"]
    value: str | None = None

    @model_validator(mode="after")
    def value_only_when_set(self):
        if self.action == "set" and not self.value:
            raise ValueError("A value is required when action is 'set'")
        if self.action != "set" and self.value is not None:
            raise ValueError("A value is only accepted when action is 'set'")
        return self


class SetupStepSaveRequest(BaseModel):
    step_id: str
    data: dict[str, str | None] = {}
    is_completed: bool = False
    secrets: dict[str, SecretInput] = {}


class SetupStepOut(BaseModel):
    step_id: str
    data: dict[str, str | None]
    is_completed: bool
    saved_at: datetime | None
    saved_secrets: dict[str, bool]


class SetupStepsOut(BaseModel):
    steps: list[SetupStepOut]
    active_step: str


class SetupStatusOut(BaseModel):
    is_configured: bool
    active_step: str
    provisioned: bool
    restart_required: bool


# ── Initialization (final step) ─────────────────────────────

class InitializeSetupRequest(BaseModel):
    tenant_name: str | None = None
    tenant_slug: str | None = None
    company_name: str | None = None

    admin_email: EmailStr
    admin_name: str
    admin_password: str | None = None   # falls back to the saved admin step

    enable_local_auth: bool = True
    enable_windows_ad: bool = False
    enable_azure_ad: bool = False

    windows_ad_domain: str | None = None
    windows_ad_ldap_url: str | None = None
    windows_ad_base_dn: str | None = None
    windows_ad_bind_dn: str | None = None
    windows_ad_bind_password: str | None = None
    windows_ad_user_filter: str | None = None
    windows_ad_group_filter: str | None = None
    windows_ad_use_ssl: bool = False
    windows_ad_start_tls: bool = False
    windows_ad_timeout_seconds: int | None = None

    azure_tenant_id: str | None = None
    azure_client_id: str | None = None
    azure_client_secret: str | None = None
    azure_auth_url: str | None = None
    azure_token_url: str | None = None
    azure_authority: str | None = None
    azure_redirect_uri: str | None = None
    azure_scopes: str | None = None
    azure_issuer: str | None = None
    azure_use_pkce: bool = True


class InitializeSetupOut(BaseModel):
    tenant_id: str
    admin_user_id: str
    schema_name: str
    created: bool
