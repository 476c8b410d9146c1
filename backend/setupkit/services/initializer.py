"""Seeds the target database at the end of setup.

Idempotent: when the first tenant already has an owner, its ids are
returned and only the setup state is (re)marked as completed.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from setupkit.auth.password import hash_password
from setupkit.config import settings
from setupkit.middleware.exceptions import SetupValidationError
from setupkit.models.platform import (
    AuthProfile,
    AuthProviderType,
    Role,
    SetupState,
    Tenant,
    User,
    UserTenantRole,
)
from setupkit.models.platform.role import DEFAULT_ROLES
from setupkit.models.platform.setup_state import PRIMARY_KEY
from setupkit.schemas.setup import InitializeSetupRequest
from setupkit.services.connection_string import DatabaseProvider

logger = logging.getLogger(__name__)

OWNER_ROLES = ("Company Owner", "Company Admin")


@dataclass(frozen=True)
class InitializeResult:
    tenant_id: str
    admin_user_id: str
    schema_name: str
    created: bool


def normalize_slug(value: str | None) -> str:
    slug = (value or "").strip().lower().replace(" ", "-").replace("_", "-")
    return re.sub(r"[^a-z0-9-]", "", slug)


def schema_name_for(slug: str) -> str:
    return f"tenant_{slug.replace('-', '_')}"


async def _existing_owner(db: AsyncSession) -> InitializeResult | None:
    tenant = (
        await db.execute(select(Tenant).order_by(Tenant.created_at).limit(1))
    ).scalar_one_or_none()
    if tenant is None:
        return None
    admin_id = (
        await db.execute(
            select(UserTenantRole.user_id)
            .join(Role, Role.id == UserTenantRole.role_id)
            .where(UserTenantRole.tenant_id == tenant.id, Role.name.in_(OWNER_ROLES))
            .order_by(UserTenantRole.created_at)
            .limit(1)
        )
    ).scalar_one_or_none()
    if admin_id is None:
        return None
    return InitializeResult(tenant.id, admin_id, tenant.schema_name, created=False)


async def _mark_setup_completed(db: AsyncSession, actor_id: str | None) -> None:
    state = await db.get(SetupState, PRIMARY_KEY)
    if state is None:
        state = SetupState(key=PRIMARY_KEY)
        db.add(state)
    state.is_completed = True
    state.completed_at = state.completed_at or datetime.utcnow()
    state.completed_by = state.completed_by or actor_id
    await db.flush()


def _auth_profiles(tenant: Tenant, body: InitializeSetupRequest) -> list[AuthProfile]:
    profiles = []
    if body.enable_local_auth:
        profiles.append(AuthProfile(
            tenant_id=tenant.id, name="Local Login", provider_type=AuthProviderType.LOCAL, settings={},
        ))
    if body.enable_windows_ad:
        profiles.append(AuthProfile(
            tenant_id=tenant.id,
            name="Windows AD",
            provider_type=AuthProviderType.WINDOWS_AD,
            settings={
                "domain": body.windows_ad_domain,
                "ldap_url": body.windows_ad_ldap_url,
                "base_dn": body.windows_ad_base_dn,
                "bind_dn": body.windows_ad_bind_dn,
                "user_filter": body.windows_ad_user_filter,
                "group_filter": body.windows_ad_group_filter,
                "use_ssl": body.windows_ad_use_ssl,
                "start_tls": body.windows_ad_start_tls,
                "timeout_seconds": body.windows_ad_timeout_seconds,
            },
            secret=body.windows_ad_bind_password,
        ))
    if body.enable_azure_ad:
        profiles.append(AuthProfile(
            tenant_id=tenant.id,
            name="Azure AD",
            provider_type=AuthProviderType.AZURE_AD,
            settings={
                "tenant_id": body.azure_tenant_id,
                "client_id": body.azure_client_id,
                "auth_url": body.azure_auth_url,
                "token_url": body.azure_token_url,
                "authority": body.azure_authority,
                "redirect_uri": body.azure_redirect_uri,
                "scopes": body.azure_scopes,
                "issuer": body.azure_issuer,
                "use_pkce": body.azure_use_pkce,
            },
            secret=body.azure_client_secret,
        ))
    return profiles


async def _create_tenant_schema(db: AsyncSession, provider: DatabaseProvider, schema_name: str) -> None:
    """Reserve the tenant schema; failures are logged and setup continues."""
    if provider == DatabaseProvider.POSTGRES:
        statement = text(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
    elif provider == DatabaseProvider.SQLSERVER:
        statement = text(
            f"IF NOT EXISTS (SELECT 1 FROM sys.schemas WHERE name = '{schema_name}') "
            f"EXEC('CREATE SCHEMA [{schema_name}]')"
        )
    else:
        logger.info("Schema creation skipped for provider %s", provider.value)
        return
    try:
        async with db.begin_nested():
            await db.execute(statement)
    except Exception:
        logger.warning("Failed to create schema %s", schema_name, exc_info=True)


async def initialize_platform(
    db: AsyncSession,
    provider: DatabaseProvider,
    body: InitializeSetupRequest,
) -> InitializeResult:
    """Create tenant, admin, default roles and auth profiles (once).

    `body.admin_password` and the AD/Azure secrets must already be
    resolved by the caller (request value or saved step secret).
    """
    existing = await _existing_owner(db)
    if existing is not None:
        await _mark_setup_completed(db, existing.admin_user_id)
        logger.info("Platform already initialized (tenant %s)", existing.tenant_id)
        return existing

    slug = (
        normalize_slug(body.tenant_slug)
        or normalize_slug(settings.default_tenant_slug)
        or "platform"
    )
    schema_name = schema_name_for(slug)
    email = str(body.admin_email).strip().lower()

    if (await db.execute(select(Tenant.id).where(Tenant.slug == slug))).first():
        raise SetupValidationError("Tenant slug already exists.", field="tenant_slug")
    if (await db.execute(select(User.id).where(User.email == email))).first():
        raise SetupValidationError("Admin email already exists.", field="admin_email")
    if not body.admin_password:
        raise SetupValidationError("Admin password is required.", field="admin_password")

    tenant = Tenant(
        name=(body.tenant_name or "").strip() or settings.default_tenant_name,
        slug=slug,
        company_name=(body.company_name or "").strip() or settings.default_company_name,
        schema_name=schema_name,
    )
    db.add(tenant)
    await db.flush()

    admin = User(
        email=email,
        full_name=body.admin_name.strip(),
        hashed_password=hash_password(body.admin_password),
        is_platform_admin=True,
        tenant_id=tenant.id,
    )
    db.add(admin)
    await db.flush()
    tenant.owner_user_id = admin.id

    roles = {
        name: Role(tenant_id=tenant.id, name=name, description=description)
        for name, description in DEFAULT_ROLES.items()
    }
    db.add_all(roles.values())
    await db.flush()

    db.add_all([
        UserTenantRole(user_id=admin.id, tenant_id=tenant.id, role_id=roles[name].id)
        for name in OWNER_ROLES
    ])
    db.add_all(_auth_profiles(tenant, body))
    await db.flush()

    await _create_tenant_schema(db, provider, schema_name)
    await _mark_setup_completed(db, admin.id)
    logger.info("Platform initialized: tenant %s, admin %s", tenant.id, admin.id)
    return InitializeResult(tenant.id, admin.id, schema_name, created=True)
