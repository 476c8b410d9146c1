"""Target application database models (schema owned by alembic)."""

from setupkit.models.platform.auth_profile import AuthProfile, AuthProviderType
from setupkit.models.platform.role import Role, UserTenantRole
from setupkit.models.platform.setup_state import SetupState
from setupkit.models.platform.tenant import Tenant
from setupkit.models.platform.user import User

__all__ = [
    "AuthProfile",
    "AuthProviderType",
    "Role",
    "SetupState",
    "Tenant",
    "User",
    "UserTenantRole",
]
