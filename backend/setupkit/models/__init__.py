"""Aggregate model imports for Alembic auto-detection."""

# Local state database
from setupkit.models.state.bootstrap_config import BootstrapConfig  # noqa: F401
from setupkit.models.state.setup_step import SetupStepState  # noqa: F401

# Target application database
from setupkit.models.platform.tenant import Tenant  # noqa: F401
from setupkit.models.platform.user import User  # noqa: F401
from setupkit.models.platform.role import Role, UserTenantRole  # noqa: F401
from setupkit.models.platform.auth_profile import AuthProfile, AuthProviderType  # noqa: F401
from setupkit.models.platform.setup_state import SetupState  # noqa: F401
