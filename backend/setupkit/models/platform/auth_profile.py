import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from setupkit.database import PlatformBase


class AuthProviderType(str, enum.Enum):
    LOCAL = "local"
    WINDOWS_AD = "windows_ad"
    AZURE_AD = "azure_ad"


class AuthProfile(PlatformBase):
    __tablename__ = "auth_profiles"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(36), ForeignKey("tenants.id"), nullable=False)
    provider_type: Mapped[AuthProviderType] = mapped_column(
        SAEnum(AuthProviderType, native_enum=False, length=20), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    # Provider-specific, non-secret settings (domain, ldap url, tenant id, ...)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    # Bind password (AD) or client secret (Azure AD)
    secret: Mapped[str | None] = mapped_column(String(500))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="auth_profiles")
