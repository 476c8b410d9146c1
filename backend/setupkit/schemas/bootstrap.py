"""Pydantic schemas for database bootstrap and the managed container."""

from datetime import datetime

from pydantic import BaseModel, Field


# ── Database connection ─────────────────────────────────────

class DatabaseConnectionRequest(BaseModel):
    provider: str
    connection_string: str


class DatabaseBootstrapStatusOut(BaseModel):
    configured: bool
    provider: str | None = None
    connection_string_masked: str = ""
    provisioned_at: datetime | None = None
    updated_at: datetime | None = None
    restart_required: bool = False


class ConnectivityTestOut(BaseModel):
    success: bool
    message: str
    elapsed_ms: int


class ConnectionStringBuildRequest(BaseModel):
    """Form fields; `managed=True` ignores everything but user/password."""
    provider: str = "postgres"
    managed: bool = False
    host: str | None = None
    port: str | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    ssl_mode: str | None = None
    tls_min_version: str | None = None
    root_cert_path: str | None = None
    client_cert_path: str | None = None
    client_key_path: str | None = None
    trust_server_certificate: bool = False


class ConnectionStringOut(BaseModel):
    complete: bool
    connection_string: str
    connection_string_masked: str


# ── Managed container ───────────────────────────────────────

class ManagedContainerStatusOut(BaseModel):
    exists: bool
    running: bool
    configured: bool
    username: str | None = None
    resolutions: list[str] = []


class ManagedContainerStartRequest(BaseModel):
    connection_string: str
    timeout_seconds: int = Field(default=90, ge=1, le=600)


class ManagedContainerReuseRequest(BaseModel):
    connection_string: str
    timeout_seconds: int = Field(default=90, ge=1, le=600)


class ManagedContainerRecreateRequest(BaseModel):
    connection_string: str
    backup: bool
    timeout_seconds: int = Field(default=90, ge=1, le=600)


class ContainerOperationOut(BaseModel):
    success: bool
    code: str
    message: str
    backup_path: str | None = None
    backup_file: str | None = None
    fallback_offered: bool = False
    database: DatabaseBootstrapStatusOut | None = None


class ProgressMessage(BaseModel):
    at: str
    message: str


class ProgressOut(BaseModel):
    messages: list[ProgressMessage]
