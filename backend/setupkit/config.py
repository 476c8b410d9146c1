from pathlib import Path

from pydantic_settings import BaseSettings

_BACKEND_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # App
    environment: str = "development"
    debug: bool = True
    allowed_origins: str = "http://localhost:3000,http://localhost:5173"
    log_level: str = "INFO"

    # Local state database (bootstrap config + wizard steps)
    state_database_url: str = "sqlite+aiosqlite:///./setupkit_state.db"

    # Auth / JWT
    secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 120

    # The single setup operator (the target database has no users yet)
    bootstrap_admin_username: str = "setup_admin"
    bootstrap_admin_password: str = "change-me"

    # Connectivity
    connect_timeout_seconds: float = 10.0
    readiness_poll_interval_seconds: float = 5.0
    readiness_max_attempts: int = 12
    sqlserver_odbc_driver: str = "ODBC Driver 18 for SQL Server"

    # Managed container (fixed by convention, the operator only picks credentials)
    docker_binary: str = "docker"
    managed_container_name: str = "setupkit-postgres"
    managed_container_image: str = "postgres:16-alpine"
    managed_volume_name: str = "setupkit_postgres_data"
    managed_host: str = "localhost"
    managed_port: int = 5432
    managed_database: str = "platform"
    managed_default_user: str = "platform_user"
    container_operation_timeout_seconds: int = 90
    backup_directory: str = "./backups"

    # Schema provisioning
    alembic_directory: str = str(_BACKEND_DIR)
    migration_timeout_seconds: int = 300

    # Seeding defaults used by initialize
    default_tenant_name: str = "Platform"
    default_tenant_slug: str = "platform"
    default_company_name: str = "Platform"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
