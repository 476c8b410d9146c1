"""Alembic env.py for the target (platform) database.

Usage (normally run by the schema provisioner):
  SETUPKIT_MIGRATION_PROVIDER=postgres \
  SETUPKIT_MIGRATION_CONNECTION="Host=..;Database=..;Username=..;Password=.." \
  alembic upgrade head
"""

import asyncio
import os
from logging.config import fileConfig

from alembic import context

from setupkit.database import PlatformBase
from setupkit.models import platform  # noqa: F401 (registers platform tables)
from setupkit.services.connection_string import normalize_provider, target_engine_options
from setupkit.services.connectivity import create_target_engine
from setupkit.services.provisioner import MIGRATION_CONNECTION_ENV, MIGRATION_PROVIDER_ENV

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = PlatformBase.metadata

provider = normalize_provider(os.environ.get(MIGRATION_PROVIDER_ENV, "postgres"))
connection_string = os.environ.get(MIGRATION_CONNECTION_ENV, "")
if not connection_string:
    raise RuntimeError(f"{MIGRATION_CONNECTION_ENV} is not set")


def run_migrations_offline() -> None:
    url, _ = target_engine_options(provider, connection_string)
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_target_engine(provider, connection_string)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
        await connection.commit()
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
