"""Runtime connection and application lifespan.

The running process loads the persisted target connection once at startup
(or on an explicit reload). When the persisted connection changes after
that, the process is "restart required" until it reloads.

Usage:
    from setupkit.services.runtime import lifespan
    app = FastAPI(lifespan=lifespan, ...)
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

from fastapi import FastAPI

from setupkit.config import settings
from setupkit.database import async_session, create_state_tables
from setupkit.models.state.bootstrap_config import SINGLETON_ID, BootstrapConfig
from setupkit.services.connection_string import DatabaseProvider, normalize_provider
from setupkit.services.sessions import registry

logger = logging.getLogger("setupkit.runtime")


@dataclass
class RuntimeConnection:
    provider: DatabaseProvider | None = None
    connection_string: str | None = None
    loaded_at: datetime | None = None

    @property
    def is_loaded(self) -> bool:
        return bool(self.provider and self.connection_string)

    def load(self, config: BootstrapConfig | None) -> None:
        if config is None:
            self.provider = None
            self.connection_string = None
        else:
            self.provider = normalize_provider(config.provider)
            self.connection_string = config.connection_string
        self.loaded_at = datetime.utcnow()
        logger.info("Runtime connection loaded (configured=%s)", self.is_loaded)

    def restart_required(self, config: BootstrapConfig | None) -> bool:
        if config is None:
            return False
        return (
            self.provider != normalize_provider(config.provider)
            or self.connection_string != config.connection_string
        )


runtime = RuntimeConnection()


async def load_runtime_connection() -> None:
    async with async_session() as db:
        runtime.load(await db.get(BootstrapConfig, SINGLETON_ID))


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await create_state_tables()
    await load_runtime_connection()
    logger.info("Setup service started")
    yield
    registry.clear()
    logger.info("Setup service stopped")
