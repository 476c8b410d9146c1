"""Persisted database bootstrap configuration.

Exactly one row (id=1). Written only by the setup orchestrator, after a
successful connectivity test for the very same connection string.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from setupkit.database import StateBase

SINGLETON_ID = 1


class BootstrapConfig(StateBase):
    __tablename__ = "bootstrap_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    connection_string: Mapped[str] = mapped_column(Text, nullable=False)
    # Set only by a successful provisioning run; reset on every save.
    provisioned_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
