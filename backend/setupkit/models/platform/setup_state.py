"""Completion marker of the initial setup, keyed "primary"."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from setupkit.database import PlatformBase

PRIMARY_KEY = "primary"


class SetupState(PlatformBase):
    __tablename__ = "setup_state"

    key: Mapped[str] = mapped_column(String(50), primary_key=True)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_by: Mapped[str | None] = mapped_column(String(36))
