"""One persisted record per wizard step (database, admin, auth, summary)."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from setupkit.database import StateBase


class SetupStepState(StateBase):
    __tablename__ = "setup_step_states"

    step_id: Mapped[str] = mapped_column(String(20), primary_key=True)
    # Non-secret form fields only.
    data: Mapped[dict] = mapped_column(JSON, default=dict)
    # Write-only values, never returned by the API.
    secrets: Mapped[dict] = mapped_column(JSON, default=dict)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    saved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
