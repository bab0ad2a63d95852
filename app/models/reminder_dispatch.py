from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class ReminderDispatch(SQLModel, table=True):
    """One row per (appointment, window) reminder attempt in the current ledger epoch."""

    __tablename__ = "reminder_dispatches"
    __table_args__ = (
        UniqueConstraint("appointment_id", "window_label", name="uq_reminder_dispatches_key"),
    )

    id: int | None = Field(default=None, primary_key=True)
    appointment_id: int = Field(foreign_key="appointments.id", ondelete="CASCADE", index=True)
    window_label: str = Field(max_length=8)
    dispatched_at: datetime = Field(default_factory=_utc_naive_now, sa_type=DateTime())
