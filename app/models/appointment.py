import datetime as dt
from datetime import UTC
from enum import Enum

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field, SQLModel


def _utc_naive_now() -> dt.datetime:
    """Naive UTC for TIMESTAMP WITHOUT TIME ZONE columns."""
    return dt.datetime.now(UTC).replace(tzinfo=None)


class AppointmentStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    confirmed = "confirmed"
    cancelled = "cancelled"
    completed = "completed"


class AppointmentType(str, Enum):
    consultation = "consultation"
    follow_up = "follow-up"
    emergency = "emergency"


# Appointments in these states no longer hold their slot.
RELEASED_STATUSES = (AppointmentStatus.cancelled.value, AppointmentStatus.rejected.value)

_LIVE_SLOT = text("status NOT IN ('cancelled', 'rejected')")


class Appointment(SQLModel, table=True):
    __tablename__ = "appointments"
    # At most one live appointment per doctor slot; released rows may pile up.
    __table_args__ = (
        Index(
            "uq_appointments_live_slot",
            "doctor_id",
            "date",
            "time",
            unique=True,
            postgresql_where=_LIVE_SLOT,
            sqlite_where=_LIVE_SLOT,
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    doctor_id: int = Field(foreign_key="users.id", ondelete="CASCADE", index=True)
    date: dt.date = Field(index=True)
    time: str = Field(max_length=5)  # "HH:MM"
    scheduled_at: dt.datetime = Field(sa_type=DateTime(), index=True)  # date + time, naive UTC
    duration: int = Field(default=30, sa_column_kwargs={"server_default": "30"})
    type: str = Field(
        default=AppointmentType.consultation.value,
        max_length=16,
        sa_column_kwargs={"server_default": AppointmentType.consultation.value},
    )
    status: str = Field(
        default=AppointmentStatus.pending.value,
        max_length=16,
        index=True,
        sa_column_kwargs={"server_default": AppointmentStatus.pending.value},
    )
    reason: str | None = None
    notes: str | None = None
    check_in_time: dt.datetime | None = Field(default=None, sa_type=DateTime())
    created_at: dt.datetime = Field(default_factory=_utc_naive_now, sa_type=DateTime())
    updated_at: dt.datetime = Field(default_factory=_utc_naive_now, sa_type=DateTime())


class AppointmentCreate(SQLModel):
    doctor_id: int
    date: dt.date
    time: str
    duration: int = 30
    type: AppointmentType = AppointmentType.consultation
    reason: str | None = None
    notes: str | None = None


class AppointmentPublic(SQLModel):
    id: int
    patient_id: int
    doctor_id: int
    date: dt.date
    time: str
    scheduled_at: dt.datetime
    duration: int
    type: str
    status: str
    reason: str | None = None
    notes: str | None = None
    check_in_time: dt.datetime | None = None
    created_at: dt.datetime
    updated_at: dt.datetime
