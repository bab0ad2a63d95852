from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import ValidationError
from app.models.appointment import RELEASED_STATUSES, Appointment


@dataclass
class SlotAvailability:
    booked_slots: list[str] = field(default_factory=list)
    available_slots: list[str] = field(default_factory=list)


def daily_slot_grid() -> list[str]:
    """All bookable "HH:MM" labels for a day (business hours 9-17, 30-minute steps)."""
    slots: list[str] = []
    step = settings.slot_duration_minutes
    for hour in range(settings.business_start_hour, settings.business_end_hour):
        for minute in range(0, 60, step):
            slots.append(f"{hour:02d}:{minute:02d}")
    return slots


def is_grid_slot(time_label: str) -> bool:
    return time_label in daily_slot_grid()


async def get_booked_slot_times(
    session: AsyncSession, doctor_id: int, d: date
) -> set[str]:
    result = await session.execute(
        select(Appointment.time).where(
            Appointment.doctor_id == doctor_id,
            Appointment.date == d,
            Appointment.status.not_in(RELEASED_STATUSES),
        )
    )
    return {row[0] for row in result.all()}


async def get_available_slots(
    session: AsyncSession, doctor_id: int | None, d: date | None
) -> SlotAvailability:
    if doctor_id is None or d is None:
        raise ValidationError("doctor_id and date are required")
    booked = await get_booked_slot_times(session, doctor_id, d)
    grid = daily_slot_grid()
    return SlotAvailability(
        booked_slots=sorted(booked),
        available_slots=[s for s in grid if s not in booked],
    )
