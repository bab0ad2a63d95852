import logging
from datetime import UTC, date, datetime, time as dt_time

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from app.models.appointment import (
    RELEASED_STATUSES,
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentStatus,
)
from app.models.user import STAFF_ROLES, Role, User
from app.services.lifecycle import ensure_reschedulable, ensure_transition
from app.services.reminder_ledger import delete_dispatches
from app.services.slot_service import is_grid_slot

logger = logging.getLogger(__name__)

LIVE_SLOT_INDEX = "uq_appointments_live_slot"
# SQLite reports the violated columns instead of the index name.
_SQLITE_LIVE_SLOT_COLUMNS = "appointments.doctor_id, appointments.date, appointments.time"

SLOT_TAKEN = "This time slot is already booked. Please select another time."
SLOT_JUST_TAKEN = "This time slot was just booked by another patient. Please select another time."


def _utc_naive_now() -> datetime:
    """Naive UTC for comparison with TIMESTAMP WITHOUT TIME ZONE."""
    return datetime.now(UTC).replace(tzinfo=None)


def _to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone(UTC).replace(tzinfo=None)
    return dt


def scheduled_at_for(d: date, time_label: str) -> datetime:
    hour, minute = (int(part) for part in time_label.split(":"))
    return datetime.combine(d, dt_time(hour, minute))


def _is_live_slot_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return LIVE_SLOT_INDEX in message or _SQLITE_LIVE_SLOT_COLUMNS in message


def _snapshot(appointment: Appointment | None) -> AppointmentPublic | None:
    """Detached copy; the session may roll back before the error is rendered."""
    if appointment is None:
        return None
    return AppointmentPublic.model_validate(appointment, from_attributes=True)


def _is_party(user: User, appointment: Appointment) -> bool:
    return user.id in (appointment.patient_id, appointment.doctor_id)


async def find_live_appointment(
    session: AsyncSession,
    doctor_id: int,
    d: date,
    time_label: str,
    exclude_id: int | None = None,
) -> Appointment | None:
    q = select(Appointment).where(
        Appointment.doctor_id == doctor_id,
        Appointment.date == d,
        Appointment.time == time_label,
        Appointment.status.not_in(RELEASED_STATUSES),
    )
    if exclude_id is not None:
        q = q.where(Appointment.id != exclude_id)
    result = await session.execute(q)
    return result.scalars().first()


async def _require_user(session: AsyncSession, user_id: int, role: Role) -> User:
    user = await session.get(User, user_id)
    if not user or user.role != role:
        raise NotFoundError(f"{role.value.capitalize()} not found")
    return user


async def _flush_slot_write(
    session: AsyncSession, doctor_id: int, d: date, time_label: str
) -> None:
    """Flush pending writes; a live-slot index violation becomes ConflictError."""
    try:
        await session.flush()
    except IntegrityError as e:
        await session.rollback()
        if not _is_live_slot_violation(e):
            raise
        logger.info(
            "Live slot race lost: doctor=%s date=%s time=%s", doctor_id, d, time_label
        )
        winner = await find_live_appointment(session, doctor_id, d, time_label)
        raise ConflictError(SLOT_JUST_TAKEN, conflicting_appointment=_snapshot(winner)) from e


async def create_appointment(
    session: AsyncSession, patient_id: int, data: AppointmentCreate
) -> Appointment:
    if not is_grid_slot(data.time):
        raise ValidationError(f"'{data.time}' is not a bookable time slot")
    await _require_user(session, data.doctor_id, Role.doctor)
    await _require_user(session, patient_id, Role.patient)

    # Fast path for the common case; the unique index is what actually guarantees it.
    existing = await find_live_appointment(session, data.doctor_id, data.date, data.time)
    if existing:
        raise ConflictError(SLOT_TAKEN, conflicting_appointment=_snapshot(existing))

    appointment = Appointment(
        patient_id=patient_id,
        doctor_id=data.doctor_id,
        date=data.date,
        time=data.time,
        scheduled_at=scheduled_at_for(data.date, data.time),
        duration=data.duration,
        type=data.type.value,
        reason=data.reason,
        notes=data.notes,
        status=AppointmentStatus.pending.value,
    )
    session.add(appointment)
    await _flush_slot_write(session, data.doctor_id, data.date, data.time)
    await session.refresh(appointment)
    logger.info(
        "Appointment %s booked: doctor=%s date=%s time=%s",
        appointment.id, appointment.doctor_id, appointment.date, appointment.time,
    )
    return appointment


async def get_appointment(session: AsyncSession, appointment_id: int) -> Appointment:
    appointment = await session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError("Appointment not found")
    return appointment


async def get_appointment_for_user(
    session: AsyncSession, appointment_id: int, user: User
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if user.role not in STAFF_ROLES and not _is_party(user, appointment):
        raise AuthorizationError("Not authorized to view this appointment")
    return appointment


async def list_appointments_for_user(session: AsyncSession, user: User) -> list[Appointment]:
    q = select(Appointment).order_by(Appointment.scheduled_at)
    if user.role == Role.patient:
        q = q.where(Appointment.patient_id == user.id)
    elif user.role == Role.doctor:
        q = q.where(Appointment.doctor_id == user.id)
    result = await session.execute(q)
    return list(result.scalars().all())


async def update_status(
    session: AsyncSession, appointment_id: int, new_status: AppointmentStatus, actor: User
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if actor.role == Role.doctor and appointment.doctor_id != actor.id:
        raise AuthorizationError("Not authorized to update this appointment")
    ensure_transition(appointment.status, new_status.value)
    previous = appointment.status
    appointment.status = new_status.value
    appointment.updated_at = _utc_naive_now()
    session.add(appointment)
    await session.flush()
    logger.info("Appointment %s status %s -> %s", appointment.id, previous, appointment.status)
    return appointment


async def check_in(
    session: AsyncSession, appointment_id: int, check_in_time: datetime | None = None
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if appointment.status != AppointmentStatus.confirmed.value:
        raise PreconditionError(
            "Only confirmed appointments can be checked in",
            current_status=appointment.status,
        )
    appointment.check_in_time = _to_naive_utc(check_in_time) if check_in_time else _utc_naive_now()
    appointment.updated_at = _utc_naive_now()
    session.add(appointment)
    await session.flush()
    return appointment


async def reschedule_appointment(
    session: AsyncSession,
    appointment_id: int,
    actor: User,
    new_date: date,
    new_time: str | None = None,
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if not _is_party(actor, appointment):
        raise AuthorizationError("Not authorized to reschedule this appointment")
    ensure_reschedulable(appointment.status)
    time_label = new_time or appointment.time
    if not is_grid_slot(time_label):
        raise ValidationError(f"'{time_label}' is not a bookable time slot")

    existing = await find_live_appointment(
        session, appointment.doctor_id, new_date, time_label, exclude_id=appointment.id
    )
    if existing:
        raise ConflictError(SLOT_TAKEN, conflicting_appointment=_snapshot(existing))

    appointment.date = new_date
    appointment.time = time_label
    appointment.scheduled_at = scheduled_at_for(new_date, time_label)
    appointment.status = AppointmentStatus.pending.value
    appointment.updated_at = _utc_naive_now()
    session.add(appointment)
    await _flush_slot_write(session, appointment.doctor_id, new_date, time_label)
    # Reminders already sent were for the old time.
    await delete_dispatches(session, appointment.id)
    logger.info("Appointment %s rescheduled to %s %s", appointment.id, new_date, time_label)
    return appointment


async def cancel_appointment(
    session: AsyncSession, appointment_id: int, actor: User
) -> Appointment:
    appointment = await get_appointment(session, appointment_id)
    if actor.role in (Role.patient, Role.doctor) and not _is_party(actor, appointment):
        raise AuthorizationError("Not authorized to cancel this appointment")
    ensure_transition(appointment.status, AppointmentStatus.cancelled.value)
    appointment.status = AppointmentStatus.cancelled.value
    appointment.updated_at = _utc_naive_now()
    session.add(appointment)
    await session.flush()
    logger.info("Appointment %s cancelled by user %s", appointment.id, actor.id)
    return appointment
