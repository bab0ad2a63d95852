import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import ALL_ROLES, get_session, require_roles
from app.api.schemas.appointment import (
    AppointmentActionResponse,
    BookAppointmentRequest,
    CheckInRequest,
    RescheduleRequest,
    StatusUpdateRequest,
)
from app.core.errors import ValidationError
from app.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentStatus,
)
from app.models.user import Role, User
from app.services.appointment_service import (
    cancel_appointment,
    check_in,
    create_appointment,
    get_appointment_for_user,
    list_appointments_for_user,
    reschedule_appointment,
    update_status,
)
from app.services.notification_service import (
    send_appointment_confirmation_email,
    send_appointment_rejection_email,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/appointments", tags=["appointments"])


def to_public(a: Appointment) -> AppointmentPublic:
    return AppointmentPublic.model_validate(a, from_attributes=True)


async def _queue_patient_email(
    background_tasks: BackgroundTasks,
    session: AsyncSession,
    appointment: Appointment,
    rejected: bool = False,
) -> None:
    """Email the patient about the outcome (sent after the response, failures only logged)."""
    patient = await session.get(User, appointment.patient_id)
    doctor = await session.get(User, appointment.doctor_id)
    if not patient or not doctor:
        logger.warning("Appointment %s has no patient or doctor record; no email sent", appointment.id)
        return
    if rejected:
        background_tasks.add_task(
            send_appointment_rejection_email,
            to_email=patient.email,
            patient_name=patient.name,
            doctor_name=doctor.name,
            appointment_at=appointment.scheduled_at,
            reason=appointment.notes,
        )
    else:
        background_tasks.add_task(
            send_appointment_confirmation_email,
            to_email=patient.email,
            patient_name=patient.name,
            doctor_name=doctor.name,
            appointment_at=appointment.scheduled_at,
        )


@router.post("", response_model=AppointmentPublic, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    body: BookAppointmentRequest,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(Role.patient, Role.receptionist, Role.admin)),
) -> AppointmentPublic:
    if current_user.role == Role.patient:
        patient_id = current_user.id
    elif body.patient_id is None:
        raise ValidationError("patient_id is required when booking on behalf of a patient")
    else:
        patient_id = body.patient_id
    data = AppointmentCreate(
        doctor_id=body.doctor_id,
        date=body.date,
        time=body.time,
        duration=body.duration,
        type=body.type,
        reason=body.reason,
        notes=body.notes,
    )
    appointment = await create_appointment(session, patient_id, data)
    return to_public(appointment)


@router.get("", response_model=list[AppointmentPublic])
async def list_appointments(
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
) -> list[AppointmentPublic]:
    appointments = await list_appointments_for_user(session, current_user)
    return [to_public(a) for a in appointments]


@router.get("/{appointment_id}", response_model=AppointmentPublic)
async def get_appointment_by_id(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
) -> AppointmentPublic:
    appointment = await get_appointment_for_user(session, appointment_id, current_user)
    return to_public(appointment)


@router.patch("/{appointment_id}/status", response_model=AppointmentPublic)
async def change_status(
    appointment_id: int,
    body: StatusUpdateRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(Role.doctor, Role.receptionist, Role.admin)),
) -> AppointmentPublic:
    appointment = await update_status(session, appointment_id, body.status, current_user)
    if body.status == AppointmentStatus.approved:
        await _queue_patient_email(background_tasks, session, appointment)
    elif body.status == AppointmentStatus.rejected:
        await _queue_patient_email(background_tasks, session, appointment, rejected=True)
    return to_public(appointment)


@router.patch("/{appointment_id}/checkin", response_model=AppointmentActionResponse)
async def check_in_patient(
    appointment_id: int,
    body: CheckInRequest | None = None,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(Role.receptionist, Role.admin)),
) -> AppointmentActionResponse:
    appointment = await check_in(
        session, appointment_id, body.check_in_time if body else None
    )
    return AppointmentActionResponse(
        msg="Patient checked in successfully", appointment=to_public(appointment)
    )


@router.patch("/{appointment_id}/reschedule", response_model=AppointmentActionResponse)
async def reschedule(
    appointment_id: int,
    body: RescheduleRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
) -> AppointmentActionResponse:
    appointment = await reschedule_appointment(
        session, appointment_id, current_user, body.new_date, body.new_time
    )
    await _queue_patient_email(background_tasks, session, appointment)
    scheduler = getattr(request.app.state, "reminder_scheduler", None)
    if scheduler:
        # The service deleted the dispatch rows; cached keys would still skip the new time.
        background_tasks.add_task(scheduler.ledger.forget, appointment.id)
    return AppointmentActionResponse(
        msg="Appointment rescheduled successfully", appointment=to_public(appointment)
    )


@router.delete("/{appointment_id}", response_model=AppointmentActionResponse)
async def cancel(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    current_user: User = Depends(require_roles(*ALL_ROLES)),
) -> AppointmentActionResponse:
    appointment = await cancel_appointment(session, appointment_id, current_user)
    return AppointmentActionResponse(
        msg="Appointment cancelled successfully", appointment=to_public(appointment)
    )
