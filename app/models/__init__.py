from app.models.user import Role, User
from app.models.appointment import (
    Appointment,
    AppointmentCreate,
    AppointmentPublic,
    AppointmentStatus,
    AppointmentType,
)
from app.models.reminder_dispatch import ReminderDispatch

__all__ = [
    "Role",
    "User",
    "Appointment",
    "AppointmentCreate",
    "AppointmentPublic",
    "AppointmentStatus",
    "AppointmentType",
    "ReminderDispatch",
]
