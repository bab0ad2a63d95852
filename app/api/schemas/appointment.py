import datetime as dt

from pydantic import BaseModel, Field

from app.models.appointment import AppointmentPublic, AppointmentStatus, AppointmentType

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class AvailableSlotsResponse(BaseModel):
    date: dt.date
    doctor_id: int
    available_slots: list[str]
    booked_slots: list[str]


class BookAppointmentRequest(BaseModel):
    doctor_id: int
    date: dt.date
    time: str = Field(pattern=TIME_PATTERN)
    duration: int = Field(default=30, gt=0, le=480)
    type: AppointmentType = AppointmentType.consultation
    reason: str | None = None
    notes: str | None = None
    # Staff book on behalf of a patient; patients always book for themselves.
    patient_id: int | None = None


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus


class CheckInRequest(BaseModel):
    check_in_time: dt.datetime | None = None


class RescheduleRequest(BaseModel):
    new_date: dt.date
    new_time: str | None = Field(default=None, pattern=TIME_PATTERN)


class AppointmentActionResponse(BaseModel):
    msg: str
    appointment: AppointmentPublic


class ReminderResponse(BaseModel):
    msg: str
    appointment_id: int
