import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_session, require_roles
from app.api.schemas.appointment import ReminderResponse
from app.models.user import Role
from app.services.notification_service import send_combined_reminder
from app.services.reminder_service import Notifier, send_immediate_reminder

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notifications", tags=["notifications"])


def get_reminder_notifier() -> Notifier:
    return send_combined_reminder


@router.post(
    "/send-reminder/{appointment_id}",
    response_model=ReminderResponse,
    dependencies=[Depends(require_roles(Role.doctor, Role.receptionist, Role.admin))],
)
async def send_reminder(
    appointment_id: int,
    session: AsyncSession = Depends(get_session),
    notifier: Notifier = Depends(get_reminder_notifier),
) -> ReminderResponse:
    """Manually remind the patient now, regardless of earlier scheduled reminders."""
    delivered = await send_immediate_reminder(session, appointment_id, notifier)
    if not delivered:
        logger.warning("Manual reminder for appointment %s was not delivered", appointment_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send reminder",
        )
    return ReminderResponse(msg="Reminder sent successfully", appointment_id=appointment_id)
