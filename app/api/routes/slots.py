from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import ALL_ROLES, get_session, require_roles
from app.api.schemas.appointment import AvailableSlotsResponse
from app.services.slot_service import get_available_slots

# Mounted before the appointments router so "/available-slots" is not taken for an id.
router = APIRouter(prefix="/appointments", tags=["slots"])


@router.get(
    "/available-slots",
    response_model=AvailableSlotsResponse,
    dependencies=[Depends(require_roles(*ALL_ROLES))],
)
async def available_slots(
    doctor_id: int | None = Query(None),
    date_param: date | None = Query(None, alias="date"),
    session: AsyncSession = Depends(get_session),
) -> AvailableSlotsResponse:
    """Bookable "HH:MM" slots for a doctor on a date, plus the ones already taken."""
    availability = await get_available_slots(session, doctor_id, date_param)
    return AvailableSlotsResponse(
        date=date_param,
        doctor_id=doctor_id,
        available_slots=availability.available_slots,
        booked_slots=availability.booked_slots,
    )
