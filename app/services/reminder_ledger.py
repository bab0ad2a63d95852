import asyncio
import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.reminder_dispatch import ReminderDispatch

logger = logging.getLogger(__name__)

LedgerKey = tuple[int, str]


async def delete_dispatches(session: AsyncSession, appointment_id: int) -> int:
    """Drop the recorded reminders of one appointment within the caller's transaction."""
    result = await session.execute(
        delete(ReminderDispatch).where(ReminderDispatch.appointment_id == appointment_id)
    )
    return result.rowcount or 0


class ReminderLedger:
    """Tracks which (appointment, window) reminders were already attempted.

    The in-memory set is a per-process cache. The `reminder_dispatches` table
    is the source of truth, so claims survive restarts and are exclusive
    across instances through its unique constraint.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker
        self._claimed: set[LedgerKey] = set()
        self._lock = asyncio.Lock()

    @property
    def size(self) -> int:
        return len(self._claimed)

    async def contains(self, appointment_id: int, window_label: str) -> bool:
        key = (appointment_id, window_label)
        async with self._lock:
            if key in self._claimed:
                return True
        async with self._session_maker() as session:
            result = await session.execute(
                select(ReminderDispatch.id).where(
                    ReminderDispatch.appointment_id == appointment_id,
                    ReminderDispatch.window_label == window_label,
                )
            )
            found = result.first() is not None
        if found:
            async with self._lock:
                self._claimed.add(key)
        return found

    async def claim(self, appointment_id: int, window_label: str) -> bool:
        """Record an attempt for the key. Returns False if it was already recorded."""
        key = (appointment_id, window_label)
        async with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
        try:
            async with self._session_maker() as session:
                session.add(ReminderDispatch(appointment_id=appointment_id, window_label=window_label))
                await session.commit()
        except IntegrityError:
            # Persisted by another instance, or before this process started.
            logger.debug("Reminder %s for appointment %s already recorded", window_label, appointment_id)
            return False
        except Exception:
            async with self._lock:
                self._claimed.discard(key)
            raise
        return True

    async def forget(self, appointment_id: int) -> int:
        """Drop cached keys for an appointment whose rows were deleted. Returns keys dropped."""
        async with self._lock:
            stale = {key for key in self._claimed if key[0] == appointment_id}
            self._claimed -= stale
        return len(stale)

    async def reset(self) -> int:
        """Start a new epoch: forget every recorded attempt. Returns rows removed."""
        async with self._lock:
            cached = len(self._claimed)
            self._claimed.clear()
            async with self._session_maker() as session:
                result = await session.execute(delete(ReminderDispatch))
                await session.commit()
        removed = result.rowcount or 0
        logger.info("Reminder ledger reset: %d cached, %d persisted entries cleared", cached, removed)
        return removed
