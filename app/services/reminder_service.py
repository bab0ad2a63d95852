"""Appointment reminder scans.

Two windows are scanned on their own cadence: "24h" hourly and "1h" every ten
minutes. A scan at `now` picks confirmed appointments whose start falls in
[now + lead - width, now + lead]. Since width >= interval, every appointment is
seen by at least one scan before its window closes. The ledger keeps each
(appointment, window) pair to a single attempt per epoch; the epoch ends when
the ledger is reset (daily by default).
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.models.appointment import Appointment, AppointmentStatus
from app.models.user import User
from app.services.appointment_service import get_appointment
from app.services.notification_service import ReminderDelivery, send_combined_reminder
from app.services.reminder_ledger import ReminderLedger

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str | None, str, str, datetime], Awaitable[ReminderDelivery]]


def _utc_naive_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class ReminderWindow:
    label: str
    lead: timedelta
    width: timedelta
    interval: timedelta

    def __post_init__(self) -> None:
        if self.width < self.interval:
            raise ValueError(
                f"Reminder window {self.label!r} is {self.width} wide but scanned every "
                f"{self.interval}; appointments would slip through"
            )

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        end = now + self.lead
        return end - self.width, end


def build_windows() -> tuple[ReminderWindow, ...]:
    return (
        ReminderWindow(
            label="24h",
            lead=timedelta(hours=24),
            width=timedelta(hours=1),
            interval=timedelta(seconds=settings.reminder_24h_interval_seconds),
        ),
        ReminderWindow(
            label="1h",
            lead=timedelta(hours=1),
            width=timedelta(minutes=10),
            interval=timedelta(seconds=settings.reminder_1h_interval_seconds),
        ),
    )


@dataclass
class ScanReport:
    label: str
    matched: int = 0
    dispatched: int = 0
    delivered: int = 0
    skipped: int = 0
    failed: int = 0


async def scan_window(
    session: AsyncSession,
    window: ReminderWindow,
    ledger: ReminderLedger,
    notifier: Notifier = send_combined_reminder,
    now: datetime | None = None,
) -> ScanReport:
    start, end = window.bounds(now or _utc_naive_now())
    result = await session.execute(
        select(Appointment)
        .where(
            Appointment.status == AppointmentStatus.confirmed.value,
            Appointment.scheduled_at >= start,
            Appointment.scheduled_at <= end,
        )
        .order_by(Appointment.scheduled_at)
    )
    appointments = list(result.scalars().all())
    report = ScanReport(label=window.label, matched=len(appointments))

    for appointment in appointments:
        try:
            patient = await session.get(User, appointment.patient_id)
            doctor = await session.get(User, appointment.doctor_id)
            if not patient or not doctor:
                logger.warning("Appointment %s has no patient or doctor record, skipping", appointment.id)
                report.skipped += 1
                continue
            if not await ledger.claim(appointment.id, window.label):
                report.skipped += 1
                continue
            # Claimed before sending: a failed send is not retried in this epoch.
            delivery = await notifier(
                patient.email, patient.phone, patient.name, doctor.name, appointment.scheduled_at
            )
            report.dispatched += 1
            if delivery.delivered:
                report.delivered += 1
            else:
                logger.warning("Reminder %s for appointment %s was not delivered", window.label, appointment.id)
        except Exception:
            logger.exception("Reminder %s for appointment %s failed", window.label, appointment.id)
            report.failed += 1

    logger.info(
        "Reminder scan %s [%s, %s]: matched=%d dispatched=%d delivered=%d skipped=%d failed=%d",
        window.label, start, end, report.matched, report.dispatched,
        report.delivered, report.skipped, report.failed,
    )
    return report


async def send_immediate_reminder(
    session: AsyncSession,
    appointment_id: int,
    notifier: Notifier = send_combined_reminder,
) -> bool:
    """Remind now, ignoring the ledger. True if email or SMS went out."""
    appointment = await get_appointment(session, appointment_id)
    patient = await session.get(User, appointment.patient_id)
    doctor = await session.get(User, appointment.doctor_id)
    if not patient or not doctor:
        logger.warning("Appointment %s has no patient or doctor record", appointment_id)
        return False
    delivery = await notifier(
        patient.email, patient.phone, patient.name, doctor.name, appointment.scheduled_at
    )
    return delivery.delivered


def seconds_until_next_tick(interval_seconds: int, now: datetime | None = None) -> float:
    """Seconds to the next multiple of the interval since the UTC epoch (hourly -> on the hour)."""
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    remainder = now.timestamp() % interval_seconds
    return interval_seconds - remainder


class ReminderScheduler:
    """Runs the window scans and the ledger reset as background asyncio tasks."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        ledger: ReminderLedger | None = None,
        notifier: Notifier = send_combined_reminder,
        windows: tuple[ReminderWindow, ...] | None = None,
        reset_interval_seconds: int | None = None,
    ) -> None:
        self._session_maker = session_maker
        self.ledger = ledger or ReminderLedger(session_maker)
        self._notifier = notifier
        self.windows = windows or build_windows()
        self.reset_interval_seconds = reset_interval_seconds or settings.reminder_ledger_reset_seconds
        self._tasks: list[asyncio.Task] = []

    async def run_scan(self, window: ReminderWindow, now: datetime | None = None) -> ScanReport | None:
        try:
            async with self._session_maker() as session:
                return await scan_window(session, window, self.ledger, self._notifier, now)
        except Exception as e:
            logger.exception("Reminder scan %s failed: %s", window.label, e)
            return None

    async def reset_ledger(self) -> int | None:
        try:
            return await self.ledger.reset()
        except Exception as e:
            logger.exception("Reminder ledger reset failed: %s", e)
            return None

    async def _scan_loop(self, window: ReminderWindow) -> None:
        interval = int(window.interval.total_seconds())
        while True:
            await asyncio.sleep(seconds_until_next_tick(interval))
            await self.run_scan(window)

    async def _reset_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_next_tick(self.reset_interval_seconds))
            await self.reset_ledger()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            logger.warning("Reminder scheduler already running")
            return
        for window in self.windows:
            self._tasks.append(asyncio.create_task(self._scan_loop(window), name=f"reminders-{window.label}"))
        self._tasks.append(asyncio.create_task(self._reset_loop(), name="reminders-reset"))
        logger.info(
            "Reminder scheduler started: %s; ledger reset every %ds",
            ", ".join(f"{w.label} every {int(w.interval.total_seconds())}s" for w in self.windows),
            self.reset_interval_seconds,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Reminder scheduler stopped")
