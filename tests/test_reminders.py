"""Tests for reminder windows, the dispatch ledger and the scheduler."""

import asyncio
from datetime import UTC, date, datetime, timedelta

import pytest

from app.core.errors import ConflictError, NotFoundError
from app.models.appointment import AppointmentStatus
from app.services.appointment_service import reschedule_appointment, update_status
from app.services.notification_service import ReminderDelivery
from app.services.reminder_ledger import ReminderLedger
from app.services.reminder_service import (
    ReminderScheduler,
    ReminderWindow,
    build_windows,
    scan_window,
    seconds_until_next_tick,
    send_immediate_reminder,
)

NOW = datetime(2030, 1, 14, 10, 0)


class RecordingNotifier:
    """Stands in for the email/SMS sender and remembers every call."""

    def __init__(self, delivered: bool = True, fail_for: set[str] | None = None) -> None:
        self.calls: list[tuple] = []
        self.delivered = delivered
        self.fail_for = fail_for or set()

    async def __call__(self, email, phone, patient_name, doctor_name, appointment_at) -> ReminderDelivery:
        self.calls.append((email, phone, patient_name, doctor_name, appointment_at))
        if email in self.fail_for:
            raise RuntimeError("mail relay down")
        return ReminderDelivery(email_sent=self.delivered)


def _window(label: str) -> ReminderWindow:
    return {w.label: w for w in build_windows()}[label]


@pytest.fixture
def ledger(session_maker) -> ReminderLedger:
    return ReminderLedger(session_maker)


class TestReminderWindow:
    def test_default_windows(self) -> None:
        day, hour = build_windows()
        assert (day.label, day.lead, day.width, day.interval) == (
            "24h", timedelta(hours=24), timedelta(hours=1), timedelta(hours=1)
        )
        assert (hour.label, hour.lead, hour.width, hour.interval) == (
            "1h", timedelta(hours=1), timedelta(minutes=10), timedelta(minutes=10)
        )

    def test_bounds(self) -> None:
        start, end = _window("24h").bounds(NOW)
        assert start == NOW + timedelta(hours=23)
        assert end == NOW + timedelta(hours=24)

    def test_window_narrower_than_interval_is_refused(self) -> None:
        with pytest.raises(ValueError):
            ReminderWindow("bad", timedelta(hours=1), timedelta(minutes=5), timedelta(minutes=10))


class TestSecondsUntilNextTick:
    def test_aligns_to_the_hour(self) -> None:
        now = datetime(2030, 1, 14, 10, 15, tzinfo=UTC)
        assert seconds_until_next_tick(3600, now) == pytest.approx(45 * 60)

    def test_naive_is_treated_as_utc(self) -> None:
        assert seconds_until_next_tick(600, datetime(2030, 1, 14, 10, 7)) == pytest.approx(180)

    def test_exactly_on_a_tick_waits_a_full_interval(self) -> None:
        assert seconds_until_next_tick(600, datetime(2030, 1, 14, 10, 0, tzinfo=UTC)) == pytest.approx(600)


class TestReminderLedger:
    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, ledger, make_appointment) -> None:
        appointment = await make_appointment()
        assert await ledger.claim(appointment.id, "24h") is True
        assert await ledger.claim(appointment.id, "24h") is False
        assert await ledger.claim(appointment.id, "1h") is True
        assert ledger.size == 2

    @pytest.mark.asyncio
    async def test_claims_survive_a_new_ledger_instance(self, session_maker, ledger, make_appointment) -> None:
        appointment = await make_appointment()
        await ledger.claim(appointment.id, "24h")

        restarted = ReminderLedger(session_maker)
        assert restarted.size == 0
        assert await restarted.contains(appointment.id, "24h")
        assert await restarted.claim(appointment.id, "24h") is False

    @pytest.mark.asyncio
    async def test_concurrent_claims_yield_one_winner(self, ledger, make_appointment) -> None:
        appointment = await make_appointment()
        results = await asyncio.gather(*(ledger.claim(appointment.id, "1h") for _ in range(5)))
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_reset_clears_cache_and_table(self, session_maker, ledger, make_appointment) -> None:
        appointment = await make_appointment()
        await ledger.claim(appointment.id, "24h")
        await ledger.claim(appointment.id, "1h")
        assert await ledger.reset() == 2
        assert ledger.size == 0
        assert not await ReminderLedger(session_maker).contains(appointment.id, "24h")
        assert await ledger.claim(appointment.id, "24h") is True

    @pytest.mark.asyncio
    async def test_forget_drops_only_that_appointments_keys(self, ledger, make_appointment) -> None:
        first = await make_appointment(time="10:00")
        second = await make_appointment(time="10:30")
        await ledger.claim(first.id, "24h")
        await ledger.claim(first.id, "1h")
        await ledger.claim(second.id, "24h")

        assert await ledger.forget(first.id) == 2
        assert ledger.size == 1
        assert await ledger.forget(first.id) == 0


class TestScanWindow:
    @pytest.mark.asyncio
    async def test_only_confirmed_appointments_inside_the_window(
        self, session, ledger, users, make_appointment
    ) -> None:
        # NOW + 24h is 2030-01-15 10:00; the 24h window covers 09:00..10:00 that day.
        inside = await make_appointment(time="09:30", status=AppointmentStatus.confirmed.value)
        await make_appointment(time="10:00", status=AppointmentStatus.pending.value)
        await make_appointment(time="11:00", status=AppointmentStatus.confirmed.value)
        notifier = RecordingNotifier()

        report = await scan_window(session, _window("24h"), ledger, notifier, now=NOW)

        assert report.matched == 1
        assert report.dispatched == 1
        assert report.delivered == 1
        email, phone, patient_name, doctor_name, when = notifier.calls[0]
        assert email == users["patient"].email
        assert phone == "+15550001111"
        assert doctor_name == "Grace Okafor"
        assert when == inside.scheduled_at

    @pytest.mark.asyncio
    async def test_window_edges_are_inclusive(self, session, ledger, make_appointment) -> None:
        await make_appointment(time="09:00", status=AppointmentStatus.confirmed.value)
        await make_appointment(time="10:00", status=AppointmentStatus.confirmed.value)
        report = await scan_window(session, _window("24h"), ledger, RecordingNotifier(), now=NOW)
        assert report.matched == 2

    @pytest.mark.asyncio
    async def test_rescanning_does_not_remind_twice(self, session, ledger, make_appointment) -> None:
        await make_appointment(time="09:30", status=AppointmentStatus.confirmed.value)
        notifier = RecordingNotifier()
        window = _window("24h")

        await scan_window(session, window, ledger, notifier, now=NOW)
        second = await scan_window(session, window, ledger, notifier, now=NOW + timedelta(minutes=20))

        assert len(notifier.calls) == 1
        assert second.matched == 1
        assert second.skipped == 1

    @pytest.mark.asyncio
    async def test_each_window_reminds_once(self, session, ledger, make_appointment) -> None:
        await make_appointment(time="09:30", status=AppointmentStatus.confirmed.value)
        notifier = RecordingNotifier()

        await scan_window(session, _window("24h"), ledger, notifier, now=NOW)
        # One hour before the visit the 1h window picks it up as a separate reminder.
        one_hour_before = datetime(2030, 1, 15, 8, 30)
        report = await scan_window(session, _window("1h"), ledger, notifier, now=one_hour_before)

        assert report.dispatched == 1
        assert len(notifier.calls) == 2

    @pytest.mark.asyncio
    async def test_reset_allows_another_reminder(self, session, ledger, make_appointment) -> None:
        await make_appointment(time="09:30", status=AppointmentStatus.confirmed.value)
        notifier = RecordingNotifier()
        window = _window("24h")

        await scan_window(session, window, ledger, notifier, now=NOW)
        await ledger.reset()
        await scan_window(session, window, ledger, notifier, now=NOW)

        assert len(notifier.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_send_is_isolated_and_not_retried(
        self, session, ledger, users, make_appointment
    ) -> None:
        await make_appointment(time="09:00", status=AppointmentStatus.confirmed.value)
        await make_appointment(
            time="09:30", status=AppointmentStatus.confirmed.value, patient_id=users["other_patient"].id
        )
        notifier = RecordingNotifier(fail_for={users["patient"].email})
        window = _window("24h")

        report = await scan_window(session, window, ledger, notifier, now=NOW)
        assert report.failed == 1
        assert report.delivered == 1

        again = await scan_window(session, window, ledger, notifier, now=NOW)
        assert again.skipped == 2
        assert len(notifier.calls) == 2

    @pytest.mark.asyncio
    async def test_undelivered_counts_as_dispatched(self, session, ledger, make_appointment) -> None:
        await make_appointment(time="09:30", status=AppointmentStatus.confirmed.value)
        report = await scan_window(session, _window("24h"), ledger, RecordingNotifier(delivered=False), now=NOW)
        assert report.dispatched == 1
        assert report.delivered == 0


class TestRescheduledAppointments:
    @pytest.mark.asyncio
    async def test_new_time_gets_its_own_reminder(
        self, session_maker, ledger, users, visit_date, make_appointment
    ) -> None:
        appointment = await make_appointment(time="10:00", status=AppointmentStatus.confirmed.value)
        notifier = RecordingNotifier()
        window = _window("24h")

        async with session_maker() as s:
            first = await scan_window(s, window, ledger, notifier, now=NOW)
        assert first.dispatched == 1

        async with session_maker() as s:
            await reschedule_appointment(s, appointment.id, users["patient"], visit_date, "15:00")
            await s.commit()
        await ledger.forget(appointment.id)
        async with session_maker() as s:
            await update_status(s, appointment.id, AppointmentStatus.confirmed, users["admin"])
            await s.commit()

        async with session_maker() as s:
            second = await scan_window(s, window, ledger, notifier, now=datetime(2030, 1, 14, 15, 0))
        assert (second.matched, second.dispatched, second.skipped) == (1, 1, 0)
        assert len(notifier.calls) == 2
        assert notifier.calls[1][4] == datetime(2030, 1, 15, 15, 0)

    @pytest.mark.asyncio
    async def test_reschedule_removes_persisted_dispatches(
        self, session_maker, ledger, users, make_appointment
    ) -> None:
        appointment = await make_appointment(status=AppointmentStatus.confirmed.value)
        await ledger.claim(appointment.id, "24h")
        await ledger.claim(appointment.id, "1h")

        async with session_maker() as s:
            await reschedule_appointment(s, appointment.id, users["doctor"], date(2030, 2, 1))
            await s.commit()

        # A fresh process has nothing cached and must find nothing in the table either.
        restarted = ReminderLedger(session_maker)
        assert not await restarted.contains(appointment.id, "24h")
        assert not await restarted.contains(appointment.id, "1h")

    @pytest.mark.asyncio
    async def test_failed_reschedule_keeps_dispatches(
        self, session_maker, ledger, users, visit_date, make_appointment
    ) -> None:
        appointment = await make_appointment(time="10:00", status=AppointmentStatus.confirmed.value)
        await make_appointment(time="11:00", patient_id=users["other_patient"].id)
        await ledger.claim(appointment.id, "24h")

        async with session_maker() as s:
            with pytest.raises(ConflictError):
                await reschedule_appointment(s, appointment.id, users["patient"], visit_date, "11:00")

        assert await ReminderLedger(session_maker).contains(appointment.id, "24h")


class TestImmediateReminder:
    @pytest.mark.asyncio
    async def test_ignores_the_ledger(self, session, ledger, make_appointment) -> None:
        appointment = await make_appointment(status=AppointmentStatus.confirmed.value)
        await ledger.claim(appointment.id, "24h")
        notifier = RecordingNotifier()
        assert await send_immediate_reminder(session, appointment.id, notifier) is True
        assert len(notifier.calls) == 1

    @pytest.mark.asyncio
    async def test_reports_undelivered(self, session, make_appointment) -> None:
        appointment = await make_appointment()
        assert await send_immediate_reminder(session, appointment.id, RecordingNotifier(delivered=False)) is False

    @pytest.mark.asyncio
    async def test_missing_appointment(self, session) -> None:
        with pytest.raises(NotFoundError):
            await send_immediate_reminder(session, 404, RecordingNotifier())


class TestReminderScheduler:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, session_maker) -> None:
        scheduler = ReminderScheduler(session_maker, notifier=RecordingNotifier())
        scheduler.start()
        assert scheduler.running
        names = {t.get_name() for t in scheduler._tasks}
        assert names == {"reminders-24h", "reminders-1h", "reminders-reset"}
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_second_start_is_ignored(self, session_maker) -> None:
        scheduler = ReminderScheduler(session_maker, notifier=RecordingNotifier())
        scheduler.start()
        scheduler.start()
        assert len(scheduler._tasks) == 3
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_scan_uses_its_ledger(self, session_maker, make_appointment) -> None:
        await make_appointment(time="09:30", status=AppointmentStatus.confirmed.value)
        notifier = RecordingNotifier()
        scheduler = ReminderScheduler(session_maker, notifier=notifier)

        first = await scheduler.run_scan(_window("24h"), now=NOW)
        second = await scheduler.run_scan(_window("24h"), now=NOW)

        assert first.dispatched == 1
        assert second.skipped == 1
        assert scheduler.ledger.size == 1
        assert await scheduler.reset_ledger() == 1
        assert scheduler.ledger.size == 0

    @pytest.mark.asyncio
    async def test_scan_failure_is_logged_not_raised(self, session_maker, monkeypatch) -> None:
        scheduler = ReminderScheduler(session_maker, notifier=RecordingNotifier())

        async def _boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr("app.services.reminder_service.scan_window", _boom)
        assert await scheduler.run_scan(_window("1h"), now=NOW) is None
