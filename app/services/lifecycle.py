"""Appointment status transitions.

Every status change goes through `ensure_transition`; the table below is the
whole graph. Reschedule is a separate action (see RESCHEDULABLE) that sends a
live appointment back to pending.
"""
from app.core.errors import InvalidTransitionError
from app.models.appointment import AppointmentStatus as S

TRANSITIONS: dict[S, frozenset[S]] = {
    S.pending: frozenset({S.approved, S.rejected, S.confirmed, S.cancelled}),
    S.approved: frozenset({S.confirmed, S.cancelled}),
    S.confirmed: frozenset({S.completed, S.cancelled}),
    S.rejected: frozenset(),
    S.cancelled: frozenset(),
    S.completed: frozenset(),
}

TERMINAL = frozenset(s.value for s, targets in TRANSITIONS.items() if not targets)

RESCHEDULABLE = frozenset({S.pending.value, S.approved.value, S.confirmed.value})


def can_transition(current: str, target: str) -> bool:
    try:
        return S(target) in TRANSITIONS[S(current)]
    except ValueError:
        return False


def ensure_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot change appointment status from '{current}' to '{target}'",
            current_status=current,
            requested_status=target,
        )


def ensure_reschedulable(current: str) -> None:
    if current not in RESCHEDULABLE:
        raise InvalidTransitionError(
            f"Appointments in status '{current}' cannot be rescheduled",
            current_status=current,
        )
