"""Domain errors raised by services and translated to HTTP responses in app.main."""
from typing import Any


class ClinicError(Exception):
    status_code = 500

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra


class ValidationError(ClinicError):
    status_code = 400


class PreconditionError(ClinicError):
    status_code = 400


class AuthorizationError(ClinicError):
    status_code = 403


class NotFoundError(ClinicError):
    status_code = 404


class ConflictError(ClinicError):
    """Slot already taken. `conflicting_appointment` is None when the winner is not visible yet."""

    status_code = 409

    def __init__(self, detail: str, conflicting_appointment: Any = None) -> None:
        super().__init__(detail)
        self.conflicting_appointment = conflicting_appointment


class InvalidTransitionError(ClinicError):
    status_code = 409


class TransientDependencyError(ClinicError):
    """A notification channel failed. Logged by callers, never fatal."""

    status_code = 502
