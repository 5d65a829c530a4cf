# Error taxonomy shared by the scheduling, hold and payroll services
from dataclasses import dataclass
from typing import List, Optional

from flask import jsonify


class BookingCoreError(Exception):
    """Base error. Carries a machine-readable code and an HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class ValidationError(BookingCoreError):
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(BookingCoreError):
    code = "AUTH_REQUIRED"
    status_code = 401


class NotFoundError(BookingCoreError):
    code = "NOT_FOUND"
    status_code = 404


class HoldInactiveError(BookingCoreError):
    """Hold was already consumed or swept to expired."""

    code = "HOLD_INACTIVE"
    status_code = 410


class HoldExpiredError(BookingCoreError):
    code = "HOLD_EXPIRED"
    status_code = 410


class HoldOwnershipError(BookingCoreError):
    code = "HOLD_OWNERSHIP"
    status_code = 403


class ActiveHoldExistsError(BookingCoreError):
    """A guest may only hold one slot at a time."""

    code = "ACTIVE_HOLD_EXISTS"
    status_code = 429


class ConflictError(BookingCoreError):
    """The requested slot was taken by a committed booking."""

    code = "CONFLICT"
    status_code = 409


class TransientStoreError(BookingCoreError):
    """
    The data store failed. Reads are safe to retry; hold creation and
    consumption are not until the caller has checked what was committed.
    """

    code = "STORE_UNAVAILABLE"
    status_code = 503


@dataclass(frozen=True)
class PayRunConfigurationWarning:
    staff_id: int
    reason: str

    def to_dict(self):
        return {"staff_id": self.staff_id, "reason": self.reason}


class PayRunConfigurationError(BookingCoreError):
    code = "PAY_RUN_CONFIGURATION"
    status_code = 422

    def __init__(self, warnings: List[PayRunConfigurationWarning]):
        super().__init__(
            f"{len(warnings)} staff member(s) have no compensation configured"
        )
        self.warnings = list(warnings)

    def to_dict(self):
        body = super().to_dict()
        body["warnings"] = [w.to_dict() for w in self.warnings]
        return body


def register_error_handlers(app):
    @app.errorhandler(BookingCoreError)
    def handle_core_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{error.code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code
