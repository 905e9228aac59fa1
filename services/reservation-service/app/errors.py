class ReservationError(Exception):
    """Base for every business-rule failure raised by the engine."""

    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def kind(self) -> str:
        return type(self).__name__


class NotFoundError(ReservationError):
    status_code = 404


class InvalidDateError(ReservationError):
    status_code = 400


class UnavailableError(ReservationError):
    status_code = 409


class OverlapError(ReservationError):
    status_code = 409


class PendingPaymentError(ReservationError):
    status_code = 409


class InvalidTransitionError(ReservationError):
    status_code = 409


class AccessDeniedError(ReservationError):
    status_code = 403


class DuplicatePaymentError(ReservationError):
    status_code = 409


class InvalidStateError(ReservationError):
    status_code = 409


class AlreadyProcessedError(ReservationError):
    status_code = 409


class VerificationError(ReservationError):
    status_code = 402


class ConflictError(ReservationError):
    # ledger race lost; retried internally, never surfaced to a caller as-is
    status_code = 409


class PaymentProcessorError(ReservationError):
    status_code = 502
