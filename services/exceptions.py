"""
Booking engine errors.

Every error carries the HTTP-equivalent status the callback adapter answers
with. Raising any of them inside a transaction rolls it back.
"""


class BookingError(Exception):
    """Base exception for booking engine errors."""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(BookingError):
    """Missing or malformed input."""
    status_code = 400


class InvalidDate(ValidationError):
    """Date could not be parsed."""


class NotFound(BookingError):
    """Requested record does not exist."""
    status_code = 404


class DateConflict(BookingError):
    """Matriculation is not available for the requested dates."""
    status_code = 400


class MatriculationUnavailable(BookingError):
    """Matriculation cannot be booked."""
    status_code = 400


class InvalidTransition(BookingError):
    """Status change is not allowed from the current status."""
    status_code = 400


class PaymentError(BookingError):
    """Card payment could not be accepted."""
    status_code = 400


class PaymentNotCompleted(PaymentError):
    """Payment is not completed yet."""


class PaymentExpired(PaymentError):
    """Payment link expired."""


class OrderIdMismatch(PaymentError):
    """Order id reported by the gateway does not match."""


class PaymentAmountMismatch(PaymentError):
    """Amount reported by the gateway does not match the expected amount."""


class GatewayError(BookingError):
    """Payment gateway request failed."""
    status_code = 500

    def __init__(self, message: str = "", retryable: bool = False, details=None):
        super().__init__(message)
        self.retryable = retryable
        self.details = details


class GatewayAuthError(GatewayError):
    """Payment gateway rejected our credentials."""
    status_code = 401

    def __init__(self, message: str = "", details=None):
        super().__init__(message, retryable=False, details=details)


class PersistenceError(BookingError):
    """Transaction could not be committed."""
    status_code = 500
