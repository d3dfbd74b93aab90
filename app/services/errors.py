"""Failure taxonomy shared by the services and the HTTP surface.

Every error carries a stable ``reason`` code that is safe to hand to clients;
the human readable message never includes codes or internal state.
"""

from typing import Optional


class OtpServiceError(Exception):
    reason = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(OtpServiceError):
    reason = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class NotFound(OtpServiceError):
    reason = "NOT_FOUND"
    status_code = 404
    default_message = "User not found"


class NoActiveConnection(OtpServiceError):
    reason = "NO_ACTIVE_CONNECTION"
    status_code = 409
    default_message = "User not connected"


class TransportError(OtpServiceError):
    reason = "TRANSPORT_ERROR"
    status_code = 502
    default_message = "Failed to send email"


class InvalidOrExpired(OtpServiceError):
    reason = "INVALID_OR_EXPIRED"
    status_code = 400
    default_message = "Invalid or expired OTP"


class RateLimited(OtpServiceError):
    reason = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many OTP requests, try again later"

    def __init__(self, retry_after: int, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class InternalError(OtpServiceError):
    pass
