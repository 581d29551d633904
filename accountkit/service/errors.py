from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a stable ``error_code`` (returned to clients in the
    error envelope) and the HTTP ``status_code`` the transport should use.
    Credential and token failures share one message regardless of which
    check failed.
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidRequestError(ServiceError):
    """A required input was missing or empty (400)."""
    status_code = 400
    error_code = "invalid_request"


class PasswordMismatchError(ServiceError):
    """Password and confirmation differ (400)."""
    status_code = 400
    error_code = "password_mismatch"


class AlreadyExistsError(ServiceError):
    """A verified account already owns the username or email (409)."""
    status_code = 409
    error_code = "already_exists"


class NoPendingRegistrationError(ServiceError):
    """No live pending registration for the email (400)."""
    status_code = 400
    error_code = "no_pending_registration"


class InvalidOtpError(ServiceError):
    """Submitted one-time code does not match (400)."""
    status_code = 400
    error_code = "invalid_otp"


class AlreadyRegisteredError(ServiceError):
    """Verification raced with, or followed, an existing account (409)."""
    status_code = 409
    error_code = "already_registered"


class InvalidCredentialsError(ServiceError):
    """Username or password rejected (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidTokenError(ServiceError):
    """Access or refresh token failed validation (401)."""
    status_code = 401
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Token is valid but belongs to another account (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested account not found (404)."""
    status_code = 404
    error_code = "not_found"


class ValidationError(ServiceError):
    """Patch or resulting account failed validation (422)."""
    status_code = 422
    error_code = "validation_error"


class NotificationFailedError(ServiceError):
    """The one-time code could not be delivered (502)."""
    status_code = 502
    error_code = "notification_failed"


class InternalError(ServiceError):
    """A collaborator failed unexpectedly (500)."""
    status_code = 500
    error_code = "internal_error"


ERROR_CODES = frozenset(
    cls.error_code
    for cls in (
        InvalidRequestError,
        PasswordMismatchError,
        AlreadyExistsError,
        NoPendingRegistrationError,
        InvalidOtpError,
        AlreadyRegisteredError,
        InvalidCredentialsError,
        InvalidTokenError,
        ForbiddenError,
        NotFoundError,
        ValidationError,
        NotificationFailedError,
        InternalError,
    )
)


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "PasswordMismatchError",
    "AlreadyExistsError",
    "NoPendingRegistrationError",
    "InvalidOtpError",
    "AlreadyRegisteredError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ValidationError",
    "NotificationFailedError",
    "InternalError",
    "ERROR_CODES",
]
