from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    The OTP stage adds mfa_session_invalid, otp_expired, otp_used and
    otp_invalid so clients can tell "resend" from "wrong code" from "locked".
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class InvalidCredentialsError(AuthenticationError):
    """Unknown login, inactive account, or wrong password.

    The three causes share one message so callers cannot probe which
    accounts exist.
    """

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidMfaSessionError(ValidationError):
    error_code = "mfa_session_invalid"

    def __init__(self) -> None:
        super().__init__("Invalid or expired MFA session")


class TooManyAttemptsError(RateLimitedError):
    def __init__(self) -> None:
        super().__init__("Too many attempts. Session locked.")


class OtpExpiredError(ValidationError):
    error_code = "otp_expired"

    def __init__(self) -> None:
        super().__init__("OTP expired. Please login again.")


class OtpAlreadyUsedError(ValidationError):
    error_code = "otp_used"

    def __init__(self) -> None:
        super().__init__("OTP already used. Please login again.")


class InvalidOtpError(AuthenticationError):
    error_code = "otp_invalid"

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            "Invalid OTP", detail={"attempts_remaining": attempts_remaining}
        )
        self.attempts_remaining = attempts_remaining


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "RateLimitedError",
    "InvalidCredentialsError",
    "InvalidMfaSessionError",
    "TooManyAttemptsError",
    "OtpExpiredError",
    "OtpAlreadyUsedError",
    "InvalidOtpError",
]
