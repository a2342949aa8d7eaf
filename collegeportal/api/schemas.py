from __future__ import annotations

import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Upper bound for free-text inputs so oversized payloads fail validation early
MAX_FIELD_LENGTH = 320


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters.

    Keeps visually identical logins from resolving to different strings.
    """
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "mfa_session_invalid",
    "otp_expired",
    "otp_used",
    "otp_invalid",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class MfaInitiateRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("username", mode="before")
    @classmethod
    def _clean_username(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _normalize_unicode(value).strip()
        return value


class MfaVerifyRequest(BaseModel):
    mfa_token: str = Field(..., min_length=1, max_length=128)
    otp: str = Field(..., min_length=1, max_length=16)

    @field_validator("mfa_token", "otp", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        # Numeric JSON codes are accepted and compared as their decimal text
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class UserSummary(BaseModel):
    id: int
    username: str
    role: str
    name: str


class MfaInitiateResponse(BaseModel):
    mfa_required: bool = True
    mfa_token: str
    expires_in: int
    user: UserSummary


class MfaVerifyResponse(BaseModel):
    ok: bool = True
    token: str
    user: UserSummary


class SessionInfoResponse(BaseModel):
    user_id: int
    role: str
    email: str
    name: str
    session_id: Optional[str] = None
