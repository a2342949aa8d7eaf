from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from collegeportal.api.schemas import (
    Envelope,
    MfaInitiateRequest,
    MfaInitiateResponse,
    MfaVerifyRequest,
    MfaVerifyResponse,
    SessionInfoResponse,
    UserSummary,
)
from collegeportal.logging import get_logger
from collegeportal.service.auth import AuthContext
from collegeportal.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


@router.post("/mfa/initiate", response_model=Envelope, tags=["auth"])
async def mfa_initiate(body: MfaInitiateRequest):
    """Check the password and mail a one-time password.

    A repeat call within the debounce window returns the pending token and
    sends nothing.

    Raises:
        401: If credentials are invalid
    """
    runtime = get_runtime()
    challenge = await runtime.auth.initiate_login(body.username, body.password)
    return Envelope(
        status="ok",
        data=MfaInitiateResponse(
            mfa_token=challenge.mfa_token,
            expires_in=challenge.expires_in_seconds,
            user=UserSummary(**challenge.identity.summary()),
        ),
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["auth"])
async def mfa_verify(body: MfaVerifyRequest):
    """Exchange an MFA token and code for a session token.

    Raises:
        400: Unknown, expired or already used MFA session
        401: Wrong code (details carry attempts_remaining)
        429: Attempt budget exhausted
    """
    runtime = get_runtime()
    result = await runtime.auth.verify_otp(body.mfa_token, body.otp)
    return Envelope(
        status="ok",
        data=MfaVerifyResponse(
            token=result.session_token,
            user=UserSummary(**result.identity.summary()),
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def auth_me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=SessionInfoResponse(
            user_id=principal.user_id,
            role=principal.role,
            email=principal.email,
            name=principal.name,
            session_id=principal.session_id,
        ),
    )
