from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from collegeportal.config import Settings
from collegeportal.logging import get_logger
from collegeportal.service.email import EmailService
from collegeportal.service.errors import InvalidCredentialsError
from collegeportal.service.otp import OtpSessionStore
from collegeportal.storage.models import LOGIN_CATEGORIES, Identity, UserRecord

logger = get_logger(__name__)


class UserDirectory(Protocol):
    def find_user_by_email(self, category: str, email: str) -> Optional[UserRecord]: ...

    def record_last_login(self, category: str, user_id: int) -> None: ...


@dataclass
class AuthContext:
    user_id: int
    role: str
    email: str
    name: str
    session_id: Optional[str] = None


@dataclass
class LoginChallenge:
    mfa_token: str
    expires_in_seconds: int
    identity: Identity
    reused: bool = False


@dataclass
class VerifiedLogin:
    session_token: str
    identity: Identity


class AuthService:
    """Password check followed by an emailed one-time password."""

    def __init__(
        self,
        store: UserDirectory,
        email: EmailService,
        settings: Settings,
        *,
        otp_sessions: Optional[OtpSessionStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.otp_sessions = otp_sessions or OtpSessionStore(
            ttl_seconds=settings.otp_ttl_seconds,
            debounce_seconds=settings.otp_debounce_seconds,
            max_attempts=settings.otp_max_attempts,
            sweep_grace_seconds=settings.otp_sweep_interval_seconds,
            clock=self._clock,
        )
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        # Pending fire-and-forget tasks, held until they finish
        self._background: set[asyncio.Task] = set()
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # -- passwords -----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown logins pay the same hashing cost as real ones
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._verify_password(self._dummy_hash, password)

    def resolve_credentials(self, login: str, password: str) -> Identity:
        """Find the user behind ``login`` and check the password.

        Categories are searched in LOGIN_CATEGORIES order and the first match
        wins. Every failure raises the same InvalidCredentialsError.
        """
        email = str(login).strip()
        user: Optional[UserRecord] = None
        for category in LOGIN_CATEGORIES:
            user = self.store.find_user_by_email(category, email)
            if user:
                break
        if user is None:
            self._burn_password_check(password)
            self.logger.info(
                "login_failed",
                reason="unknown_login",
                login_hash=hashlib.sha256(email.lower().encode()).hexdigest(),
            )
            raise InvalidCredentialsError()
        if not self._verify_password(user.password_hash, password):
            self.logger.info("login_failed", reason="bad_password", role=user.role, user_id=user.id)
            raise InvalidCredentialsError()
        if not user.is_active:
            self.logger.info("login_failed", reason="inactive", role=user.role, user_id=user.id)
            raise InvalidCredentialsError()
        return Identity(
            role=user.role,
            user_id=user.id,
            display_name=user.name,
            login_identifier=user.email,
        )

    # -- OTP exchange --------------------------------------------------------

    async def initiate_login(self, login: str, password: str) -> LoginChallenge:
        # argon2 verification runs in a worker thread
        identity = await asyncio.to_thread(self.resolve_credentials, login, password)
        reservation = self.otp_sessions.reserve(identity)
        if reservation.code is not None:
            try:
                delivered = await asyncio.to_thread(
                    self.email.send_otp,
                    identity.login_identifier,
                    reservation.code,
                    identity.login_identifier,
                    ttl_minutes=max(1, self.settings.otp_ttl_seconds // 60),
                )
            except Exception as exc:
                delivered = False
                self.logger.error(
                    "otp_dispatch_error",
                    role=identity.role,
                    user_id=identity.user_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            if not delivered:
                self.logger.warning(
                    "otp_dispatch_failed", role=identity.role, user_id=identity.user_id
                )
        return LoginChallenge(
            mfa_token=reservation.token,
            expires_in_seconds=reservation.expires_in_seconds,
            identity=identity,
            reused=reservation.reused,
        )

    async def verify_otp(self, mfa_token: str, otp: str) -> VerifiedLogin:
        identity = self.otp_sessions.verify(mfa_token, otp)
        session_token = self._issue_session_token(identity)
        self._schedule_last_login(identity)
        self.logger.info("otp_verified", role=identity.role, user_id=identity.user_id)
        return VerifiedLogin(session_token=session_token, identity=identity)

    def _schedule_last_login(self, identity: Identity) -> None:
        task = asyncio.create_task(self._record_last_login(identity))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_last_login(self, identity: Identity) -> None:
        try:
            await asyncio.to_thread(
                self.store.record_last_login, identity.role, identity.user_id
            )
        except Exception as exc:
            self.logger.warning(
                "last_login_update_failed",
                role=identity.role,
                user_id=identity.user_id,
                error=str(exc),
            )

    async def drain_background(self, timeout: float = 5.0) -> None:
        """Wait for pending last-login writes, e.g. during shutdown."""
        pending = list(self._background)
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            self.logger.warning("background_tasks_abandoned", count=len(still_pending))

    def cleanup_expired_states(self) -> int:
        return self.otp_sessions.cleanup_expired()

    # -- session credential --------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
            if not isinstance(header, dict):
                logger.warning("jwt_header_not_object")
                return None
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    def _issue_session_token(self, identity: Identity) -> str:
        now = self._now()
        exp = now + timedelta(minutes=self.settings.session_token_ttl_minutes)
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": str(identity.user_id),
                "role": identity.role,
                "email": identity.login_identifier,
                "name": identity.display_name,
                "iat": int(now.timestamp()),
                "exp": int(exp.timestamp()),
                "jti": str(uuid.uuid4()),
                "token_type": "session",
            }
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if not token:
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "session":
            return None
        try:
            user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError):
            return None
        return AuthContext(
            user_id=user_id,
            role=payload.get("role", ""),
            email=payload.get("email", ""),
            name=payload.get("name", ""),
            session_id=payload.get("jti"),
        )
