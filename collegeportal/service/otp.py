"""Time-bound, single-use, attempt-limited one-time passwords.

The store keeps every pending second-factor exchange in process memory:

* ``token -> OtpSession`` holds the hashed code and its counters.
* ``login identifier -> token`` (the debounce index) points at the most
  recently issued session for a user so a double-clicked login does not mail
  a second code.

All reads and writes go through one lock. Critical sections only touch the
two dictionaries, so holding the lock never waits on I/O.
"""

from __future__ import annotations

import dataclasses
import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from collegeportal.logging import get_logger
from collegeportal.service.errors import (
    InvalidMfaSessionError,
    InvalidOtpError,
    OtpAlreadyUsedError,
    OtpExpiredError,
    TooManyAttemptsError,
)
from collegeportal.storage.models import Identity

logger = get_logger(__name__)

OTP_MIN = 100000
OTP_SPAN = 900000


def generate_otp() -> str:
    """Return a six digit code drawn uniformly from 100000-999999."""
    return str(secrets.randbelow(OTP_SPAN) + OTP_MIN)


def hash_otp(otp: str) -> str:
    return hashlib.sha256(str(otp).encode()).hexdigest()


def new_mfa_token() -> str:
    # 24 random bytes, 192 bits
    return secrets.token_hex(24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OtpSession:
    token: str
    login_identifier: str
    role: str
    user_id: int
    display_name: str
    otp_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    used: bool = False

    @property
    def identity(self) -> Identity:
        return Identity(
            role=self.role,
            user_id=self.user_id,
            display_name=self.display_name,
            login_identifier=self.login_identifier,
        )

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))


@dataclass(frozen=True)
class Reservation:
    """Outcome of an issue call.

    ``code`` is the plaintext to deliver, or ``None`` when a session created
    moments ago was handed back instead of a new one.
    """

    token: str
    expires_in_seconds: int
    code: Optional[str] = None

    @property
    def reused(self) -> bool:
        return self.code is None


class OtpSessionStore:
    def __init__(
        self,
        *,
        ttl_seconds: int = 180,
        debounce_seconds: int = 12,
        max_attempts: int = 3,
        sweep_grace_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self.sweep_grace = timedelta(seconds=sweep_grace_seconds)
        self.debounce = timedelta(seconds=debounce_seconds)
        self.max_attempts = max_attempts
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._sessions: Dict[str, OtpSession] = {}
        self._by_login: Dict[str, str] = {}

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _login_key(login_identifier: str) -> str:
        return login_identifier.strip().lower()

    def reserve(self, identity: Identity) -> Reservation:
        """Start a second-factor exchange for an already password-checked user."""
        key = self._login_key(identity.login_identifier)
        with self._lock:
            now = self._now()
            existing_token = self._by_login.get(key)
            existing = self._sessions.get(existing_token) if existing_token else None
            if (
                existing
                and not existing.used
                and existing.attempts < self.max_attempts
                and now < existing.expires_at
                and now - existing.created_at < self.debounce
            ):
                logger.info(
                    "otp_session_reused",
                    role=existing.role,
                    user_id=existing.user_id,
                )
                return Reservation(
                    token=existing.token,
                    expires_in_seconds=existing.remaining_seconds(now),
                )

            code = generate_otp()
            session = OtpSession(
                token=new_mfa_token(),
                login_identifier=identity.login_identifier,
                role=identity.role,
                user_id=identity.user_id,
                display_name=identity.display_name,
                otp_hash=hash_otp(code),
                created_at=now,
                expires_at=now + self.ttl,
            )
            self._sessions[session.token] = session
            # Overwriting the index is what keeps one live token per user; the
            # superseded session stays until it is verified, expires or is swept.
            self._by_login[key] = session.token
        logger.info("otp_session_created", role=identity.role, user_id=identity.user_id)
        return Reservation(
            token=session.token,
            expires_in_seconds=int(self.ttl.total_seconds()),
            code=code,
        )

    def verify(self, token: str, otp: str) -> Identity:
        """Check ``otp`` against the session behind ``token``.

        Checks run in a fixed order and the first failing one wins: missing
        session, attempt budget spent, expiry, already used, code mismatch.
        Only the mismatch keeps the session alive.
        """
        with self._lock:
            now = self._now()
            session = self._sessions.get(token)
            if session is None:
                raise InvalidMfaSessionError()
            if session.attempts >= self.max_attempts:
                self._discard(token)
                logger.warning(
                    "otp_session_locked",
                    role=session.role,
                    user_id=session.user_id,
                    attempts=session.attempts,
                )
                raise TooManyAttemptsError()
            if now > session.expires_at:
                self._discard(token)
                logger.info("otp_session_expired", role=session.role, user_id=session.user_id)
                raise OtpExpiredError()
            if session.used:
                self._discard(token)
                logger.warning("otp_session_replayed", role=session.role, user_id=session.user_id)
                raise OtpAlreadyUsedError()

            session.attempts += 1
            if not hmac.compare_digest(hash_otp(otp), session.otp_hash):
                remaining = max(0, self.max_attempts - session.attempts)
                logger.info(
                    "otp_mismatch",
                    role=session.role,
                    user_id=session.user_id,
                    attempts=session.attempts,
                )
                raise InvalidOtpError(attempts_remaining=remaining)

            session.used = True
            return session.identity

    def _discard(self, token: str) -> None:
        # Caller holds the lock. The debounce entry may still point here; it is
        # harmless because reserve() validates whatever it finds.
        self._sessions.pop(token, None)

    def cleanup_expired(self) -> int:
        """Evict expired sessions and debounce entries with no session behind them.

        A session is evicted once it has been expired for longer than
        ``sweep_grace``. Until then a verify still reports OtpExpiredError.

        Returns:
            Number of entries removed
        """
        cleaned = 0
        with self._lock:
            now = self._now()
            expired = [
                token
                for token, session in self._sessions.items()
                if now > session.expires_at + self.sweep_grace
            ]
            for token in expired:
                self._sessions.pop(token, None)
                cleaned += 1
            stale = [key for key, token in self._by_login.items() if token not in self._sessions]
            for key in stale:
                self._by_login.pop(key, None)
                cleaned += 1
        if cleaned:
            logger.info("otp_sessions_swept", removed=cleaned)
        return cleaned

    def get(self, token: str) -> Optional[OtpSession]:
        """Return a copy of the session for inspection."""
        with self._lock:
            session = self._sessions.get(token)
            return dataclasses.replace(session) if session else None

    def active_token_for(self, login_identifier: str) -> Optional[str]:
        with self._lock:
            return self._by_login.get(self._login_key(login_identifier))

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
