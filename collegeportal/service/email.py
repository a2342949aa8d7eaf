from __future__ import annotations

import smtplib
import ssl
import threading
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from collegeportal.config import Settings
from collegeportal.logging import get_logger

logger = get_logger(__name__)

OTP_SUBJECT = "Your One-Time Password (OTP)"


def _redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _build_message(from_header: str, to_email: str, subject: str, text_body: str) -> MIMEText:
    msg = MIMEText(text_body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_header
    msg["To"] = to_email
    return msg


def _smtp_deliver(
    *,
    host: str,
    port: int,
    user: Optional[str],
    password: Optional[str],
    use_tls: bool,
    from_email: str,
    to_email: str,
    msg: MIMEText,
) -> None:
    context = ssl.create_default_context()
    if use_tls:
        with smtplib.SMTP(host, port, timeout=30) as server:
            server.starttls(context=context)
            if user and password:
                server.login(user, password)
            server.sendmail(from_email, to_email, msg.as_string())
    else:
        with smtplib.SMTP_SSL(host, port, context=context, timeout=30) as server:
            if user and password:
                server.login(user, password)
            server.sendmail(from_email, to_email, msg.as_string())


class Mailer(Protocol):
    name: str
    # Whether a failed send that was rescued by the console log still counts
    # as delivered for the caller.
    fallback_counts_as_delivered: bool

    def send(self, to_email: str, subject: str, text_body: str) -> bool: ...


class ConsoleMailer:
    """Writes messages to the log instead of sending them (dev default)."""

    name = "console"
    fallback_counts_as_delivered = True

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        logger.info(
            "email_dev_mode",
            to=_redact_email(to_email),
            subject=subject,
            body=text_body,
        )
        return True


class SmtpMailer:
    """Delivers through a configured SMTP relay."""

    name = "smtp"
    fallback_counts_as_delivered = False

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "College Portal MFA",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.from_email:
            logger.error("email_sender_missing", host=self.smtp_host)
            return False
        msg = _build_message(
            f"{self.from_name} <{self.from_email}>", to_email, subject, text_body
        )
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=_redact_email(to_email),
        )
        try:
            _smtp_deliver(
                host=self.smtp_host,
                port=self.smtp_port,
                user=self.smtp_user,
                password=self.smtp_password,
                use_tls=self.smtp_use_tls,
                from_email=self.from_email,
                to_email=to_email,
                msg=msg,
            )
            logger.info("email_sent", to=_redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=_redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=_redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            # Socket timeouts and refused connections
            logger.error(
                "email_send_failed",
                to=_redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


class TestMailboxMailer:
    """Delivers into a throwaway Ethereal inbox.

    The account is provisioned over HTTP on first use and reused for the life
    of the process. Messages never reach the real recipient; the inbox URL is
    logged so a developer can read the code.
    """

    __test__ = False  # not a pytest class

    name = "test_mailbox"
    fallback_counts_as_delivered = True

    def __init__(
        self,
        *,
        api_url: str = "https://api.nodemailer.com/user",
        from_email: str = "no-reply@example.com",
        from_name: str = "College Portal MFA",
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_url = api_url
        self.from_email = from_email
        self.from_name = from_name
        self._client = client
        self._account: Optional[dict] = None
        self._account_lock = threading.Lock()

    def _provision_account(self) -> dict:
        with self._account_lock:
            if self._account is not None:
                return self._account
            client = self._client or httpx.Client(timeout=10.0)
            try:
                response = client.post(
                    self.api_url,
                    json={"requestor": "college-portal", "version": "1.0"},
                )
                response.raise_for_status()
                payload = response.json()
            finally:
                if self._client is None:
                    client.close()
            if payload.get("status") != "success" or "smtp" not in payload:
                raise RuntimeError(f"test mailbox provisioning rejected: {payload.get('error')}")
            self._account = payload
            logger.info("test_mailbox_provisioned", web=payload.get("web"))
            return payload

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        try:
            account = self._provision_account()
            smtp = account["smtp"]
            msg = _build_message(
                f"{self.from_name} <{self.from_email}>", to_email, subject, text_body
            )
            _smtp_deliver(
                host=smtp["host"],
                port=int(smtp["port"]),
                user=account["user"],
                password=account["pass"],
                use_tls=not smtp.get("secure", False),
                from_email=self.from_email,
                to_email=to_email,
                msg=msg,
            )
        except (httpx.HTTPError, smtplib.SMTPException, OSError, RuntimeError, KeyError) as e:
            logger.warning(
                "test_mailbox_send_failed",
                to=_redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info(
            "test_mailbox_sent",
            to=_redact_email(to_email),
            inbox_url=f"{account.get('web', 'https://ethereal.email')}/messages",
        )
        return True


class EmailService:
    """Transactional email for the sign-in flow.

    Wraps one delivery backend and falls back to the console log when that
    backend fails, so an unreachable relay never blocks a login.
    """

    def __init__(self, mailer: Optional[Mailer] = None) -> None:
        self.mailer: Mailer = mailer or ConsoleMailer()
        self._fallback = ConsoleMailer()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        """Pick a backend by configuration presence: SMTP, test mailbox, console."""
        if settings.smtp_host:
            mailer: Mailer = SmtpMailer(
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_user=settings.smtp_user,
                smtp_password=settings.smtp_password,
                smtp_use_tls=settings.smtp_use_tls,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
            )
        elif settings.email_test_mailbox:
            mailer = TestMailboxMailer(
                api_url=settings.test_mailbox_api_url,
                from_email=settings.email_from_address or "no-reply@example.com",
                from_name=settings.email_from_name,
            )
        else:
            mailer = ConsoleMailer()
        return cls(mailer)

    @property
    def backend(self) -> str:
        return self.mailer.name

    def _deliver(self, to_email: str, subject: str, text_body: str, label: str) -> bool:
        if self.mailer.send(to_email, subject, text_body):
            return True
        logger.warning(
            "email_fallback_console",
            backend=self.mailer.name,
            to=_redact_email(to_email),
            account=_redact_email(label),
        )
        self._fallback.send(to_email, subject, text_body)
        return self.mailer.fallback_counts_as_delivered

    def send_otp(self, to_email: str, otp: str, label: str, *, ttl_minutes: int = 3) -> bool:
        """Mail a one-time password. Returns False only when nothing was delivered."""
        if not to_email:
            logger.warning("email_recipient_missing", account=_redact_email(label))
            return False
        text_body = (
            f"Your OTP is {otp}. It expires in {ttl_minutes} minutes. "
            "If you did not request this, ignore this email."
        )
        return self._deliver(to_email, OTP_SUBJECT, text_body, label)
