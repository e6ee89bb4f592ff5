"""
SMTP email sender for the email channel worker.

One connection per message: STARTTLS when configured, login when a user is
set, then a multipart/alternative message (plain text + HTML).

smtplib failures are classified for the retry policy:
  permanent:  recipient refused, auth rejected, 5xx replies
  transient:  connect/disconnect, timeouts, socket errors, 4xx replies
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid

from admissions.notifications.delivery import PermanentDeliveryError, TransientDeliveryError

logger = logging.getLogger(__name__)


def classify_smtp_error(exc: Exception) -> Exception:
    """Map an smtplib / socket error onto the delivery taxonomy."""
    if isinstance(exc, (smtplib.SMTPRecipientsRefused, smtplib.SMTPAuthenticationError,
                        smtplib.SMTPNotSupportedError)):
        return PermanentDeliveryError(str(exc))
    if isinstance(exc, (smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected)):
        return TransientDeliveryError(str(exc))
    if isinstance(exc, smtplib.SMTPResponseException):
        if 400 <= exc.smtp_code < 500:
            return TransientDeliveryError(f"{exc.smtp_code} {exc.smtp_error!r}")
        return PermanentDeliveryError(f"{exc.smtp_code} {exc.smtp_error!r}")
    if isinstance(exc, OSError):   # includes SMTPException, socket.timeout
        return TransientDeliveryError(str(exc))
    return PermanentDeliveryError(f"{type(exc).__name__}: {exc}")


class SmtpEmailSender:

    def __init__(
        self,
        *,
        host:      str,
        port:      int,
        from_addr: str,
        from_name: str = "",
        user:      str = "",
        password:  str = "",
        use_tls:   bool = True,
        timeout:   float = 30.0,
    ) -> None:
        self._host      = host
        self._port      = port
        self._from_addr = from_addr
        self._from_name = from_name
        self._user      = user
        self._password  = password
        self._use_tls   = use_tls
        self._timeout   = timeout

    @classmethod
    def from_settings(cls, settings) -> "SmtpEmailSender":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            from_addr=settings.email_from,
            from_name=settings.school_name,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout,
        )

    def build_message(self, *, to: str, subject: str, text: str, html: str | None = None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"]    = subject
        msg["From"]       = formataddr((self._from_name, self._from_addr)) if self._from_name else self._from_addr
        msg["To"]         = to
        msg["Message-ID"] = make_msgid(domain=self._from_addr.rsplit("@", 1)[-1])
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def send(self, *, to: str, subject: str, text: str, html: str | None = None) -> str:
        """Deliver one message; returns its Message-ID."""
        if not to or "@" not in to:
            raise PermanentDeliveryError(f"invalid recipient {to!r}")

        msg = self.build_message(to=to, subject=subject, text=text, html=html)
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                if self._use_tls:
                    server.starttls()
                if self._user:
                    server.login(self._user, self._password)
                server.sendmail(self._from_addr, [to], msg.as_string())
        except Exception as exc:
            raise classify_smtp_error(exc) from exc

        logger.info("Email sent | to=%s subject=%r id=%s", to, subject, msg["Message-ID"])
        return msg["Message-ID"]
