import logging
import os
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    subject: str
    body: str


class Mailer(Protocol):
    def send(self, to: str, subject: str, body: str) -> bool: ...


class SmtpMailer:
    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        user: str | None = None,
        password: str | None = None,
        sender: str | None = None,
        use_tls: bool | None = None,
    ) -> None:
        self.host = host if host is not None else os.getenv("SMTP_HOST")
        self.user = user if user is not None else os.getenv("SMTP_USER")
        self.password = password if password is not None else os.getenv("SMTP_PASSWORD")
        self.sender = sender if sender is not None else os.getenv("SMTP_FROM", self.user or "")
        self.port = port if port is not None else int(os.getenv("SMTP_PORT", "587"))
        if use_tls is None:
            use_tls = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
        self.use_tls = use_tls

    def send(self, to: str, subject: str, body: str) -> bool:
        if not self.host or not self.sender:
            logger.warning("SMTP is not configured, email to=%s subject=%r not sent", to, subject)
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        msg.set_content(body)

        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            if self.use_tls:
                server.starttls()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.send_message(msg)
        return True


def deliver_email(mailer: Mailer, email: OutgoingEmail) -> bool:
    """Send one message; failures are logged and reported, never raised."""
    try:
        sent = mailer.send(email.to, email.subject, email.body)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Email delivery failed to=%s subject=%r: %s", email.to, email.subject, exc)
        return False
    if sent:
        logger.info("Email sent to=%s subject=%r", email.to, email.subject)
    return sent


_mailer: Mailer | None = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = SmtpMailer()
    return _mailer
