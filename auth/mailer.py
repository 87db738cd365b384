"""
auth/mailer.py -- Outbound mail for magic links.

SMTP via the standard library. When SMTP_HOST is empty the mailer runs in dev
mode: with DEBUG=true the message is logged (recipient redacted) instead of
sent, so local setups can follow magic links from the server log.

Every SMTP session carries SMTP_TIMEOUT_SECONDS. Transport failures surface as
UpstreamUnavailable so callers never hang on a dead relay.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from auth.errors import UpstreamUnavailable
from core.config import Settings

logger = logging.getLogger("avtopark.mail")


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class Mailer:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_password
        self.use_tls = settings.smtp_use_tls
        self.from_email = settings.smtp_from
        self.from_name = settings.app_name
        self.timeout = settings.smtp_timeout_seconds
        self.debug = settings.debug

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    def send(self, to_email: str, subject: str, text_body: str, html_body: str | None = None) -> None:
        """Send one message. Raises UpstreamUnavailable if the relay fails."""
        if not self.is_configured:
            if self.debug:
                logger.info("Mail (dev mode) to=%s subject=%r body=%s", redact_email(to_email), subject, text_body)
            else:
                logger.warning("SMTP not configured; dropping mail to=%s subject=%r", redact_email(to_email), subject)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.user and self.password:
                        server.login(self.user, self.password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Mail delivery failed to=%s host=%s: %s", redact_email(to_email), self.host, exc)
            raise UpstreamUnavailable("Email delivery is temporarily unavailable.") from exc
        logger.info("Mail sent to=%s subject=%r", redact_email(to_email), subject)
