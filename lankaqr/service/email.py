from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from lankaqr.config import Settings
from lankaqr.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Sends invite and password-reset links over SMTP.

    Without an SMTP host the message is logged instead of sent, so invites
    keep working in development; the link itself is logged only in that mode.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "LankaQR",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.outbox: list[tuple[str, str, str]] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.is_configured:
            self.outbox.append((to_email, subject, text_body))
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:300],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_link(self, to_email: str, *, subject: str, heading: str, intro: str, url: str) -> bool:
        html_body = f"""<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <h1>{heading}</h1>
  <p>{intro}</p>
  <p><a href="{url}">{url}</a></p>
  <p>This link expires in 24 hours and can be used once.</p>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

{url}

This link expires in 24 hours and can be used once.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_invite(self, to_email: str, url: str, *, role_label: str) -> bool:
        return self.send_link(
            to_email,
            subject=f"You're invited to LankaQR as {role_label}",
            heading="Set up your account",
            intro=f"You have been invited to LankaQR as {role_label}. Open the link below to set your credentials.",
            url=url,
        )

    def send_password_reset(self, to_email: str, url: str) -> bool:
        return self.send_link(
            to_email,
            subject="Reset your LankaQR password",
            heading="Reset your password",
            intro="We received a request to reset your password. Open the link below to choose a new one.",
            url=url,
        )

    def send_code(self, to_email: str, code: str, *, ttl_minutes: int) -> bool:
        html_body = f"""<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
  <h1>Your LankaQR code</h1>
  <p style="font-size: 28px; letter-spacing: 6px;"><strong>{code}</strong></p>
  <p>The code expires in {ttl_minutes} minutes. If you did not ask for it, ignore this email.</p>
</body>
</html>
"""
        text_body = f"""Your LankaQR code: {code}

The code expires in {ttl_minutes} minutes. If you did not ask for it, ignore this email.
"""
        return self._send_email(to_email, "Your LankaQR verification code", html_body, text_body)
