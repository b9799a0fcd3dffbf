from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from pravaah.logging import get_logger, redact_email

logger = get_logger(__name__)


class EmailService:
    """Mail dispatcher for transactional emails.

    Supports:
    - SMTP over implicit SSL (port 465) or STARTTLS
    - Fallback to logging when not configured (dev mode)

    ``send`` reports the recipients the server accepted; callers treat an
    empty ``accepted`` list as a failed dispatch.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 465,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_ssl: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Support",
        timeout: float = 30,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_ssl = smtp_use_ssl
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to: str, subject: str, text: str, html: Optional[str]) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f'"{self.from_name}" <{self.from_email}>'
        msg["To"] = to
        msg.attach(MIMEText(text, "plain"))
        if html:
            msg.attach(MIMEText(html, "html"))
        return msg

    def _open(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_ssl:
            return smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
            )
        server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout)
        server.starttls(context=context)
        return server

    def send(
        self, to: str, subject: str, text: str, html: Optional[str] = None
    ) -> dict:
        """Send one message. Blocking; run it in a worker thread from async code."""
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(to),
                subject=subject,
            )
            return {"accepted": [to]}

        msg = self._build_message(to, subject, text, html)
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_ssl=self.smtp_use_ssl,
            to=redact_email(to),
        )
        try:
            with self._open() as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                refused = server.sendmail(self.from_email, [to], msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return {"accepted": []}
        except smtplib.SMTPConnectError as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return {"accepted": []}
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=redact_email(to))
            return {"accepted": []}
        except smtplib.SMTPSenderRefused as e:
            logger.error(
                "email_sender_refused",
                to=redact_email(to),
                error=str(e),
            )
            return {"accepted": []}
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return {"accepted": []}
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return {"accepted": []}
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return {"accepted": []}

        accepted = [] if to in (refused or {}) else [to]
        logger.info("email_sent", to=redact_email(to), subject=subject, accepted=len(accepted))
        return {"accepted": accepted}


def password_reset_message(reset_url: str, ttl_minutes: int) -> tuple[str, str, str]:
    """Return ``(subject, text, html)`` for a password reset email."""
    subject = "Reset your password"
    text = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
    html = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #e11d48; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in {ttl_minutes} minutes. If you didn't request this, ignore this email.</p>
    </div>
</body>
</html>
"""
    return subject, text, html
