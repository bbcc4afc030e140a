from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from bankcore.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #0b5cad; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for account lifecycle events.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Welcome, password reset and reset confirmation messages
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "BankCore",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, title: str, paragraphs: list[str]) -> str:
        body = "\n        ".join(f"<p>{p}</p>" for p in paragraphs)
        return _HTML_TEMPLATE.format(title=title, body=body, sender=self.from_name)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated SMTP connection (STARTTLS or implicit TLS)."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except (smtplib.SMTPException, OSError):
            server.close()
            raise
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message; False when delivery failed.

        Without SMTP settings the message is only logged.
        """
        recipient = self._redact_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=recipient,
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=recipient)
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connection_error",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def send_welcome(self, to_email: str, username: str) -> bool:
        subject = f"Welcome to {self.from_name}"
        paragraphs = [
            f"Hi {username}, your account has been created.",
            "You can sign in with your username or email address.",
        ]
        text_body = "\n\n".join(paragraphs) + f"\n\n---\n{self.from_name}\n"
        return self._send_email(
            to_email, subject, self._render("Welcome", paragraphs), text_body
        )

    def send_password_reset(
        self, to_email: str, reset_url: str, ttl_minutes: int = 60
    ) -> bool:
        """Send the password reset link."""
        subject = "Password reset request"
        html_body = self._render(
            "Reset your password",
            [
                "We received a request to reset your password. Click the button below to choose a new one:",
                f'<a href="{reset_url}" class="button">Reset Password</a>',
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
                f"If the button doesn't work, copy and paste this URL: {reset_url}",
            ],
        )
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new one:

{reset_url}

This link will expire in {ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_reset_success(self, to_email: str) -> bool:
        """Confirm that the password was changed."""
        subject = "Your password has been changed"
        paragraphs = [
            "The password for your account was just changed.",
            "If you didn't make this change, please contact support immediately.",
        ]
        text_body = "\n\n".join(paragraphs) + f"\n\n---\n{self.from_name}\n"
        return self._send_email(
            to_email, subject, self._render("Password changed", paragraphs), text_body
        )
