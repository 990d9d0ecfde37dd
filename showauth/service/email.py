from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from showauth.config import Settings
from showauth.logging import get_logger, mask_email

logger = get_logger(__name__)

SITE_NAME = "Psychic Homily"

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #d9480f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{button}</a>
        </p>
        <p>{expiry}</p>
        <p>{closing}</p>
        <div class="footer">
            <p>{site}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

{expiry}

{closing}

---
{site}
"""


class EmailSender:
    """Transactional email over SMTP for verification, magic links and recovery.

    ``is_configured`` is False until both an SMTP host and a sender address
    are set; callers check it and report the service as unavailable rather
    than pretending to send.
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
        from_name: str = SITE_NAME,
        frontend_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailSender":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send one message via SMTP. Returns True if the server accepted it."""
        if not self.is_configured:
            logger.warning("email_not_configured", to=mask_email(to_email), subject=subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=mask_email(to_email), refused=len(e.recipients)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _send_link(
        self,
        to_email: str,
        *,
        subject: str,
        heading: str,
        intro: str,
        button: str,
        url: str,
        expiry: str,
        closing: str = "If you didn't request this, you can safely ignore this email.",
    ) -> bool:
        fields = {
            "heading": heading,
            "intro": intro,
            "button": button,
            "url": url,
            "expiry": expiry,
            "closing": closing,
            "site": SITE_NAME,
        }
        return self._send_email(
            to_email, subject, _HTML_TEMPLATE.format(**fields), _TEXT_TEMPLATE.format(**fields)
        )

    def send_verification_email(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            subject=f"Verify your email address - {SITE_NAME}",
            heading="Verify your email",
            intro="Please confirm your email address so you can submit shows.",
            button="Verify Email",
            url=f"{self.frontend_url}/verify-email?token={token}",
            expiry="This link will expire in 24 hours.",
        )

    def send_magic_link_email(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            subject=f"Your sign-in link - {SITE_NAME}",
            heading="Sign in to your account",
            intro="Use the button below to sign in. No password needed.",
            button="Sign In",
            url=f"{self.frontend_url}/auth/magic-link?token={token}",
            expiry="This link will expire in 15 minutes and can only be used once.",
        )

    def send_recovery_email(self, to_email: str, token: str, days_remaining: int) -> bool:
        day_word = "day" if days_remaining == 1 else "days"
        return self._send_link(
            to_email,
            subject=f"Recover your account - {SITE_NAME}",
            heading="Recover your account",
            intro=(
                "Your account is scheduled for deletion. You have "
                f"{days_remaining} {day_word} left to restore it."
            ),
            button="Recover Account",
            url=f"{self.frontend_url}/auth/recover?token={token}",
            expiry="This link will expire in 1 hour.",
            closing="If you didn't request this, your account will be deleted as scheduled.",
        )
