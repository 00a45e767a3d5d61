"""
Email module using Resend for sending emails.

Includes reliable delivery with retry logic. Delivery failure is reported
back to the caller, never raised: a mail outage must not block the access
flow.
"""
import asyncio
import html as html_lib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List

import httpx

from app.config import get_settings, Settings
from app.utils.logging import fingerprint

logger = logging.getLogger(__name__)


# Retry configuration
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SECONDS = [0, 2, 4]  # Exponential backoff: immediate, 2s, 4s


class EmailDeliveryStatus(str, Enum):
    """Email delivery status for tracking."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"  # Email not configured


@dataclass
class EmailAttempt:
    """Record of a single email send attempt."""
    attempt_number: int
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


@dataclass
class EmailResult:
    """Result of email send operation with delivery tracking."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    delivery_status: EmailDeliveryStatus = EmailDeliveryStatus.PENDING
    attempts: List[EmailAttempt] = field(default_factory=list)
    total_attempts: int = 0

    @property
    def is_delivered(self) -> bool:
        return self.delivery_status == EmailDeliveryStatus.SENT

    @property
    def is_failed(self) -> bool:
        return self.delivery_status == EmailDeliveryStatus.FAILED


@dataclass
class RenderedEmail:
    """Rendered email ready to send."""
    subject: str
    html: str
    text: Optional[str] = None


ACCESS_CODE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif; background-color: #FAFAFA; margin: 0; padding: 0; }}
    .container {{ max-width: 480px; margin: 40px auto; background: #ffffff; border-radius: 24px; overflow: hidden; border: 1px solid rgba(0,0,0,0.03); }}
    .header {{ background: #000000; padding: 40px 20px; text-align: center; border-bottom: 4px solid #D4AF37; }}
    .logo {{ color: #ffffff; font-size: 24px; letter-spacing: 4px; font-weight: 900; text-transform: uppercase; margin: 0; }}
    .content {{ padding: 40px 30px; text-align: center; }}
    .title {{ color: #1a1a1a; font-size: 22px; font-weight: 800; margin-bottom: 10px; }}
    .text {{ color: #666666; font-size: 15px; line-height: 1.6; margin-bottom: 30px; }}
    .code-container {{ background: #FDFDFD; border: 2px solid #D4AF37; border-radius: 12px; padding: 25px; display: inline-block; margin-bottom: 30px; }}
    .code {{ color: #D4AF37; font-size: 38px; font-weight: 800; letter-spacing: 8px; font-family: 'Courier New', monospace; margin: 0; line-height: 1; }}
    .footer {{ background: #F9F9F9; padding: 20px; text-align: center; font-size: 11px; color: #999999; border-top: 1px solid #eeeeee; letter-spacing: 1px; text-transform: uppercase; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="header"><h1 class="logo">{brand}</h1></div>
    <div class="content">
      <h2 class="title">Secure access verification</h2>
      <p class="text">You have been invited to view a secure document.<br>Use the following one-time code:</p>
      <div class="code-container"><div class="code">{code}</div></div>
      <p class="text" style="font-size: 13px; color: #999;">This code is valid for {minutes} minutes only.</p>
    </div>
    <div class="footer">&copy; {year} {brand}. All rights reserved.</div>
  </div>
</body>
</html>
"""


def render_access_code_email(code: str, ttl_seconds: int, brand: str) -> RenderedEmail:
    """Render the one-time access code email."""
    minutes = max(1, ttl_seconds // 60)
    safe_brand = html_lib.escape(brand)
    return RenderedEmail(
        subject=f"{brand}: your secure access code",
        html=ACCESS_CODE_HTML.format(
            brand=safe_brand,
            code=html_lib.escape(code),
            minutes=minutes,
            year=datetime.now().year,
        ),
        text=f"Your {brand} access code is {code}. It is valid for {minutes} minutes.",
    )


class EmailService:
    """Email service using Resend HTTP API."""

    RESEND_API_URL = "https://api.resend.com/emails"

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def is_configured(self) -> bool:
        """Check if email service is properly configured."""
        return bool(self.settings.resend_api_key)

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> EmailResult:
        """
        Send email via Resend HTTP API with retry logic.

        3 attempts with backoff (0s, 2s, 4s). Never raises; the outcome is
        in the returned EmailResult.
        """
        email_fp = fingerprint(to_email)

        if not self.is_configured():
            logger.warning(f"Resend API key not configured, skipping email to {email_fp}")
            return EmailResult(
                success=False,
                error="Email service not configured",
                delivery_status=EmailDeliveryStatus.SKIPPED,
            )

        payload = {
            "from": f"{self.settings.email_brand_name} <{self.settings.resend_from_email}>",
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        headers = {
            "Authorization": f"Bearer {self.settings.resend_api_key}",
            "Content-Type": "application/json",
        }

        attempts: List[EmailAttempt] = []
        last_error: Optional[str] = None

        for attempt_num in range(1, MAX_RETRY_ATTEMPTS + 1):
            if attempt_num > 1:
                delay = RETRY_DELAYS_SECONDS[attempt_num - 1] if attempt_num - 1 < len(RETRY_DELAYS_SECONDS) else 4
                logger.info(f"Email retry {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp}, waiting {delay}s")
                await asyncio.sleep(delay)

            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.RESEND_API_URL,
                        json=payload,
                        headers=headers,
                        timeout=30.0,
                    )

                    if response.status_code in (200, 201):
                        message_id = response.json().get("id")
                        attempts.append(EmailAttempt(
                            attempt_number=attempt_num,
                            success=True,
                            message_id=message_id,
                        ))
                        logger.info(
                            f"Email sent to {email_fp} on attempt {attempt_num}, "
                            f"message_id: {message_id}"
                        )
                        return EmailResult(
                            success=True,
                            message_id=message_id,
                            delivery_status=EmailDeliveryStatus.SENT,
                            attempts=attempts,
                            total_attempts=attempt_num,
                        )

                    last_error = f"API error {response.status_code}: {response.text[:200]}"
                    attempts.append(EmailAttempt(
                        attempt_number=attempt_num,
                        success=False,
                        error=last_error,
                    ))
                    logger.warning(
                        f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                        f"failed: {last_error}"
                    )

            except httpx.TimeoutException as e:
                last_error = f"Timeout: {e}"
                attempts.append(EmailAttempt(
                    attempt_number=attempt_num,
                    success=False,
                    error=last_error,
                ))
                logger.warning(f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} timed out")

            except Exception as e:
                last_error = str(e)
                attempts.append(EmailAttempt(
                    attempt_number=attempt_num,
                    success=False,
                    error=last_error,
                ))
                logger.warning(
                    f"Email attempt {attempt_num}/{MAX_RETRY_ATTEMPTS} to {email_fp} "
                    f"failed: {last_error}"
                )

        logger.error(
            f"Email to {email_fp} failed after {MAX_RETRY_ATTEMPTS} attempts. "
            f"Last error: {last_error}"
        )
        return EmailResult(
            success=False,
            error=last_error,
            delivery_status=EmailDeliveryStatus.FAILED,
            attempts=attempts,
            total_attempts=MAX_RETRY_ATTEMPTS,
        )

    async def send_access_code(self, to_email: str, code: str, ttl_seconds: int) -> EmailResult:
        """Send the one-time access code for a shared document."""
        rendered = render_access_code_email(code, ttl_seconds, self.settings.email_brand_name)
        return await self.send_email(
            to_email=to_email,
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
        )


# Singleton instance
_email_service: Optional[EmailService] = None


def get_email_service() -> EmailService:
    """Get the email service singleton."""
    global _email_service
    if _email_service is None:
        _email_service = EmailService()
    return _email_service


__all__ = [
    "EmailService",
    "EmailResult",
    "EmailDeliveryStatus",
    "EmailAttempt",
    "RenderedEmail",
    "get_email_service",
    "render_access_code_email",
    "MAX_RETRY_ATTEMPTS",
    "RETRY_DELAYS_SECONDS",
]
