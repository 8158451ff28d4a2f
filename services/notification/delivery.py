"""
services/notification/delivery.py
Delivery channel: Resend email, Twilio SMS and WhatsApp.

Every send returns a DeliveryResult and never raises. Each provider sits
behind its own circuit breaker so an outage fails fast instead of
stalling every request that triggers a notification.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import resend
from pybreaker import CircuitBreaker, CircuitBreakerError
from starlette.concurrency import run_in_threadpool
from twilio.rest import Client

from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    error: Optional[str] = None


def _send_resend(to_email: str, subject: str, html_body: str, text_body: str) -> None:
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [to_email],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    })


def _send_twilio(to: str, body: str, from_: str) -> None:
    client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    client.messages.create(body=body, from_=from_, to=to)


class DeliveryChannel:
    """Provider-backed channel. Tests substitute a recording fake via get_delivery_channel."""

    def __init__(self):
        self.breakers = {
            name: CircuitBreaker(
                fail_max=settings.DELIVERY_BREAKER_FAIL_MAX,
                reset_timeout=settings.DELIVERY_BREAKER_RESET_SECONDS,
                name=name,
            )
            for name in ("email", "sms", "whatsapp")
        }

    async def _call(self, channel: str, func, *args) -> DeliveryResult:
        breaker = self.breakers[channel]
        try:
            # Provider SDKs are blocking
            await run_in_threadpool(breaker.call, func, *args)
            return DeliveryResult(success=True)
        except CircuitBreakerError:
            logger.warning(f"{channel} delivery skipped: circuit open")
            return DeliveryResult(success=False, error=f"{channel} provider unavailable (circuit open)")
        except Exception as e:
            logger.warning(f"{channel} delivery failed: {e}")
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

    async def send_email(self, to: str, subject: str, body: str, html_body: Optional[str] = None) -> DeliveryResult:
        if not settings.RESEND_API_KEY:
            return DeliveryResult(success=False, error="Email provider not configured")
        return await self._call("email", _send_resend, to, subject, html_body or body, body)

    async def send_sms(self, to: str, body: str) -> DeliveryResult:
        if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_FROM_NUMBER):
            return DeliveryResult(success=False, error="SMS provider not configured")
        return await self._call("sms", _send_twilio, to, body, settings.TWILIO_FROM_NUMBER)

    async def send_whatsapp(self, to: str, body: str) -> DeliveryResult:
        if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_WHATSAPP_NUMBER):
            return DeliveryResult(success=False, error="WhatsApp provider not configured")
        return await self._call(
            "whatsapp",
            _send_twilio,
            f"whatsapp:{to}",
            body,
            f"whatsapp:{settings.TWILIO_WHATSAPP_NUMBER}",
        )


_channel: Optional[DeliveryChannel] = None


def get_delivery_channel() -> DeliveryChannel:
    """FastAPI dependency and task entry point for the process-wide channel."""
    global _channel
    if _channel is None:
        _channel = DeliveryChannel()
    return _channel
