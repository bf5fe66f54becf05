import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class SmsResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    delivered: bool = True  # False when logged only


class SmsGateway:
    """Twilio Messages API over httpx. Without credentials it only logs."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def configured(self) -> bool:
        return self.settings.sms_enabled()

    async def send(self, to: str, body: str) -> SmsResult:
        if not self.configured:
            logger.warning("SMS gateway not configured, message to %s not delivered", to)
            return SmsResult(success=True, delivered=False)

        url = (
            f"{self.settings.twilio_api_url.rstrip('/')}/Accounts/"
            f"{self.settings.twilio_account_sid}/Messages.json"
        )
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.post(
                    url,
                    data={"To": to, "From": self.settings.twilio_phone_number, "Body": body},
                    auth=(self.settings.twilio_account_sid, self.settings.twilio_auth_token),
                )
        except httpx.HTTPError as e:
            logger.error("SMS send to %s failed: %s", to, e)
            return SmsResult(success=False, error=str(e))

        if response.status_code in (200, 201):
            sid = response.json().get("sid")
            logger.info("SMS sent via Twilio: %s", sid)
            return SmsResult(success=True, provider_message_id=sid)

        logger.error("Twilio rejected SMS to %s: HTTP %s", to, response.status_code)
        return SmsResult(success=False, error=f"HTTP {response.status_code}: {response.text}")


def get_sms_gateway() -> SmsGateway:
    return SmsGateway(get_settings())
