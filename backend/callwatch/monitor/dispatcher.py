"""
SMS notification dispatch using Twilio.

Each send() makes exactly one messages.create call and reports the result
as a DeliveryOutcome. Errors are never raised to the caller and nothing is
retried here.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from callwatch.config import settings

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    success: bool
    message_sid: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class SMSDispatcher:
    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[Client] = None,
        status_callback_url: Optional[str] = None,
    ):
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self.from_number = from_number if from_number is not None else settings.twilio_phone_number
        self._client = client
        if status_callback_url is None and settings.public_base_url:
            status_callback_url = f"{settings.public_base_url.rstrip('/')}/api/voice/sms-status"
        self.status_callback_url = status_callback_url or None

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    def _message_params(self, recipient: str, body: str) -> dict:
        params = {"body": body, "from_": self.from_number, "to": recipient}
        # Delivery receipts for the sent -> delivered/failed transition
        if self.status_callback_url:
            params["status_callback"] = self.status_callback_url
        return params

    async def send(self, recipient: str, body: str) -> DeliveryOutcome:
        """Send one SMS. Returns a failure outcome instead of raising."""
        if not self.configured:
            logger.error("SMS dispatch refused: Twilio credentials or sender number missing")
            return DeliveryOutcome(success=False, error="Missing Twilio credentials")
        if not recipient:
            logger.error("SMS dispatch refused: no recipient")
            return DeliveryOutcome(success=False, error="No emergency contact configured")

        logger.info("Sending SMS to %s (%d chars)", recipient, len(body))
        try:
            # The Twilio REST client is synchronous; keep it off the event loop.
            message = await asyncio.to_thread(
                self.client.messages.create,
                **self._message_params(recipient, body),
            )
        except TwilioRestException as e:
            detail = f"Twilio error {e.code}: {e.msg}" if e.code else f"HTTP {e.status}: {e.msg}"
            logger.error(
                "Failed to send SMS to %s: status=%s code=%s msg=%s uri=%s",
                recipient, e.status, e.code, e.msg, e.uri,
            )
            return DeliveryOutcome(success=False, error=detail)
        except Exception as e:
            logger.error("Failed to send SMS to %s: %s", recipient, e)
            return DeliveryOutcome(success=False, error=str(e))

        logger.info("SMS sent: %s (%s)", message.sid, message.status)
        return DeliveryOutcome(success=True, message_sid=message.sid, status=message.status)
