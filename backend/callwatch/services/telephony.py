import asyncio
import logging
from typing import Any, Dict, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from callwatch.config import settings

logger = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TelephonyError(Exception):
    pass


class TelephonyService:
    """
    Service for Twilio voice operations: placing outbound monitored calls.
    """

    def __init__(self, client: Optional[Client] = None):
        self.from_number = settings.twilio_phone_number
        self._client = client
        logger.info("TelephonyService initialized")

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = Client(settings.twilio_account_sid, settings.twilio_auth_token)
        return self._client

    @property
    def configured(self) -> bool:
        return bool(self._client is not None or settings.twilio_configured) and bool(self.from_number)

    async def place_call(
        self,
        to_number: str,
        twiml_url: str,
        status_callback_url: str,
        timeout: int = 30,
    ) -> Dict[str, Any]:
        """Place an outbound call whose audio will be streamed back to us."""
        if not self.configured:
            raise ValueError("Twilio voice credentials not configured")

        try:
            call = await asyncio.to_thread(
                self.client.calls.create,
                to=to_number,
                from_=self.from_number,
                url=twiml_url,
                method="POST",
                status_callback=status_callback_url,
                status_callback_method="POST",
                status_callback_event=STATUS_CALLBACK_EVENTS,
                timeout=timeout,
                record=False,
            )
        except TwilioRestException as e:
            logger.error(
                "Failed to place call to %s: status=%s code=%s msg=%s",
                to_number, e.status, e.code, e.msg,
            )
            raise TelephonyError(f"Twilio error {e.code}: {e.msg}") from e
        except Exception as e:
            logger.error("Failed to place call to %s: %s", to_number, e)
            raise TelephonyError(f"Twilio request failed: {e}") from e

        logger.info("Call placed: %s (%s)", call.sid, call.status)
        return {"sid": call.sid, "status": call.status}
