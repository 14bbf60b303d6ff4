"""
Twilio SMS client
"""
import logging
from typing import Optional

from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from reviewpilot.core.config import get_settings

logger = logging.getLogger(__name__)

# Twilio error codes that will fail the same way on every retry
PERMANENT_ERROR_CODES = {
    21211,  # invalid 'To' number
    21408,  # region not enabled
    21610,  # recipient replied STOP
    21614,  # not a mobile number
}


class SmsDeliveryError(Exception):
    """Outbound SMS could not be handed to the provider"""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class SmsClient:
    """Thin wrapper over twilio.rest.Client with a bounded request timeout"""

    def __init__(self, client: Optional[Client] = None):
        self.settings = get_settings()
        self.from_number = self.settings.twilio_phone_number

        if client is not None:
            self.client = client
        elif self.settings.twilio_account_sid and self.settings.twilio_auth_token:
            self.client = Client(
                self.settings.twilio_account_sid,
                self.settings.twilio_auth_token,
                http_client=TwilioHttpClient(timeout=self.settings.http_timeout_seconds),
            )
            logger.info("Twilio SMS client initialized")
        else:
            logger.warning("Twilio credentials not configured - outbound SMS disabled")
            self.client = None

    def is_enabled(self) -> bool:
        return self.client is not None and bool(self.from_number)

    def send(self, to_phone: str, body: str) -> str:
        """
        Send one SMS.

        Returns:
            Provider message SID

        Raises:
            SmsDeliveryError: On any provider or network failure
        """
        if not self.is_enabled():
            raise SmsDeliveryError("SMS provider is not configured", transient=False)

        kwargs = {"body": body, "from_": self.from_number, "to": to_phone}
        if self.settings.public_base_url:
            kwargs["status_callback"] = f"{self.settings.public_base_url.rstrip('/')}/webhooks/twilio/status"

        try:
            message = self.client.messages.create(**kwargs)
        except TwilioRestException as e:
            permanent = e.code in PERMANENT_ERROR_CODES
            logger.warning(f"Twilio rejected SMS to {to_phone}: {e.code} {e.msg}")
            raise SmsDeliveryError(f"Twilio error {e.code}: {e.msg}", transient=not permanent) from e
        except Exception as e:
            # Network errors and timeouts from the HTTP layer
            logger.warning(f"SMS send to {to_phone} failed: {e}")
            raise SmsDeliveryError(f"SMS send failed: {e}") from e

        logger.info(f"SMS sent to {to_phone}: {message.sid}")
        return message.sid


_sms_client: Optional[SmsClient] = None


def get_sms_client() -> SmsClient:
    """Get the process-wide SMS client"""
    global _sms_client
    if _sms_client is None:
        _sms_client = SmsClient()
    return _sms_client
