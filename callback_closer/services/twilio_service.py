"""
Twilio service for outbound SMS and inbound number configuration.
The REST client is created on first use so webhook routes that never send
(and tests that inject a fake) do not need credentials.
"""

import logging
from typing import Any, Dict, Optional
from twilio.rest import Client
from twilio.base.exceptions import TwilioException

from callback_closer.config.settings import Settings, settings
from callback_closer.core.urls import build_webhook_urls

logger = logging.getLogger(__name__)


class TwilioService:
    """Service class for Twilio operations."""

    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        """
        Lazily construct the Twilio REST client.

        Raises:
            ValueError: If TWILIO_ACCOUNT_SID or TWILIO_AUTH_TOKEN is missing
        """
        if self._client is None:
            account_sid = self._account_sid or settings.twilio_account_sid
            auth_token = self._auth_token or settings.twilio_auth_token
            if not account_sid or not auth_token:
                raise ValueError("Missing TWILIO_ACCOUNT_SID or TWILIO_AUTH_TOKEN")
            self._client = Client(account_sid, auth_token)
        return self._client

    def send_sms(self, from_phone: str, to_phone: str, body: str) -> Any:
        """
        Send one SMS.

        Args:
            from_phone: Sending Twilio number (E.164)
            to_phone: Recipient (E.164)
            body: Message text

        Returns:
            The created Twilio message resource (``sid``, ``status``, ``date_created``)

        Raises:
            TwilioException: If the Twilio API rejects the request
            ValueError: If credentials are not configured
        """
        message = self.client.messages.create(from_=from_phone, to=to_phone, body=body)
        logger.info(f"SMS sent. Message SID: {message.sid}")
        return message

    def sync_incoming_number_webhooks(self, phone_number_sid: str, config: Optional[Settings] = None) -> Dict[str, Any]:
        """
        Point a purchased number's voice, SMS and status callbacks at this service.

        Args:
            phone_number_sid: Twilio IncomingPhoneNumber SID (PN...)
            config: Settings used to build the callback URLs

        Returns:
            dict: Applied configuration

        Raises:
            ValueError: If the callback URLs cannot be built or Twilio rejects the update
        """
        urls = build_webhook_urls(config)

        try:
            number = self.client.incoming_phone_numbers(phone_number_sid).update(
                voice_url=urls.voice_url,
                voice_method="POST",
                sms_url=urls.sms_url,
                sms_method="POST",
                status_callback=urls.status_url,
                status_callback_method="POST",
            )
        except TwilioException as e:
            logger.error(f"Twilio error syncing webhooks for {phone_number_sid}: {e}")
            raise ValueError(f"Failed to sync webhooks: {e}")

        logger.info(f"Successfully synced webhooks for {number.phone_number} ({number.sid})")

        return {
            "success": True,
            "sid": number.sid,
            "phone_number": number.phone_number,
            "app_base_url": urls.app_base_url,
            "voice_url": urls.voice_url,
            "sms_url": urls.sms_url,
            "status_callback_url": urls.status_url,
        }


# Global service instance
twilio_service = TwilioService()


def get_twilio_service() -> TwilioService:
    """FastAPI dependency returning the process-wide Twilio service."""
    return twilio_service
