from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from typing import Optional
import logging
from lib.config import get_settings
from lib.error_handler import ProviderError

logger = logging.getLogger(__name__)

# Twilio error codes with a readable reason
ERROR_REASONS = {
    21211: "Invalid phone number format.",
    21608: "This phone number is not verified with our test account.",
    21614: "This number cannot receive SMS messages.",
    63016: "WhatsApp session window has closed for this number."
}

class TwilioClient:
    def __init__(self, client: Optional[Client] = None):
        settings = get_settings()
        self.client = client or Client(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            http_client=TwilioHttpClient(timeout=settings.twilio_timeout_seconds)
        )
        self.phone_number = settings.twilio_phone_number
        self.whatsapp_number = settings.twilio_whatsapp_number

    def send_message(self, to_number: str, body: str, from_number: str):
        """Send a Programmable Messaging message and return the Twilio message."""
        try:
            message = self.client.messages.create(
                body=body,
                from_=from_number,
                to=to_number
            )
            logger.info(f"Message {message.sid} accepted for {to_number} ({message.status})")
            return message
        except TwilioRestException as e:
            logger.error(f"Twilio error sending message: {str(e)}")
            raise ProviderError(
                f"Twilio error {e.code}: {e.msg}",
                reason=ERROR_REASONS.get(e.code, f"Failed to send message: {e.msg}")
            )
        except Exception as e:
            logger.error(f"Unexpected error sending message: {str(e)}")
            raise ProviderError(f"Unexpected Twilio error: {str(e)}")

    def send_conversation_message(self, conversation_sid: str, body: str, author: str = "assistant"):
        """Post a message into a Conversations thread."""
        try:
            message = self.client.conversations.v1.conversations(conversation_sid).messages.create(
                author=author,
                body=body
            )
            logger.info(f"Conversation message {message.sid} posted to {conversation_sid}")
            return message
        except TwilioRestException as e:
            logger.error(f"Twilio error posting to conversation: {str(e)}")
            raise ProviderError(
                f"Twilio error {e.code}: {e.msg}",
                reason=ERROR_REASONS.get(e.code, f"Failed to send message: {e.msg}")
            )
        except Exception as e:
            logger.error(f"Unexpected error posting to conversation: {str(e)}")
            raise ProviderError(f"Unexpected Twilio error: {str(e)}")
