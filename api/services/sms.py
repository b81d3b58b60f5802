import asyncio
import logging

from api.channels import CONVERSATIONS, SMS, WHATSAPP, format_address, other_channel
from api.models import DispatchResult
from lib.error_handler import ErrorHandler, ProviderError
from lib.twilio_client import TwilioClient

logger = logging.getLogger(__name__)

class SMSService:
    """Sends outbound text over SMS, WhatsApp or a Conversations thread.

    Nothing here raises or persists: every send reports a DispatchResult and
    recording the outcome is the caller's job.
    """

    def __init__(self, twilio_client: TwilioClient):
        self.client = twilio_client
        logger.info(f"SMS service initialized with phone number: {twilio_client.phone_number}")

    def _sender_for(self, channel: str) -> str:
        if channel == WHATSAPP:
            return format_address(self.client.whatsapp_number, WHATSAPP)
        return self.client.phone_number

    async def send(self, to: str, body: str, channel: str = SMS) -> DispatchResult:
        """Send one message on one channel"""
        to_address = format_address(to, channel)
        logger.info(f"Sending {channel} message to {to_address}: {body[:20]}...")
        try:
            # Run Twilio API call in an executor to prevent blocking
            loop = asyncio.get_running_loop()
            message = await loop.run_in_executor(
                None,
                lambda: self.client.send_message(to_address, body, self._sender_for(channel))
            )
        except ProviderError as e:
            ErrorHandler.handle_dispatch_error(to_address, e.reason)
            return DispatchResult(success=False, channel=channel, error=e.reason)
        except Exception as e:
            ErrorHandler.handle_dispatch_error(to_address, str(e))
            return DispatchResult(success=False, channel=channel, error=str(e))

        return DispatchResult(
            success=True,
            channel=channel,
            message_id=message.sid,
            status=message.status
        )

    async def send_with_fallback(self, to: str, body: str, preferred: str = SMS) -> DispatchResult:
        """Try the preferred channel, then exactly one attempt on the other one"""
        result = await self.send(to, body, preferred)
        if result.success:
            return result

        fallback = other_channel(preferred)
        logger.info(f"{preferred} failed for {to}, trying {fallback}...")
        fallback_result = await self.send(to, body, fallback)
        if fallback_result.success:
            return fallback_result

        return DispatchResult(
            success=False,
            channel=fallback,
            error=f"{preferred}: {result.error}; {fallback}: {fallback_result.error}"
        )

    async def send_to_thread(self, conversation_sid: str, body: str) -> DispatchResult:
        """Post a message into a Conversations thread as the assistant"""
        logger.info(f"Posting to conversation {conversation_sid}: {body[:20]}...")
        try:
            loop = asyncio.get_running_loop()
            message = await loop.run_in_executor(
                None,
                lambda: self.client.send_conversation_message(conversation_sid, body)
            )
        except ProviderError as e:
            ErrorHandler.handle_dispatch_error(conversation_sid, e.reason)
            return DispatchResult(success=False, channel=CONVERSATIONS, error=e.reason)
        except Exception as e:
            ErrorHandler.handle_dispatch_error(conversation_sid, str(e))
            return DispatchResult(success=False, channel=CONVERSATIONS, error=str(e))

        return DispatchResult(success=True, channel=CONVERSATIONS, message_id=message.sid)
