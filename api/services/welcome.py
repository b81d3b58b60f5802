import asyncio
import logging
from typing import List, Optional, Tuple
from pydantic import BaseModel

from api.channels import SMS, WHATSAPP, format_phone_number
from api.services.sms import SMSService
from api.services.storage import StorageService

logger = logging.getLogger(__name__)

WELCOME_CONVERSATION_TITLE = "Welcome to Your Relationship Assistant"

class WelcomeResult(BaseModel):
    success: bool
    messages_sent: int
    platform: str = SMS
    error: Optional[str] = None

def welcome_messages(name: Optional[str]) -> List[str]:
    user_name = name or "there"
    return [
        f"Hi {user_name}! 🎉 Welcome to your personal relationship assistant! I'm here to help you "
        "navigate your relationship journey with personalized guidance and support.",
        "Feel free to text me anytime you need relationship advice, want to talk through a situation, "
        "or just need someone to listen. I'm available 24/7! 💬",
        "To get started, you can tell me about your current relationship situation or ask me any "
        "questions you have. How are you feeling about your relationship today? ❤️",
    ]

class WelcomeService:
    """Sends the onboarding message sequence once a subscription starts"""

    def __init__(self, storage_service: StorageService, sms_service: SMSService, message_delay: float = 2.0):
        self.storage = storage_service
        self.sms = sms_service
        self.message_delay = message_delay

    async def send_welcome_sequence(self, user_id: str, trigger: str, force_resend: bool = False) -> WelcomeResult:
        if not force_resend and await self.storage.count_conversations(user_id) > 0:
            logger.info(f"Skipping welcome for user {user_id}: already has conversations")
            return WelcomeResult(
                success=True,
                messages_sent=0,
                error="Welcome messages already sent to this user"
            )

        user = await self.storage.get_user_by_id(user_id)
        if not user or not user.phone:
            return WelcomeResult(success=False, messages_sent=0, error="No phone number found for user")

        phone = format_phone_number(user.phone)
        messages = welcome_messages(user.name)
        delivered: List[Tuple[str, str]] = []
        channels_used = set()
        last_error = None

        for i, message in enumerate(messages):
            result = await self.sms.send_with_fallback(phone, message, preferred=SMS)
            if result.success:
                delivered.append((message, result.channel))
                channels_used.add(result.channel)
                logger.info(f"Welcome {i + 1}/{len(messages)} sent to user {user_id} via {result.channel}")
            else:
                last_error = f"Message {i + 1}: {result.error}"
                logger.error(f"Both SMS and WhatsApp failed for welcome {i + 1} to user {user_id}")

            if i < len(messages) - 1 and self.message_delay:
                await asyncio.sleep(self.message_delay)

        if delivered:
            await self._record_conversation(user_id, delivered)

        platform = "both" if len(channels_used) > 1 else (WHATSAPP if WHATSAPP in channels_used else SMS)
        logger.info(
            f"Welcome delivery for user {user_id}: trigger={trigger} sent={len(delivered)} platform={platform}"
        )
        return WelcomeResult(
            success=bool(delivered),
            messages_sent=len(delivered),
            platform=platform,
            error=None if delivered else last_error
        )

    async def _record_conversation(self, user_id: str, delivered: List[Tuple[str, str]]) -> None:
        conversation = await self.storage.start_new_conversation(user_id, WELCOME_CONVERSATION_TITLE)
        for content, channel in delivered:
            await self.storage.append_message(conversation.id, user_id, content, "assistant", channel)
        await self.storage.touch_conversation(conversation.id, len(delivered))
