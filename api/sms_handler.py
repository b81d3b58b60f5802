import asyncio
import logging
from typing import Any, Dict, List, Optional

from api.channels import CONVERSATIONS, SMS, WHATSAPP, format_phone_number, split_address
from api.models import DispatchResult, InboundEvent, Message, Resolution, SentimentLogEntry
from api.services.analysis import AnalysisService
from api.services.chat import ChatService
from api.services.context import ContextService
from api.services.profiles import ProfileService
from api.services.sms import SMSService
from api.services.storage import StorageService
from lib.error_handler import AppError, ErrorHandler, EventParseError, PersistenceError

logger = logging.getLogger(__name__)

NO_SUBSCRIPTION_MESSAGE = (
    "Hi! It looks like you don't have an active subscription to our relationship assistant "
    "service. Please visit our website to get started!"
)

CONVERSATION_TITLES = {
    SMS: "SMS Conversation",
    WHATSAPP: "WhatsApp Conversation",
    CONVERSATIONS: "Conversations API Chat",
}

DISPATCH_POLICIES = ("record_as_sent", "mark_failed")

def opening_message(name: Optional[str]) -> str:
    return (
        f"Hi {name or 'there'}! 👋\n\n"
        "I'm your AI relationship assistant. I'm here to help you navigate relationship challenges, "
        "improve communication, and provide emotional support.\n\n"
        "Feel free to share what's on your mind - whether it's about relationships, communication "
        "issues, or just need someone to talk to. Everything we discuss is private and confidential.\n\n"
        "What would you like to talk about today?"
    )

def parse_event(webhook_data: Dict[str, Any]) -> Optional[InboundEvent]:
    """Turn a Twilio webhook form into an InboundEvent, or None if it is not actionable"""
    if 'EventType' in webhook_data:
        event_type = webhook_data.get('EventType')
        author = webhook_data.get('Author')
        source = webhook_data.get('Source')
        # Only messages added by the remote participant get a reply
        if event_type != 'onMessageAdded' or author == 'assistant' or source == 'API':
            logger.info(f"Ignoring event: {event_type} from {author} (source: {source})")
            return None

        conversation_sid = webhook_data.get('ConversationSid')
        body = webhook_data.get('Body')
        if not conversation_sid or body is None:
            raise EventParseError("Conversations event is missing ConversationSid or Body")
        return InboundEvent(
            channel=CONVERSATIONS,
            conversation_sid=conversation_sid,
            body=body,
            message_sid=webhook_data.get('MessageSid') or None
        )

    from_address = webhook_data.get('From')
    body = webhook_data.get('Body')
    if not from_address or body is None:
        raise EventParseError("Messaging event is missing From or Body")

    channel, _ = split_address(from_address)
    return InboundEvent(
        channel=channel,
        address=from_address,
        body=body,
        message_sid=webhook_data.get('MessageSid') or None
    )

class SMSHandler:
    """Drives one inbound message from webhook to dispatched reply"""

    def __init__(
        self,
        storage_service: StorageService,
        profile_service: ProfileService,
        context_service: ContextService,
        analysis_service: AnalysisService,
        chat_service: ChatService,
        sms_service: SMSService,
        request_timeout: float = 14.0,
        dispatch_failure_policy: str = "record_as_sent"
    ):
        if dispatch_failure_policy not in DISPATCH_POLICIES:
            raise ValueError(f"Unknown dispatch failure policy: {dispatch_failure_policy}")
        self.storage = storage_service
        self.profiles = profile_service
        self.context = context_service
        self.analysis = analysis_service
        self.chat = chat_service
        self.sms = sms_service
        self.request_timeout = request_timeout
        self.dispatch_failure_policy = dispatch_failure_policy

    async def handle_incoming_message(self, webhook_data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one inbound webhook event.

        Returns success=False only for unparseable events, persistence
        failures and the overall request deadline. Analysis, generation and
        dispatch failures are absorbed along the way.
        """
        try:
            return await asyncio.wait_for(self._process(webhook_data), timeout=self.request_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Inbound message processing exceeded {self.request_timeout}s deadline")
            return {"success": False, "error": "timeout"}
        except EventParseError as e:
            logger.error(f"Rejected webhook payload: {e.message}")
            return {"success": False, "error": e.message}
        except PersistenceError as e:
            logger.error(f"Persistence failure while processing message: {e.message}", exc_info=True)
            return {"success": False, "error": e.message}

    async def _process(self, webhook_data: Dict[str, Any]) -> Dict[str, Any]:
        event = parse_event(webhook_data)
        if event is None:
            return {"success": True, "ignored": True}

        logger.info(f"Received {event.channel} message {event.message_sid}: {event.body[:50]}")

        if event.message_sid and not await self.storage.claim_event(event.message_sid, event.channel):
            logger.info(f"Duplicate delivery of {event.message_sid}, skipping")
            return {"success": True, "duplicate": True}

        resolution = await self._resolve(event)
        if not resolution.found:
            logger.info(f"Rejected {event.channel} message: {resolution.reason}")
            await self._reply(event, NO_SUBSCRIPTION_MESSAGE)
            return {"success": True}

        user = resolution.user
        conversation = await self.storage.find_or_create_active_conversation(
            user.id, CONVERSATION_TITLES[event.channel]
        )

        user_message = await self.storage.append_message(
            conversation.id, user.id, event.body, "user", event.channel, external_id=event.message_sid
        )

        context = await self.context.build(user.id, conversation.id, exclude_message_id=user_message.id)

        analysis = await self.analysis.analyze(event.body)
        await self.storage.attach_analysis(user_message.id, analysis)
        await self.storage.log_sentiment(user.id, user_message.id, analysis)

        logger.info(f"Generating AI response for user {user.id}...")
        reply = await self.chat.generate(user, event.body, context, analysis, event.channel)

        assistant_message = await self.storage.append_message(
            conversation.id, user.id, reply, "assistant", event.channel
        )
        await self.storage.touch_conversation(conversation.id, 2)

        # Derived counters; a lost increment does not hold back the reply
        try:
            await self.context.update(user.id, analysis)
        except AppError as e:
            ErrorHandler.handle_context_error(e)

        result = await self._reply(event, reply)
        if not result.success:
            await self._handle_dispatch_failure(assistant_message, result)

        return {
            "success": True,
            "conversation_id": conversation.id,
            "delivered": result.success
        }

    async def _resolve(self, event: InboundEvent) -> Resolution:
        if event.channel == CONVERSATIONS:
            return await self.profiles.resolve_thread(event.conversation_sid)
        return await self.profiles.resolve_address(event.address)

    async def _reply(self, event: InboundEvent, body: str) -> DispatchResult:
        """Send on the channel the event arrived on, with no fallback"""
        if event.channel == CONVERSATIONS:
            return await self.sms.send_to_thread(event.conversation_sid, body)
        _, phone = split_address(event.address)
        return await self.sms.send(phone, body, event.channel)

    async def _handle_dispatch_failure(self, message: Message, result: DispatchResult) -> None:
        if self.dispatch_failure_policy == "mark_failed":
            logger.warning(f"Reply {message.id} not delivered, marking failed: {result.error}")
            await self.storage.mark_delivery_failed(message.id, result.error or "unknown error")
        else:
            logger.warning(f"Reply {message.id} not delivered, kept as sent: {result.error}")

    async def start_conversation(self, user_id: str) -> Dict[str, Any]:
        """Open a new conversation by sending the assistant's opening message"""
        try:
            user = await self.storage.get_user_by_id(user_id)
            if not user:
                return {"error": "User not found", "status_code": 404}
            if not user.phone:
                return {
                    "error": "Phone number required. Please add your phone number in settings first.",
                    "status_code": 400
                }
            if not user.is_subscribed:
                return {
                    "error": "Subscription required. Please subscribe to start conversations.",
                    "status_code": 403
                }

            message = opening_message(user.name)
            result = await self.sms.send_with_fallback(format_phone_number(user.phone), message, preferred=SMS)

            # The current thread stays active unless the opening message went out
            if not result.success:
                return {"error": f"Failed to send message: {result.error}", "status_code": 502}

            conversation = await self.storage.start_new_conversation(user.id, "New Conversation")
            await self.storage.append_message(conversation.id, user.id, message, "assistant", result.channel)
            await self.storage.touch_conversation(conversation.id, 1)
            logger.info(f"Started conversation {conversation.id} for user {user.id} via {result.channel}")
            return {"conversation_id": conversation.id, "channel": result.channel}

        except PersistenceError as e:
            logger.error(f"Failed to start conversation for user {user_id}: {e.message}", exc_info=True)
            return {"error": "Failed to start conversation", "status_code": 500}

    async def get_history(self, conversation_id: str, limit: int = 50, newest_first: bool = True) -> List[Message]:
        return await self.storage.list_history(conversation_id, limit=limit, newest_first=newest_first)

    async def get_sentiment_history(self, user_id: str, limit: int = 30) -> List[SentimentLogEntry]:
        return await self.storage.get_sentiment_history(user_id, limit=limit)
