import itertools
import json
import pytest
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.models import (
    Conversation,
    Message,
    MessageAnalysis,
    SentimentLogEntry,
    User,
    UserContext
)
from api.services.analysis import AnalysisService
from api.services.chat import ChatService
from api.services.context import ContextService
from api.services.profiles import ProfileService
from api.services.sms import SMSService
from api.sms_handler import SMSHandler
from lib.error_handler import PersistenceError

TEST_PHONE = "+15551234567"
TEST_USER_ID = "user-1"

class InMemoryStorage:
    """Dict-backed stand-in for StorageService with the same async interface"""

    def __init__(self):
        self.users = {}
        self.contexts = {}
        self.conversations = {}
        self.messages: List[Message] = []
        self.sentiment_logs: List[SentimentLogEntry] = []
        self.events = set()
        self.fail_on = set()
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise PersistenceError(f"{operation} unavailable")

    def add_user(self, **fields) -> User:
        user = User(**fields)
        self.users[user.id] = user
        return user

    def messages_for(self, conversation_id: str) -> List[Message]:
        return [m for m in self.messages if m.conversation_id == conversation_id]

    async def get_user_by_phone(self, phone: str) -> Optional[User]:
        self._check("get_user_by_phone")
        return next((u for u in self.users.values() if u.phone == phone), None)

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        self._check("get_user_by_id")
        return self.users.get(user_id)

    async def get_user_context(self, user_id: str) -> Optional[UserContext]:
        self._check("get_user_context")
        return self.contexts.get(user_id)

    async def increment_context_counters(self, user_id: str, emotions: List[str], topics: List[str]) -> None:
        self._check("increment_context_counters")
        context = self.contexts.setdefault(user_id, UserContext(user_id=user_id))
        for emotion in emotions:
            context.communication_patterns[emotion] = context.communication_patterns.get(emotion, 0) + 1
        for topic in topics:
            context.trigger_points[topic] = context.trigger_points.get(topic, 0) + 1

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.get(conversation_id)

    async def find_active_conversation(self, user_id: str) -> Optional[Conversation]:
        return next(
            (c for c in self.conversations.values() if c.user_id == user_id and c.status == "active"),
            None
        )

    async def create_conversation(self, user_id: str, title: str) -> Conversation:
        self._check("create_conversation")
        conversation = Conversation(
            id=self._next_id("conv"),
            user_id=user_id,
            title=title,
            last_message_at=self._tick()
        )
        self.conversations[conversation.id] = conversation
        return conversation

    async def find_or_create_active_conversation(self, user_id: str, title: str) -> Conversation:
        return await self.find_active_conversation(user_id) or await self.create_conversation(user_id, title)

    async def archive_conversation(self, conversation_id: str) -> None:
        self.conversations[conversation_id].status = "archived"

    async def start_new_conversation(self, user_id: str, title: str) -> Conversation:
        current = await self.find_active_conversation(user_id)
        if current:
            await self.archive_conversation(current.id)
        return await self.create_conversation(user_id, title)

    async def touch_conversation(self, conversation_id: str, increment_by: int) -> None:
        self._check("touch_conversation")
        conversation = self.conversations[conversation_id]
        conversation.total_messages += increment_by
        conversation.last_message_at = self._tick()

    async def count_conversations(self, user_id: str) -> int:
        return len([c for c in self.conversations.values() if c.user_id == user_id])

    async def append_message(self, conversation_id, user_id, content, sender, channel, external_id=None) -> Message:
        self._check(f"append_{sender}_message")
        message = Message(
            id=self._next_id("msg"),
            conversation_id=conversation_id,
            user_id=user_id,
            content=content,
            sender=sender,
            platform=channel,
            external_id=external_id,
            created_at=self._tick()
        )
        self.messages.append(message)
        return message

    async def attach_analysis(self, message_id: str, analysis: MessageAnalysis) -> None:
        message = next(m for m in self.messages if m.id == message_id)
        message.sentiment = analysis.sentiment
        message.emotions = list(analysis.emotions)
        message.topics = list(analysis.topics)
        message.urgency_level = analysis.urgency_level

    async def mark_delivery_failed(self, message_id: str, reason: str) -> None:
        message = next(m for m in self.messages if m.id == message_id)
        message.delivery_status = "failed"

    async def list_history(self, conversation_id, limit, newest_first=True, exclude_message_id=None) -> List[Message]:
        history = [
            m for m in self.messages_for(conversation_id)
            if m.id != exclude_message_id
        ][-limit:]
        return list(reversed(history)) if newest_first else history

    async def log_sentiment(self, user_id, message_id, analysis, confidence=0.8) -> SentimentLogEntry:
        entry = SentimentLogEntry(
            user_id=user_id,
            message_id=message_id,
            sentiment=analysis.sentiment,
            confidence=confidence,
            emotions=analysis.emotions,
            intensity=analysis.urgency_level / 5,
            created_at=self._tick()
        )
        self.sentiment_logs.append(entry)
        return entry

    async def get_sentiment_history(self, user_id: str, limit: int = 30) -> List[SentimentLogEntry]:
        entries = [e for e in self.sentiment_logs if e.user_id == user_id]
        return list(reversed(entries))[:limit]

    async def claim_event(self, event_id: str, source: str) -> bool:
        if event_id in self.events:
            return False
        self.events.add(event_id)
        return True

def completion_for(analysis: Optional[dict] = None, reply: str = "That sounds hard. What happened?"):
    """Fake OpenAIClient.complete answering analysis calls with JSON and chat calls with `reply`"""
    analysis = analysis if analysis is not None else {
        "sentiment": "negative",
        "emotions": ["lonely", "sad"],
        "topics": ["communication"],
        "urgencyLevel": 2
    }

    def complete(**kwargs):
        if kwargs.get("json_mode"):
            return json.dumps(analysis)
        return reply

    return complete

def make_twilio_client():
    client = MagicMock()
    client.phone_number = "+15550000000"
    client.whatsapp_number = "whatsapp:+15550000001"
    client.send_message.return_value = MagicMock(sid="SM123", status="queued")
    client.send_conversation_message.return_value = MagicMock(sid="IM123", status="sent")
    return client

@pytest.fixture
def storage():
    return InMemoryStorage()

@pytest.fixture
def subscribed_user(storage):
    return storage.add_user(
        id=TEST_USER_ID,
        phone=TEST_PHONE,
        name="Alex",
        age=34,
        city="Austin",
        state="TX",
        is_subscribed=True
    )

@pytest.fixture
def openai_client():
    client = MagicMock()
    client.complete = AsyncMock(side_effect=completion_for())
    return client

@pytest.fixture
def twilio_client():
    return make_twilio_client()

@pytest.fixture
def sms_service(twilio_client):
    return SMSService(twilio_client)

@pytest.fixture
def handler(storage, openai_client, sms_service):
    return SMSHandler(
        storage_service=storage,
        profile_service=ProfileService(storage),
        context_service=ContextService(storage),
        analysis_service=AnalysisService(openai_client),
        chat_service=ChatService(openai_client),
        sms_service=sms_service,
        request_timeout=5
    )
