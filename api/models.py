from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

SENTIMENTS = ("positive", "negative", "neutral", "mixed")

class User(BaseModel):
    id: str
    phone: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    gender: Optional[str] = None
    age: Optional[int] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    preferred_communication_style: Optional[str] = None
    is_subscribed: bool = False

    @property
    def location(self) -> str:
        return ", ".join(part for part in (self.city, self.state, self.country) if part)

class UserContext(BaseModel):
    user_id: str
    communication_patterns: Dict[str, int] = Field(default_factory=dict)
    trigger_points: Dict[str, int] = Field(default_factory=dict)
    relationship_history: Optional[Any] = None

class Conversation(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None
    status: str = "active"
    total_messages: int = 0
    context_summary: Optional[str] = None
    topic_tags: List[str] = Field(default_factory=list)
    last_message_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class Message(BaseModel):
    id: str
    conversation_id: str
    user_id: str
    content: str
    sender: str
    platform: str
    message_type: str = "text"
    sentiment: Optional[str] = None
    emotions: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    urgency_level: Optional[int] = None
    external_id: Optional[str] = None
    delivery_status: Optional[str] = None
    created_at: Optional[datetime] = None

class SentimentLogEntry(BaseModel):
    id: Optional[str] = None
    user_id: str
    message_id: str
    sentiment: str
    confidence: float
    emotions: List[str] = Field(default_factory=list)
    intensity: float
    created_at: Optional[datetime] = None

class MessageAnalysis(BaseModel):
    sentiment: str = "neutral"
    emotions: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    urgency_level: int = 1

    @classmethod
    def neutral(cls) -> "MessageAnalysis":
        return cls()

class ConversationContext(BaseModel):
    """Read-only context assembled for prompt construction"""
    recent_messages: List[Message] = Field(default_factory=list)
    user_context: Optional[UserContext] = None
    conversation_summary: Optional[str] = None
    topic_tags: List[str] = Field(default_factory=list)

    def turn_history(self, limit: int = 10) -> List[Dict[str, str]]:
        """Last `limit` messages as alternating chat turns"""
        return [
            {"role": "user" if msg.sender == "user" else "assistant", "content": msg.content}
            for msg in self.recent_messages[-limit:]
        ]

    def transcript(self, limit: int = 5) -> str:
        """Last `limit` non-empty messages quoted as `author: body` lines"""
        lines = [
            f"{msg.sender}: {msg.content}"
            for msg in self.recent_messages
            if msg.content and msg.content.strip()
        ]
        return "\n".join(lines[-limit:])

class InboundEvent(BaseModel):
    channel: str
    address: Optional[str] = None
    conversation_sid: Optional[str] = None
    body: str
    message_sid: Optional[str] = None

class DispatchResult(BaseModel):
    success: bool
    channel: str
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

class Resolution(BaseModel):
    user: Optional[User] = None
    context: Optional[UserContext] = None
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.user is not None
