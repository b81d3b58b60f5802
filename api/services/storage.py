import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from postgrest.exceptions import APIError

from api.models import (
    Conversation,
    Message,
    MessageAnalysis,
    SentimentLogEntry,
    User,
    UserContext
)
from lib.error_handler import PersistenceError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

class StorageService:
    """Supabase-backed store for users, conversations, messages and derived context"""

    def __init__(self, supabase_client, event_ttl_hours: int = 72):
        self.supabase = supabase_client
        self.event_ttl = timedelta(hours=event_ttl_hours)
        self.users_table = 'users'
        self.contexts_table = 'user_contexts'
        self.conversations_table = 'conversations'
        self.messages_table = 'messages'
        self.sentiment_table = 'sentiment_logs'
        self.events_table = 'processed_events'
        logger.info("Storage service initialized")

    async def _run(self, query):
        """Execute a PostgREST query off the event loop so request deadlines can cancel the wait"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, query.execute)

    async def _execute(self, query, action: str):
        try:
            return await self._run(query)
        except APIError as e:
            logger.error(f"Failed to {action}: {e.message}")
            raise PersistenceError(f"Failed to {action}: {e.message}")
        except Exception as e:
            logger.error(f"Failed to {action}: {str(e)}")
            raise PersistenceError(f"Failed to {action}: {str(e)}")

    def _first(self, result) -> Optional[Dict[str, Any]]:
        return result.data[0] if result.data else None

    # Users

    async def get_user_by_phone(self, phone: str) -> Optional[User]:
        result = await self._execute(
            self.supabase.table(self.users_table).select('*').eq('phone', phone).limit(1),
            "look up user by phone"
        )
        row = self._first(result)
        return User.model_validate(row) if row else None

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        result = await self._execute(
            self.supabase.table(self.users_table).select('*').eq('id', user_id).limit(1),
            "look up user by id"
        )
        row = self._first(result)
        return User.model_validate(row) if row else None

    async def get_user_context(self, user_id: str) -> Optional[UserContext]:
        result = await self._execute(
            self.supabase.table(self.contexts_table).select('*').eq('user_id', user_id).limit(1),
            "load user context"
        )
        row = self._first(result)
        return UserContext.model_validate(row) if row else None

    async def increment_context_counters(self, user_id: str, emotions: List[str], topics: List[str]) -> None:
        """Atomically add one per label to the user's emotion and trigger counters"""
        await self._execute(
            self.supabase.rpc('increment_context_counters', {
                'p_user_id': user_id,
                'p_emotions': emotions,
                'p_topics': topics
            }),
            "increment user context counters"
        )

    # Conversations

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        result = await self._execute(
            self.supabase.table(self.conversations_table).select('*').eq('id', conversation_id).limit(1),
            "load conversation"
        )
        row = self._first(result)
        return Conversation.model_validate(row) if row else None

    async def find_active_conversation(self, user_id: str) -> Optional[Conversation]:
        result = await self._execute(
            self.supabase.table(self.conversations_table)
                .select('*')
                .eq('user_id', user_id)
                .eq('status', 'active')
                .limit(1),
            "find active conversation"
        )
        row = self._first(result)
        return Conversation.model_validate(row) if row else None

    async def create_conversation(self, user_id: str, title: str) -> Conversation:
        data = {
            'user_id': user_id,
            'title': title,
            'status': 'active',
            'total_messages': 0,
            'last_message_at': _now()
        }
        result = await self._run(self.supabase.table(self.conversations_table).insert(data))
        row = self._first(result)
        if not row:
            raise PersistenceError("Conversation insert returned no row")
        logger.info(f"Created conversation {row['id']} for user {user_id}")
        return Conversation.model_validate(row)

    async def find_or_create_active_conversation(self, user_id: str, title: str) -> Conversation:
        """
        Return the user's active conversation, creating it if needed.

        The partial unique index on active conversations rejects a concurrent
        second insert; the loser re-fetches the winner's row.
        """
        conversation = await self.find_active_conversation(user_id)
        if conversation:
            return conversation

        try:
            return await self.create_conversation(user_id, title)
        except APIError as e:
            if e.code != UNIQUE_VIOLATION:
                logger.error(f"Failed to create conversation: {e.message}")
                raise PersistenceError(f"Failed to create conversation: {e.message}")
            logger.info(f"Active conversation for user {user_id} created concurrently, re-fetching")
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Failed to create conversation: {str(e)}")
            raise PersistenceError(f"Failed to create conversation: {str(e)}")

        conversation = await self.find_active_conversation(user_id)
        if not conversation:
            raise PersistenceError(f"Active conversation for user {user_id} vanished after conflict")
        return conversation

    async def archive_conversation(self, conversation_id: str) -> None:
        await self._execute(
            self.supabase.table(self.conversations_table)
                .update({'status': 'archived'})
                .eq('id', conversation_id),
            "archive conversation"
        )
        logger.info(f"Archived conversation {conversation_id}")

    async def start_new_conversation(self, user_id: str, title: str) -> Conversation:
        """Archive the current active conversation, if any, and open a new one"""
        current = await self.find_active_conversation(user_id)
        if current:
            await self.archive_conversation(current.id)
        try:
            return await self.create_conversation(user_id, title)
        except APIError as e:
            raise PersistenceError(f"Failed to create conversation: {e.message}")
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to create conversation: {str(e)}")

    async def touch_conversation(self, conversation_id: str, increment_by: int) -> None:
        """Bump the message counter and last activity time in one statement"""
        await self._execute(
            self.supabase.rpc('increment_conversation_messages', {
                'p_conversation_id': conversation_id,
                'p_increment': increment_by
            }),
            "update conversation activity"
        )

    async def count_conversations(self, user_id: str) -> int:
        result = await self._execute(
            self.supabase.table(self.conversations_table)
                .select('id', count='exact')
                .eq('user_id', user_id),
            "count conversations"
        )
        return result.count or 0

    # Messages

    async def append_message(
        self,
        conversation_id: str,
        user_id: str,
        content: str,
        sender: str,
        channel: str,
        external_id: Optional[str] = None
    ) -> Message:
        data = {
            'conversation_id': conversation_id,
            'user_id': user_id,
            'content': content,
            'sender': sender,
            'platform': channel,
            'message_type': 'text',
            'created_at': _now()
        }
        if external_id:
            data['external_id'] = external_id

        result = await self._execute(
            self.supabase.table(self.messages_table).insert(data),
            f"store {sender} message"
        )
        row = self._first(result)
        if not row:
            raise PersistenceError(f"Insert of {sender} message returned no row")
        return Message.model_validate(row)

    async def attach_analysis(self, message_id: str, analysis: MessageAnalysis) -> None:
        await self._execute(
            self.supabase.table(self.messages_table)
                .update({
                    'sentiment': analysis.sentiment,
                    'emotions': analysis.emotions,
                    'topics': analysis.topics,
                    'urgency_level': analysis.urgency_level
                })
                .eq('id', message_id),
            "attach message analysis"
        )

    async def mark_delivery_failed(self, message_id: str, reason: str) -> None:
        await self._execute(
            self.supabase.table(self.messages_table)
                .update({'delivery_status': 'failed', 'delivery_error': reason})
                .eq('id', message_id),
            "mark message delivery failed"
        )

    async def list_history(
        self,
        conversation_id: str,
        limit: int,
        newest_first: bool = True,
        exclude_message_id: Optional[str] = None
    ) -> List[Message]:
        """
        Return up to `limit` of the conversation's most recent messages.

        The window is always the latest messages; `newest_first` only controls
        the order they are returned in.
        """
        query = (
            self.supabase.table(self.messages_table)
                .select('*')
                .eq('conversation_id', conversation_id)
        )
        if exclude_message_id:
            query = query.neq('id', exclude_message_id)
        result = await self._execute(
            query.order('created_at', desc=True).limit(limit),
            "load conversation history"
        )
        messages = [Message.model_validate(row) for row in result.data or []]
        if not newest_first:
            messages.reverse()
        return messages

    # Sentiment

    async def log_sentiment(
        self,
        user_id: str,
        message_id: str,
        analysis: MessageAnalysis,
        confidence: float = 0.8
    ) -> SentimentLogEntry:
        data = {
            'user_id': user_id,
            'message_id': message_id,
            'sentiment': analysis.sentiment,
            'confidence': confidence,
            'emotions': analysis.emotions,
            'intensity': analysis.urgency_level / 5,
            'created_at': _now()
        }
        result = await self._execute(
            self.supabase.table(self.sentiment_table).insert(data),
            "store sentiment log"
        )
        return SentimentLogEntry.model_validate(self._first(result) or data)

    async def get_sentiment_history(self, user_id: str, limit: int = 30) -> List[SentimentLogEntry]:
        result = await self._execute(
            self.supabase.table(self.sentiment_table)
                .select('*')
                .eq('user_id', user_id)
                .order('created_at', desc=True)
                .limit(limit),
            "load sentiment history"
        )
        return [SentimentLogEntry.model_validate(row) for row in result.data or []]

    # Inbound event dedup

    async def claim_event(self, event_id: str, source: str) -> bool:
        """
        Record an inbound provider event; False if it was already claimed.

        Claims expire after the configured TTL, after which a re-delivered
        event is processed again.
        """
        now = datetime.now(timezone.utc)
        data = {
            'event_id': event_id,
            'source': source,
            'claimed_at': now.isoformat(),
            'expires_at': (now + self.event_ttl).isoformat()
        }
        try:
            await self._run(self.supabase.table(self.events_table).insert(data))
            return True
        except APIError as e:
            if e.code != UNIQUE_VIOLATION:
                logger.error(f"Failed to claim event {event_id}: {e.message}")
                raise PersistenceError(f"Failed to claim event {event_id}: {e.message}")
        except Exception as e:
            logger.error(f"Failed to claim event {event_id}: {str(e)}")
            raise PersistenceError(f"Failed to claim event {event_id}: {str(e)}")

        # Take over the claim only if the previous one has expired
        result = await self._execute(
            self.supabase.table(self.events_table)
                .update({'claimed_at': data['claimed_at'], 'expires_at': data['expires_at']})
                .eq('event_id', event_id)
                .lt('expires_at', now.isoformat()),
            f"re-claim event {event_id}"
        )
        if result.data:
            logger.info(f"Re-claimed expired event {event_id}")
            return True

        logger.info(f"Event {event_id} already processed")
        return False
