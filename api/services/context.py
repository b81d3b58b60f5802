import logging
from typing import Optional

from api.models import ConversationContext, MessageAnalysis
from api.services.storage import StorageService

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 20

class ContextService:
    """Builds the prompt context for a turn and folds analysis back into it"""

    def __init__(self, storage_service: StorageService, history_window: int = HISTORY_WINDOW):
        self.storage = storage_service
        self.history_window = history_window

    async def build(
        self,
        user_id: str,
        conversation_id: str,
        exclude_message_id: Optional[str] = None
    ) -> ConversationContext:
        recent_messages = await self.storage.list_history(
            conversation_id,
            limit=self.history_window,
            newest_first=False,
            exclude_message_id=exclude_message_id
        )
        user_context = await self.storage.get_user_context(user_id)
        conversation = await self.storage.get_conversation(conversation_id)

        return ConversationContext(
            recent_messages=recent_messages,
            user_context=user_context,
            conversation_summary=conversation.context_summary if conversation else None,
            topic_tags=conversation.topic_tags if conversation else []
        )

    async def update(self, user_id: str, analysis: MessageAnalysis) -> None:
        """Count this turn's emotions, and its topics when the sentiment is negative"""
        emotions = analysis.emotions
        topics = analysis.topics if analysis.sentiment == "negative" else []
        if not emotions and not topics:
            return

        await self.storage.increment_context_counters(user_id, emotions, topics)
        logger.info(f"Updated context for user {user_id}: emotions={emotions} triggers={topics}")
