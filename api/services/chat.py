import json
import logging
import random
from typing import Dict, List

from api.channels import CONVERSATIONS, SMS
from api.models import ConversationContext, MessageAnalysis, User
from lib.error_handler import ErrorHandler
from lib.openai_client import OpenAIClient

logger = logging.getLogger(__name__)

FALLBACK_RESPONSES = [
    "I hear you. Can you tell me more about what's happening?",
    "That sounds challenging. How are you feeling about the situation?",
    "I understand. What would you like to work on together?",
    "Thanks for sharing that with me. What's your biggest concern right now?",
]

class ChatService:
    def __init__(self, openai_client: OpenAIClient, history_turns: int = 10, transcript_lines: int = 5):
        self.client = openai_client
        self.history_turns = history_turns
        self.transcript_lines = transcript_lines

    def _build_system_prompt(
        self,
        user: User,
        context: ConversationContext,
        analysis: MessageAnalysis,
        channel: str
    ) -> str:
        """Build the system prompt with profile, context and channel guidance"""
        user_info = (
            "User Profile:\n"
            f"- Name: {user.name or 'User'}\n"
            f"- Gender: {user.gender or 'Not specified'}\n"
            f"- Age: {user.age or 'Not specified'}\n"
            f"- Location: {user.location or 'Not specified'}\n"
            f"- Communication Style: {user.preferred_communication_style or 'Not specified'}\n"
        )

        context_info = self._format_user_context(context)

        tone_note = (
            f"The latest message reads as {analysis.sentiment}"
            + (f" ({', '.join(analysis.emotions)})" if analysis.emotions else "")
            + f", urgency {analysis.urgency_level}/5."
        )
        if analysis.urgency_level >= 4:
            tone_note += " Prioritize safety and suggest professional or emergency help where appropriate."

        platform_guidance = (
            "Keep responses under 160 characters when possible. Be concise but warm."
            if channel == SMS
            else "You can be more detailed in your responses, but stay conversational."
        )

        return (
            "You are an AI relationship assistant. Your goal is to help improve relationship "
            "quality through empathetic support and honest guidance.\n\n"
            f"{user_info}{context_info}\n"
            f"{tone_note}\n\n"
            "Your approach:\n"
            "1. Be empathetic and supportive, but also provide honest feedback when needed\n"
            "2. Reference patterns from past conversations when relevant\n"
            "3. Balance validation with constructive challenges\n"
            "4. Focus on actionable advice that improves relationship outcomes\n"
            "5. Ask clarifying questions to better understand situations\n"
            "6. Recognize when professional help might be needed\n\n"
            f"{platform_guidance}\n\n"
            "Remember: You're not just here to make them feel good, but to genuinely help "
            "their relationship improve."
        )

    def _format_user_context(self, context: ConversationContext) -> str:
        """Short serialization of the long-lived behavioral context"""
        lines = []
        user_context = context.user_context
        if user_context:
            if user_context.relationship_history:
                history = json.dumps(user_context.relationship_history, default=str)[:500]
                lines.append(f"Previous Context: {history}")
            if user_context.communication_patterns:
                lines.append(f"Frequent emotions: {_top_labels(user_context.communication_patterns)}")
            if user_context.trigger_points:
                lines.append(f"Sensitive topics: {_top_labels(user_context.trigger_points)}")
        if context.conversation_summary:
            lines.append(f"Conversation so far: {context.conversation_summary[:500]}")
        if context.topic_tags:
            lines.append(f"Conversation topics: {', '.join(context.topic_tags)}")

        if not lines:
            return ""
        return "\n" + "\n".join(lines) + "\n"

    def _build_messages(self, message: str, context: ConversationContext, channel: str):
        """Return (turn history, user turn) for the channel"""
        if channel == CONVERSATIONS:
            transcript = context.transcript(self.transcript_lines)
            if transcript:
                return [], f"Recent conversation context:\n{transcript}\n\nLatest message: {message}"
            return [], message
        return context.turn_history(self.history_turns), message

    async def generate(
        self,
        user: User,
        message: str,
        context: ConversationContext,
        analysis: MessageAnalysis,
        channel: str
    ) -> str:
        """Generate the assistant's reply; falls back to a canned reply on any failure"""
        try:
            system_prompt = self._build_system_prompt(user, context, analysis, channel)
            turn_history, user_turn = self._build_messages(message, context, channel)

            response = await self.client.complete(
                system_prompt=system_prompt,
                turn_history=turn_history,
                user_turn=user_turn,
                max_tokens=150 if channel == SMS else 300,
                temperature=0.7
            )
        except Exception as e:
            ErrorHandler.handle_generation_error(e)
            return get_fallback_response()

        if not response:
            logger.warning("Empty completion, using fallback reply")
            return get_fallback_response()
        return response

def get_fallback_response() -> str:
    return random.choice(FALLBACK_RESPONSES)

def _top_labels(counters: Dict[str, int], limit: int = 5) -> str:
    ranked: List[str] = sorted(counters, key=lambda label: (-counters[label], label))[:limit]
    return ", ".join(f"{label} ({counters[label]})" for label in ranked)
