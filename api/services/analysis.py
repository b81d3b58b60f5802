import json
import logging
from typing import Any, List

from api.models import SENTIMENTS, MessageAnalysis
from lib.error_handler import ErrorHandler
from lib.openai_client import OpenAIClient

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = (
    "Analyze this relationship-related message and return a JSON object with:\n"
    "- sentiment: \"positive\", \"negative\", \"neutral\", or \"mixed\"\n"
    "- emotions: array of detected emotions (happy, sad, angry, frustrated, anxious, excited, confused, hopeful, etc.)\n"
    "- topics: array of relationship topics (communication, trust, intimacy, conflict, support, future, family, etc.)\n"
    "- urgencyLevel: number 1-5 (1=casual chat, 5=crisis/urgent help needed)\n\n"
    "Keep your analysis brief and accurate."
)

class AnalysisService:
    def __init__(self, openai_client: OpenAIClient):
        self.client = openai_client

    async def analyze(self, text: str) -> MessageAnalysis:
        """Return sentiment, emotions, topics and urgency for a single message.

        Never raises: any provider failure or unusable output yields the
        neutral analysis so the pipeline can continue.
        """
        if not text or not text.strip():
            return MessageAnalysis.neutral()

        try:
            raw = await self.client.complete(
                system_prompt=ANALYSIS_PROMPT,
                turn_history=[],
                user_turn=text,
                max_tokens=200,
                temperature=0.3,
                json_mode=True
            )
        except Exception as e:
            ErrorHandler.handle_analysis_error(e)
            return MessageAnalysis.neutral()

        analysis = parse_analysis(raw)
        logger.info(
            f"Analysis: sentiment={analysis.sentiment} emotions={analysis.emotions} "
            f"topics={analysis.topics} urgency={analysis.urgency_level}"
        )
        return analysis

def parse_analysis(raw: str) -> MessageAnalysis:
    try:
        data = json.loads(raw or "")
    except (TypeError, ValueError):
        logger.warning(f"Unparseable analysis output: {str(raw)[:80]}")
        return MessageAnalysis.neutral()

    if not isinstance(data, dict):
        return MessageAnalysis.neutral()

    sentiment = str(data.get("sentiment", "")).strip().lower()
    return MessageAnalysis(
        sentiment=sentiment if sentiment in SENTIMENTS else "neutral",
        emotions=_labels(data.get("emotions")),
        topics=_labels(data.get("topics")),
        urgency_level=_urgency(data.get("urgencyLevel", data.get("urgency_level")))
    )

def _labels(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    labels = []
    for item in value:
        if not isinstance(item, str):
            continue
        label = item.strip().lower()
        if label and label not in labels:
            labels.append(label)
    return labels

def _urgency(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    try:
        level = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return 1
    return min(max(level, 1), 5)
