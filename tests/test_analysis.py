import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from api.models import MessageAnalysis
from api.services.analysis import AnalysisService, parse_analysis
from lib.error_handler import ProviderError

NEUTRAL = MessageAnalysis(sentiment="neutral", emotions=[], topics=[], urgency_level=1)

def make_service(return_value=None, side_effect=None):
    client = MagicMock()
    client.complete = AsyncMock(return_value=return_value, side_effect=side_effect)
    return AnalysisService(client), client

@pytest.mark.asyncio
async def test_analyze_parses_structured_output():
    service, client = make_service(json.dumps({
        "sentiment": "negative",
        "emotions": ["Lonely", "sad", "lonely"],
        "topics": ["communication"],
        "urgencyLevel": 3
    }))

    analysis = await service.analyze("I feel like we never talk anymore")

    assert analysis == MessageAnalysis(
        sentiment="negative",
        emotions=["lonely", "sad"],
        topics=["communication"],
        urgency_level=3
    )
    kwargs = client.complete.call_args.kwargs
    assert kwargs["json_mode"] is True
    assert kwargs["temperature"] == 0.3
    assert kwargs["turn_history"] == []

@pytest.mark.asyncio
@pytest.mark.parametrize("raw", ["", "not json", "[1, 2]", "null", "\"positive\""])
async def test_malformed_output_maps_to_neutral(raw):
    service, _ = make_service(raw)
    assert await service.analyze("hello") == NEUTRAL

@pytest.mark.asyncio
async def test_provider_error_maps_to_neutral():
    service, _ = make_service(side_effect=ProviderError("boom"))
    assert await service.analyze("hello") == NEUTRAL

@pytest.mark.asyncio
async def test_unexpected_error_never_escapes():
    service, _ = make_service(side_effect=RuntimeError("connection reset"))
    assert await service.analyze("hello") == NEUTRAL

@pytest.mark.asyncio
async def test_empty_message_skips_provider():
    service, client = make_service("{}")
    assert await service.analyze("   ") == NEUTRAL
    client.complete.assert_not_awaited()

def test_parse_analysis_coerces_fields():
    analysis = parse_analysis(json.dumps({
        "sentiment": "ecstatic",
        "emotions": "happy",
        "topics": ["trust", 7, " "],
        "urgencyLevel": 9
    }))
    assert analysis.sentiment == "neutral"
    assert analysis.emotions == []
    assert analysis.topics == ["trust"]
    assert analysis.urgency_level == 5

@pytest.mark.parametrize("value,expected", [("2", 2), (0, 1), (4.6, 5), ("high", 1), (None, 1)])
def test_parse_analysis_clamps_urgency(value, expected):
    assert parse_analysis(json.dumps({"sentiment": "mixed", "urgencyLevel": value})).urgency_level == expected

def test_parse_analysis_is_deterministic():
    raw = "garbage {"
    assert parse_analysis(raw) == parse_analysis(raw) == NEUTRAL
