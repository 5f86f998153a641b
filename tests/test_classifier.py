"""
Tests for the Classification Gateway
====================================

Response parsing, normalization, timeout/retry policy and the Claude provider's
tool loop (against a fake Anthropic client).
"""

import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest
from anthropic import APIConnectionError, APITimeoutError

from respiro.capture import CapturedFrame
from respiro.classifier import (
    ClassificationGateway,
    ClaudeVisionClassifier,
    extract_json,
    normalize_classification,
    parse_classification,
)
from respiro.config import ClassifierConfig
from respiro.errors import (
    ClassificationError,
    ClassificationMalformed,
    ClassificationTimeout,
    ClassificationUnavailable,
)
from respiro.records import EffortLevel, NudgeType, ToolContext, Weather

from conftest import FakeClassifier, make_classification

FRAME = CapturedFrame(jpeg=b"\xff\xd8jpeg\xff\xd9", width=8, height=8)


def text_block(text):
    return SimpleNamespace(type="text", text=text)


def thinking_block(text):
    return SimpleNamespace(type="thinking", thinking=text)


def tool_block(name, args, block_id="toolu_1"):
    return SimpleNamespace(type="tool_use", id=block_id, name=name, input=args)


def response(*blocks, stop_reason="end_turn"):
    return SimpleNamespace(content=list(blocks), stop_reason=stop_reason)


class FakeMessages:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        result = self.responses.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeAnthropic:
    def __init__(self, *responses):
        self.messages = FakeMessages(responses)


ANSWER = json.dumps({
    "weather": "Stormy",
    "confidence": 0.85,
    "signals": ["12 unread", "error dialog"],
    "nudge_type": "breathing",
    "nudge_message": "Try a slow exhale",
    "effort": "high",
})


# =============================================================================
# Parsing Tests
# =============================================================================

class TestParsing:
    """Tests for extracting and parsing the classifier answer."""

    def test_extract_fenced_json(self):
        text = "Here you go:\n```json\n{\"weather\": \"clear\"}\n```"
        assert extract_json(text) == {"weather": "clear"}

    def test_extract_bare_json(self):
        assert extract_json('Result: {"weather": "cloudy", "confidence": 0.5} done') == {
            "weather": "cloudy",
            "confidence": 0.5,
        }

    def test_extract_rejects_prose(self):
        with pytest.raises(ClassificationMalformed):
            extract_json("I could not see the screen")

    def test_extract_rejects_broken_json(self):
        with pytest.raises(ClassificationMalformed):
            extract_json('{"weather": "clear",}')

    def test_parse_normalizes_values(self):
        """Weather is case-insensitive and nudge aliases are normalized."""
        parsed = parse_classification(json.loads(ANSWER), thinking_text="many alerts")
        assert parsed.weather == Weather.STORMY
        assert parsed.nudge.nudge_type == NudgeType.PRACTICE
        assert parsed.signals == ("12 unread", "error dialog")
        assert parsed.rationale == "many alerts"
        assert parsed.effort_hint == EffortLevel.HIGH

    def test_parse_null_nudge(self):
        parsed = parse_classification({"weather": "clear", "confidence": 0.9, "nudge_type": "null"})
        assert parsed.nudge is None

    def test_parse_coerces_practice_id(self):
        """A non-string practice id is kept as text and resolved like any unknown id."""
        parsed = parse_classification({
            "weather": "stormy",
            "confidence": 0.9,
            "nudge_type": "practice",
            "suggested_practice_id": 7,
        })
        assert parsed.nudge.practice_id == "7"
        assert normalize_classification(parsed, 0.6).nudge.practice_id == "box-breathing"

    def test_parse_unknown_weather(self):
        with pytest.raises(ClassificationMalformed):
            parse_classification({"weather": "foggy", "confidence": 0.9})

    def test_parse_bad_confidence(self):
        with pytest.raises(ClassificationMalformed):
            parse_classification({"weather": "clear", "confidence": "very"})


# =============================================================================
# Normalization Tests
# =============================================================================

class TestNormalization:
    """Tests for confidence clamping, practice resolution and the floor."""

    def test_confidence_is_clamped(self):
        result = normalize_classification(make_classification(confidence=1.7), 0.6)
        assert result.confidence == 1.0

    def test_below_floor_drops_nudge_keeps_classification(self):
        """Low confidence removes the nudge candidate only."""
        result = normalize_classification(make_classification(confidence=0.4), 0.6)
        assert result.nudge is None
        assert result.weather == Weather.STORMY
        assert result.confidence == 0.4

    def test_unknown_practice_gets_fallback(self):
        result = normalize_classification(make_classification(practice_id="levitation"), 0.6)
        assert result.nudge.practice_id == "box-breathing"

    def test_unknown_practice_prefers_ranked_practice(self):
        """Without a valid suggestion, the user's best ranked practice is used."""
        result = normalize_classification(
            make_classification(practice_id=None),
            0.6,
            preferred_practices=("no-such-practice", "extended-exhale"),
        )
        assert result.nudge.practice_id == "extended-exhale"

    def test_known_practice_is_kept(self):
        result = normalize_classification(
            make_classification(practice_id="Body-Scan"),
            0.6,
            preferred_practices=("extended-exhale",),
        )
        assert result.nudge.practice_id == "body-scan"

    def test_empty_message_gets_default(self):
        result = normalize_classification(make_classification(message=""), 0.6)
        assert "Box Breathing" in result.nudge.message


# =============================================================================
# Gateway Tests
# =============================================================================

class SlowClassifier:
    def __init__(self):
        self.calls = 0

    async def classify(self, frame, context, effort):
        self.calls += 1
        await asyncio.sleep(1)


class TestGateway:
    """Tests for the timeout and single-retry policy."""

    @pytest.mark.asyncio
    async def test_success_is_normalized(self):
        gateway = ClassificationGateway(FakeClassifier(make_classification(confidence=0.3)), retry_delay=0)
        result = await gateway.classify(FRAME, ToolContext())
        assert result.nudge is None

    @pytest.mark.asyncio
    async def test_retries_once_then_succeeds(self):
        classifier = FakeClassifier(ClassificationUnavailable("503"), make_classification())
        gateway = ClassificationGateway(classifier, retry_delay=0)

        result = await gateway.classify(FRAME, ToolContext(), EffortLevel.HIGH)

        assert result.weather == Weather.STORMY
        assert len(classifier.calls) == 2
        assert classifier.calls[1][1] == EffortLevel.HIGH

    @pytest.mark.asyncio
    async def test_gives_up_after_one_retry(self):
        classifier = FakeClassifier(ClassificationUnavailable("503"))
        gateway = ClassificationGateway(classifier, retry_delay=0)

        with pytest.raises(ClassificationUnavailable):
            await gateway.classify(FRAME, ToolContext())
        assert len(classifier.calls) == 2

    @pytest.mark.asyncio
    async def test_timeout(self):
        classifier = SlowClassifier()
        gateway = ClassificationGateway(classifier, timeout=0.01, retry_delay=0)

        with pytest.raises(ClassificationTimeout):
            await gateway.classify(FRAME, ToolContext())
        assert classifier.calls == 2

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_wrapped(self):
        gateway = ClassificationGateway(FakeClassifier(KeyError("weather")), retry_delay=0)
        with pytest.raises(ClassificationMalformed):
            await gateway.classify(FRAME, ToolContext())

        gateway = ClassificationGateway(FakeClassifier(ConnectionResetError("reset")), retry_delay=0)
        with pytest.raises(ClassificationUnavailable):
            await gateway.classify(FRAME, ToolContext())

    def test_from_config(self):
        config = ClassifierConfig(timeout=12, retry_delay=1, confidence_floor=0.7)
        gateway = ClassificationGateway.from_config(FakeClassifier(), config)
        assert (gateway.timeout, gateway.retry_delay, gateway.confidence_floor) == (12, 1, 0.7)


# =============================================================================
# Claude Provider Tests
# =============================================================================

class TestClaudeVisionClassifier:
    """Tests for the Anthropic-backed provider."""

    @pytest.mark.asyncio
    async def test_single_round_answer(self):
        client = FakeAnthropic(response(thinking_block("lots of red"), text_block(ANSWER)))
        classifier = ClaudeVisionClassifier(ClassifierConfig(), client=client)

        result = await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)

        assert result.weather == Weather.STORMY
        assert result.rationale == "lots of red"
        request = client.messages.requests[0]
        assert request["thinking"] == {"type": "enabled", "budget_tokens": 1024}
        assert request["max_tokens"] == 2048
        image = request["messages"][0]["content"][0]
        assert image["type"] == "image"
        assert image["source"]["media_type"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_effort_sizes_thinking_budget(self):
        client = FakeAnthropic(response(text_block(ANSWER)))
        classifier = ClaudeVisionClassifier(ClassifierConfig(), client=client)
        await classifier.classify(FRAME, ToolContext(), EffortLevel.MAX)
        assert client.messages.requests[0]["thinking"]["budget_tokens"] == 10240
        assert client.messages.requests[0]["max_tokens"] == 10240 + 4096

    @pytest.mark.asyncio
    async def test_tool_loop_uses_suggested_practice(self):
        """A suggest_practice call fills in the practice id of the answer."""
        client = FakeAnthropic(
            response(
                tool_block("suggest_practice", {"practice_id": "physiological-sigh", "reason": "fast"}),
                stop_reason="tool_use",
            ),
            response(text_block(ANSWER)),
        )
        classifier = ClaudeVisionClassifier(ClassifierConfig(), client=client)

        result = await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)

        assert result.nudge.practice_id == "physiological-sigh"
        messages = client.messages.requests[1]["messages"]
        tool_result = messages[-1]["content"][0]
        assert tool_result["type"] == "tool_result"
        assert tool_result["tool_use_id"] == "toolu_1"

    @pytest.mark.asyncio
    async def test_last_round_disables_tools(self):
        looping = response(tool_block("get_practice_catalog", {}), stop_reason="tool_use")
        client = FakeAnthropic(looping, looping, response(text_block(ANSWER)))
        classifier = ClaudeVisionClassifier(ClassifierConfig(max_tool_rounds=3), client=client)

        await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)

        choices = [r["tool_choice"]["type"] for r in client.messages.requests]
        assert choices == ["auto", "auto", "none"]

    def test_history_tool_filters_by_days(self, clock):
        context = ToolContext(weather_history=(
            {"timestamp": "2026-03-01T10:00", "weather": "stormy", "confidence": 0.9, "nudged": True},
            {"timestamp": "2026-03-09T10:00", "weather": "cloudy", "confidence": 0.7, "nudged": False},
        ))
        classifier = ClaudeVisionClassifier(ClassifierConfig(), client=FakeAnthropic(), clock=clock)
        result = json.loads(classifier._run_tool("get_user_history", {"days": 3}, context, None))
        assert [e["weather"] for e in result["weather"]] == ["cloudy"]

    @pytest.mark.asyncio
    async def test_daily_call_ceiling(self):
        client = FakeAnthropic(response(text_block(ANSWER)), response(text_block(ANSWER)))
        classifier = ClaudeVisionClassifier(ClassifierConfig(max_daily_calls=1), client=client)

        await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)
        with pytest.raises(ClassificationUnavailable):
            await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)
        assert classifier.calls_today == 1

    @pytest.mark.asyncio
    async def test_sdk_errors_are_translated(self):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client = FakeAnthropic(APITimeoutError(request=request), APIConnectionError(request=request))
        classifier = ClaudeVisionClassifier(ClassifierConfig(), client=client)

        with pytest.raises(ClassificationTimeout):
            await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)
        with pytest.raises(ClassificationUnavailable):
            await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)

    @pytest.mark.asyncio
    async def test_prose_answer_is_malformed(self):
        client = FakeAnthropic(response(text_block("It looks calm.")))
        classifier = ClaudeVisionClassifier(ClassifierConfig(), client=client)
        with pytest.raises(ClassificationError):
            await classifier.classify(FRAME, ToolContext(), EffortLevel.LOW)
