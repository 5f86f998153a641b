"""
Classification Gateway
======================

Wraps the external vision classifier behind one contract:

    classify(frame, tool_context, effort) -> Classification

The gateway owns the policy around the call:
- a hard timeout per attempt
- exactly one retry per cycle, then ClassificationError
- normalization (confidence clamped, nudge types and practice ids resolved)
- a confidence floor below which the nudge candidate is dropped
  (the classification itself is still returned so the entry gets logged)

``ClaudeVisionClassifier`` is the default provider: the Anthropic Messages API
with a JPEG image block, extended thinking sized by effort, and a short
tool-use loop (practice catalog, user history, suggest practice).
"""

import asyncio
import base64
import json
import logging
import math
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Sequence

from anthropic import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncAnthropic,
)

from respiro.capture import CapturedFrame
from respiro.config import ClassifierConfig
from respiro.errors import (
    ClassificationError,
    ClassificationMalformed,
    ClassificationTimeout,
    ClassificationUnavailable,
)
from respiro.practices import (
    FALLBACK_PRACTICE_ID,
    catalog_json,
    choose_practice_id,
    get_practice,
    resolve_practice_id,
)
from respiro.prompts import TOOL_DEFINITIONS, build_system_prompt, build_user_prompt
from respiro.records import Classification, EffortLevel, Nudge, NudgeType, ToolContext, Weather

logger = logging.getLogger(__name__)


class VisionClassifier(Protocol):
    """Vision classification provider."""

    async def classify(self, frame: CapturedFrame, context: ToolContext, effort: EffortLevel) -> Classification:
        ...


# =============================================================================
# Response parsing
# =============================================================================

def extract_json(text: str) -> dict:
    """
    Pull the JSON object out of a model answer.

    Handles fenced ```json blocks and bare objects surrounded by prose.
    Raises ClassificationMalformed.
    """
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.DOTALL)
    if fenced:
        candidate = fenced.group(1)
    else:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ClassificationMalformed("No JSON object in classifier answer", raw=text)
        candidate = text[start:end + 1]
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ClassificationMalformed(f"Invalid JSON from classifier: {e}", raw=text) from e
    if not isinstance(data, dict):
        raise ClassificationMalformed("Classifier JSON is not an object", raw=text)
    return data


def parse_classification(
    data: dict,
    thinking_text: str = "",
    suggested_practice_id: Optional[str] = None,
) -> Classification:
    """Build a Classification from the classifier's JSON keys."""
    try:
        weather = Weather.parse(data.get("weather"))
    except ValueError as e:
        raise ClassificationMalformed(f"Unknown weather: {data.get('weather')!r}") from e

    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError) as e:
        raise ClassificationMalformed(f"Bad confidence: {data.get('confidence')!r}") from e

    signals = data.get("signals") or []
    if isinstance(signals, str):
        signals = [signals]

    nudge = None
    practice_id = data.get("suggested_practice_id") or suggested_practice_id
    if practice_id is not None:
        practice_id = str(practice_id)
    nudge_type = NudgeType.parse(data.get("nudge_type"))
    if nudge_type is not None:
        nudge = Nudge(
            nudge_type=nudge_type,
            message=str(data.get("nudge_message") or ""),
            practice_id=practice_id,
        )

    effort_hint = None
    if data.get("effort"):
        try:
            effort_hint = EffortLevel(str(data["effort"]).strip().lower())
        except ValueError:
            logger.debug("Ignoring unknown effort hint %r", data["effort"])

    rationale = thinking_text or str(data.get("reasoning") or "")
    return Classification(
        weather=weather,
        confidence=confidence,
        signals=tuple(str(s) for s in signals),
        nudge=nudge,
        rationale=rationale.strip(),
        effort_hint=effort_hint,
    )


def normalize_classification(
    classification: Classification,
    confidence_floor: float,
    preferred_practices: Sequence[str] = (),
) -> Classification:
    """
    Clamp confidence, resolve practice ids, and drop the nudge candidate when
    confidence is below the floor.

    A practice nudge without a known practice id gets the user's best ranked
    practice, or the catalog fallback when nothing is ranked yet.
    """
    confidence = classification.confidence
    if not math.isfinite(confidence):
        raise ClassificationMalformed(f"Non-finite confidence: {confidence!r}")
    confidence = min(max(confidence, 0.0), 1.0)

    nudge = classification.nudge
    if nudge is not None and nudge.nudge_type == NudgeType.PRACTICE:
        nudge = replace(nudge, practice_id=choose_practice_id(nudge.practice_id, preferred_practices))
    if nudge is not None and not nudge.message:
        nudge = replace(nudge, message=_default_message(nudge))

    normalized = replace(classification, confidence=confidence, nudge=nudge)
    if normalized.nudge is not None and confidence < confidence_floor:
        return normalized.without_nudge()
    return normalized


def _default_message(nudge: Nudge) -> str:
    if nudge.nudge_type == NudgeType.PRACTICE:
        practice = get_practice(nudge.practice_id) or get_practice(FALLBACK_PRACTICE_ID)
        return f"A minute of {practice.title} might help right now."
    if nudge.nudge_type == NudgeType.ENCOURAGEMENT:
        return "You're handling a lot. Keep going, gently."
    return "Nice, steady focus."


# =============================================================================
# Claude provider
# =============================================================================

@dataclass
class _ToolState:
    suggested_practice_id: Optional[str] = None
    suggestion_reason: Optional[str] = None


class ClaudeVisionClassifier:
    """
    Vision classifier backed by the Anthropic Messages API.

    Reads ANTHROPIC_API_KEY from the environment unless a client is passed.
    """

    def __init__(
        self,
        config: Optional[ClassifierConfig] = None,
        client: Optional[AsyncAnthropic] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ClassifierConfig()
        self.client = client or AsyncAnthropic()
        self.clock = clock
        self._calls_day: Optional[date] = None
        self._calls_today = 0

    @property
    def calls_today(self) -> int:
        return self._calls_today

    def _reserve_call(self) -> None:
        today = self.clock().date()
        if self._calls_day != today:
            self._calls_day = today
            self._calls_today = 0
        if self._calls_today >= self.config.max_daily_calls:
            raise ClassificationUnavailable(f"Daily classifier limit reached ({self.config.max_daily_calls})")
        self._calls_today += 1

    async def classify(self, frame: CapturedFrame, context: ToolContext, effort: EffortLevel) -> Classification:
        state = _ToolState()
        messages: list[dict[str, Any]] = [{
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": frame.media_type,
                        "data": base64.b64encode(frame.jpeg).decode("ascii"),
                    },
                },
                {"type": "text", "text": build_user_prompt(context, self.clock())},
            ],
        }]
        thinking_parts: list[str] = []

        for round_number in range(1, self.config.max_tool_rounds + 1):
            last_round = round_number == self.config.max_tool_rounds
            response = await self._create(messages, effort, allow_tools=not last_round)

            text_parts = []
            tool_uses = []
            for block in response.content:
                if block.type == "thinking":
                    thinking_parts.append(block.thinking)
                elif block.type == "text":
                    text_parts.append(block.text)
                elif block.type == "tool_use":
                    tool_uses.append(block)

            if response.stop_reason != "tool_use" or not tool_uses:
                data = extract_json("\n".join(text_parts))
                return parse_classification(
                    data,
                    thinking_text="\n".join(thinking_parts),
                    suggested_practice_id=state.suggested_practice_id,
                )

            messages.append({"role": "assistant", "content": response.content})
            messages.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": self._run_tool(block.name, block.input or {}, context, state),
                    }
                    for block in tool_uses
                ],
            })

        raise ClassificationMalformed("Classifier kept calling tools without answering")

    async def _create(self, messages: list, effort: EffortLevel, allow_tools: bool):
        self._reserve_call()
        budget = effort.thinking_budget
        try:
            return await self.client.messages.create(
                model=self.config.model,
                max_tokens=budget + effort.max_response_tokens,
                system=build_system_prompt(with_tools=True),
                messages=messages,
                tools=TOOL_DEFINITIONS,
                tool_choice={"type": "auto"} if allow_tools else {"type": "none"},
                thinking={"type": "enabled", "budget_tokens": budget},
            )
        except APITimeoutError as e:
            raise ClassificationTimeout(self.config.timeout) from e
        except (APIConnectionError, APIStatusError) as e:
            raise ClassificationUnavailable(f"Classifier request failed: {e}") from e

    def _run_tool(self, name: str, args: dict, context: ToolContext, state: _ToolState) -> str:
        """Execute one classifier tool call and return its result text."""
        if name == "get_practice_catalog":
            return catalog_json()

        if name == "get_user_history":
            try:
                days = int(args.get("days", 7))
            except (TypeError, ValueError):
                days = 7
            cutoff = (self.clock() - timedelta(days=max(1, min(days, 30)))).isoformat()
            return json.dumps({
                "weather": [e for e in context.weather_history if e.get("timestamp", "") >= cutoff],
                "practices": [p for p in context.practice_history if p.get("started_at", "") >= cutoff],
                "preferred_practices": list(context.preferred_practices),
            })

        if name == "suggest_practice":
            practice_id = resolve_practice_id(args.get("practice_id"))
            state.suggested_practice_id = practice_id
            state.suggestion_reason = args.get("reason")
            return json.dumps({"accepted": True, "practice_id": practice_id})

        logger.debug("Classifier called unknown tool %s", name)
        return json.dumps({"error": f"unknown tool: {name}"})


# =============================================================================
# Gateway
# =============================================================================

class ClassificationGateway:
    """
    Timeout, retry and normalization around a VisionClassifier.

    Raises ClassificationError (ClassificationTimeout, ClassificationUnavailable
    or ClassificationMalformed) once the single retry is used up.
    """

    def __init__(
        self,
        classifier: VisionClassifier,
        timeout: float = 60.0,
        retry_delay: float = 5.0,
        confidence_floor: float = 0.6,
    ):
        self.classifier = classifier
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.confidence_floor = confidence_floor

    @classmethod
    def from_config(cls, classifier: VisionClassifier, config: ClassifierConfig) -> "ClassificationGateway":
        return cls(
            classifier,
            timeout=config.timeout,
            retry_delay=config.retry_delay,
            confidence_floor=config.confidence_floor,
        )

    async def classify(
        self,
        frame: CapturedFrame,
        context: ToolContext,
        effort: EffortLevel = EffortLevel.LOW,
    ) -> Classification:
        try:
            return await self._attempt(frame, context, effort)
        except ClassificationError as e:
            logger.info("Classification failed (%s), retrying once in %.0fs", e, self.retry_delay)

        await asyncio.sleep(self.retry_delay)
        return await self._attempt(frame, context, effort)

    async def _attempt(self, frame: CapturedFrame, context: ToolContext, effort: EffortLevel) -> Classification:
        try:
            raw = await asyncio.wait_for(
                self.classifier.classify(frame, context, effort),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ClassificationTimeout(self.timeout) from e
        except ClassificationError:
            raise
        except OSError as e:
            raise ClassificationUnavailable(f"Classifier unreachable: {e}") from e
        except (ValueError, TypeError, KeyError) as e:
            raise ClassificationMalformed(f"Classifier failed: {e}") from e
        return normalize_classification(raw, self.confidence_floor, context.preferred_practices)
