"""
Core Records
============

Value types shared by every part of the nudge-decision core: the weather scale,
effort levels, nudge and dismissal kinds, and the records that flow through a
monitoring cycle (behavior samples, classifications, stress entries, practice
sessions, dismissals and silence decisions).

Timestamps are naive local datetimes. Active hours and the hour-of-day buckets
used for learned suppression are both defined in the user's wall-clock time.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Sequence


# =============================================================================
# Enumerations
# =============================================================================

class Weather(Enum):
    """Inner weather: ordinal stress classification."""
    CLEAR = "clear"       # relaxed, focused
    CLOUDY = "cloudy"     # mild tension
    STORMY = "stormy"     # high stress

    @property
    def ordinal(self) -> int:
        return _WEATHER_ORDINALS[self]

    @classmethod
    def parse(cls, value: Any) -> "Weather":
        """Parse a weather name case-insensitively. Raises ValueError if unknown."""
        if isinstance(value, Weather):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Unknown weather: {value!r}")
        return cls(value.strip().lower())


_WEATHER_ORDINALS = {Weather.CLEAR: 0, Weather.CLOUDY: 1, Weather.STORMY: 2}


class EffortLevel(Enum):
    """Estimated cost of interrupting the user, low <= high <= max."""
    LOW = "low"
    HIGH = "high"
    MAX = "max"

    @property
    def rank(self) -> int:
        return _EFFORT_RANKS[self]

    @property
    def thinking_budget(self) -> int:
        """Extended-thinking token budget for a classifier request at this effort."""
        return _EFFORT_BUDGETS[self][0]

    @property
    def max_response_tokens(self) -> int:
        """Visible response token budget for a classifier request at this effort."""
        return _EFFORT_BUDGETS[self][1]

    def __lt__(self, other: "EffortLevel") -> bool:
        if not isinstance(other, EffortLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: "EffortLevel") -> bool:
        if not isinstance(other, EffortLevel):
            return NotImplemented
        return self.rank <= other.rank

    @classmethod
    def determine(cls, recent_weathers: Sequence[Weather], dismissal_count: int) -> "EffortLevel":
        """
        Pick the request effort for the next classification.

        A stormy reading among the recent ones, or any recent dismissal, means
        the next call deserves more thinking.
        """
        if any(w == Weather.STORMY for w in recent_weathers) or dismissal_count > 0:
            return cls.HIGH
        return cls.LOW


_EFFORT_RANKS = {EffortLevel.LOW: 0, EffortLevel.HIGH: 1, EffortLevel.MAX: 2}
_EFFORT_BUDGETS = {
    EffortLevel.LOW: (1024, 1024),
    EffortLevel.HIGH: (4096, 2048),
    EffortLevel.MAX: (10240, 4096),
}


class NudgeType(Enum):
    """Kinds of nudges the classifier may suggest."""
    PRACTICE = "practice"
    ENCOURAGEMENT = "encouragement"
    ACKNOWLEDGMENT = "acknowledgment"

    @classmethod
    def parse(cls, value: Any) -> Optional["NudgeType"]:
        """Normalize a classifier nudge type. Returns None for "no nudge"."""
        if value is None or isinstance(value, NudgeType):
            return value
        text = str(value).strip().lower().replace("-", "_")
        if text in ("", "none", "null"):
            return None
        if text in _NUDGE_ALIASES:
            return _NUDGE_ALIASES[text]
        try:
            return cls(text)
        except ValueError:
            return None


_NUDGE_ALIASES = {
    "breathing": NudgeType.PRACTICE,
    "exercise": NudgeType.PRACTICE,
    "practice_suggestion": NudgeType.PRACTICE,
    "mindfulness": NudgeType.PRACTICE,
    "acknowledgement": NudgeType.ACKNOWLEDGMENT,
    "encourage": NudgeType.ENCOURAGEMENT,
}


class DismissalType(Enum):
    """How the user turned a nudge down."""
    IM_FINE = "im_fine"                  # explicit "I'm fine"
    LATER = "later"                      # postponed
    AUTO_DISMISSED = "auto_dismissed"    # ignored until it timed out


# =============================================================================
# Behavior
# =============================================================================

@dataclass(frozen=True)
class BehaviorMetrics:
    """Snapshot of behavioral load for one cycle."""
    context_switches_per_minute: float = 0.0
    session_duration: float = 0.0                      # seconds since the current session began
    application_focus: dict = field(default_factory=dict)  # app -> fraction of recent time
    notification_accumulation: int = 0
    recent_app_sequence: tuple = ()

    @property
    def max_focus(self) -> float:
        return max(self.application_focus.values(), default=0.0)

    @property
    def top_app(self) -> Optional[str]:
        if not self.application_focus:
            return None
        return max(self.application_focus.items(), key=lambda kv: (kv[1], kv[0]))[0]

    def to_dict(self) -> dict:
        return {
            "context_switches_per_minute": self.context_switches_per_minute,
            "session_duration": self.session_duration,
            "application_focus": dict(self.application_focus),
            "notification_accumulation": self.notification_accumulation,
            "recent_app_sequence": list(self.recent_app_sequence),
        }


@dataclass(frozen=True)
class SystemContext:
    """OS context captured alongside the behavior metrics."""
    active_app: Optional[str] = None
    window_count: int = 0
    idle_seconds: float = 0.0
    is_on_video_call: bool = False
    is_screen_sharing: bool = False


@dataclass(frozen=True)
class BehaviorSample:
    """What the behavior sampler hands the engine each cycle."""
    metrics: BehaviorMetrics
    system: SystemContext = field(default_factory=SystemContext)
    taken_at: Optional[datetime] = None

    @property
    def active_app(self) -> Optional[str]:
        return self.system.active_app or self.metrics.top_app


# =============================================================================
# Classification
# =============================================================================

@dataclass(frozen=True)
class Nudge:
    """A user-facing suggestion."""
    nudge_type: NudgeType
    message: str
    practice_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "nudge_type": self.nudge_type.value,
            "message": self.message,
            "practice_id": self.practice_id,
        }


@dataclass(frozen=True)
class Classification:
    """Normalized answer of the vision classifier."""
    weather: Weather
    confidence: float
    signals: tuple = ()
    nudge: Optional[Nudge] = None
    rationale: str = ""
    effort_hint: Optional[EffortLevel] = None

    def without_nudge(self) -> "Classification":
        return Classification(
            weather=self.weather,
            confidence=self.confidence,
            signals=self.signals,
            nudge=None,
            rationale=self.rationale,
            effort_hint=self.effort_hint,
        )


@dataclass(frozen=True)
class ToolContext:
    """
    Bundle handed to the classifier with every request.

    History is kept as plain dicts so it serializes straight into the prompt
    and into tool results.
    """
    practice_history: tuple = ()       # last sessions, oldest first
    weather_history: tuple = ()        # last stress entries, oldest first
    preferred_practices: tuple = ()    # ranked practice ids
    learned_patterns: str = ""
    practice_ranking: str = ""         # JSON scores of the top practices

    MAX_WEATHER_HISTORY = 20
    MAX_PRACTICE_HISTORY = 10

    def with_weather(self, entry: "StressEntry") -> "ToolContext":
        """Return a copy with one more weather entry appended (bounded)."""
        history = (self.weather_history + (entry.to_history_dict(),))[-self.MAX_WEATHER_HISTORY:]
        return replace(self, weather_history=history)


# =============================================================================
# Persisted Records
# =============================================================================

@dataclass
class StressEntry:
    """One classification result, written once per classified cycle."""
    timestamp: datetime
    weather: Weather
    confidence: float
    signals: list = field(default_factory=list)
    nudge_type: Optional[NudgeType] = None
    nudge_message: Optional[str] = None
    active_app: Optional[str] = None
    deviation: float = 0.0
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "weather": self.weather.value,
            "confidence": self.confidence,
            "signals": list(self.signals),
            "nudge_type": self.nudge_type.value if self.nudge_type else None,
            "nudge_message": self.nudge_message,
            "active_app": self.active_app,
            "deviation": self.deviation,
        }

    def to_history_dict(self) -> dict:
        """Compact form used in the classifier's weather history."""
        return {
            "timestamp": self.timestamp.isoformat(timespec="minutes"),
            "weather": self.weather.value,
            "confidence": round(self.confidence, 2),
            "nudged": self.nudge_type is not None,
        }


@dataclass
class PracticeSession:
    """One attempted coping practice."""
    practice_id: str
    started_at: datetime
    weather_before: Weather
    weather_after: Optional[Weather] = None
    was_completed: bool = False
    what_helped: Optional[str] = None
    ended_at: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_closed(self) -> bool:
        return self.weather_after is not None or self.ended_at is not None

    @property
    def improvement(self) -> Optional[int]:
        """Ordinal weather improvement (stormy -> clear is 2), None if unknown."""
        if self.weather_after is None:
            return None
        return self.weather_before.ordinal - self.weather_after.ordinal

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "practice_id": self.practice_id,
            "started_at": self.started_at.isoformat(),
            "weather_before": self.weather_before.value,
            "weather_after": self.weather_after.value if self.weather_after else None,
            "was_completed": self.was_completed,
            "what_helped": self.what_helped,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }


@dataclass
class DismissalEvent:
    """A nudge the user declined or ignored."""
    timestamp: datetime
    detected_weather: Weather
    dismissal_type: DismissalType
    active_app: Optional[str] = None
    deviation: float = 0.0
    suggested_practice_id: Optional[str] = None
    signals: list = field(default_factory=list)
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "detected_weather": self.detected_weather.value,
            "dismissal_type": self.dismissal_type.value,
            "active_app": self.active_app,
            "deviation": self.deviation,
            "suggested_practice_id": self.suggested_practice_id,
            "signals": list(self.signals),
        }


@dataclass(frozen=True)
class SilenceDecision:
    """A cycle where the engine chose not to interrupt. Never persisted."""
    rationale: str
    effort_level: EffortLevel
    timestamp: datetime
    rule: str = ""
    detected_weather: Optional[Weather] = None
    signals: tuple = ()
    thinking_text: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rationale": self.rationale,
            "effort_level": self.effort_level.value,
            "timestamp": self.timestamp.isoformat(),
            "rule": self.rule,
            "detected_weather": self.detected_weather.value if self.detected_weather else None,
            "signals": list(self.signals),
        }


# =============================================================================
# Preferences
# =============================================================================

@dataclass(frozen=True)
class ActiveHours:
    """Daily window, in local hours, during which nudges are allowed."""
    start_hour: int
    end_hour: int

    def __post_init__(self):
        for hour in (self.start_hour, self.end_hour):
            if not 0 <= hour <= 24:
                raise ValueError(f"Active hour out of range: {hour}")

    def contains(self, moment: datetime) -> bool:
        """True when ``moment`` falls inside the window. Windows may wrap midnight."""
        hour = moment.hour
        if self.start_hour == self.end_hour:
            return True
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    @classmethod
    def parse(cls, text: str) -> "ActiveHours":
        """Parse ``"9-18"``."""
        start, _, end = text.partition("-")
        return cls(int(start.strip()), int(end.strip()))

    def __str__(self) -> str:
        return f"{self.start_hour:02d}:00-{self.end_hour:02d}:00"


@dataclass
class UserPreferences:
    """Single-row preferences record."""
    active_hours: Optional[ActiveHours] = field(default_factory=lambda: ActiveHours(9, 18))
    screenshot_interval: int = 300
    preferred_practice_ids: list = field(default_factory=list)
    learned_patterns: str = ""
    baseline: Optional[dict] = None
