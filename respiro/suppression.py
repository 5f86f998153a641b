"""
Suppression Model
=================

Decides, for a candidate nudge, whether to interrupt the user now (Act) or to
stay quiet (Suppress), and estimates the effort level of the interruption.

Rules are evaluated in order and the first match wins:

1. outside the active-hours window             -> Suppress, effort low
   (1b) on a video call / sharing the screen   -> Suppress, effort low
   (1c) stormy classification while behavior is
        calm (severity below the floor)        -> Suppress, effort low
2. inside a cooldown, or a daily cap reached    -> Suppress, effort low
3. learned: the user usually dismisses nudges
   in this (app, hour, weather) context         -> Suppress, effort from the
                                                   deviation above the bucket's
                                                   typical deviation
4. otherwise                                    -> Act, effort from deviation

Explicit quiet windows (1, 2) always dominate learned behavior (3).

Behavioral severity (0-1) scores the sampled metrics: context-switch rate,
deviation from baseline, session length and scattered focus. When the
classifier offers no nudge but severity is high, ``override_candidate`` forces
a practice nudge that still goes through every rule above.

Every Suppress carries a SilenceDecision whose rationale combines the rule
text with the classifier's own rationale, so the UI can explain why we kept
quiet. ``decide`` records an Act in the interruption ledger, so two candidates
inside the cooldown window never both act.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Sequence, Union

from respiro.config import CooldownConfig
from respiro.patterns import BucketKey, LearnedPatterns
from respiro.practices import choose_practice_id
from respiro.records import (
    ActiveHours,
    BehaviorMetrics,
    BehaviorSample,
    Classification,
    DismissalEvent,
    EffortLevel,
    Nudge,
    NudgeType,
    PracticeSession,
    SilenceDecision,
    StressEntry,
    Weather,
)

# Rule identifiers, in evaluation order
RULE_OUTSIDE_ACTIVE_HOURS = "outside_active_hours"
RULE_IN_CALL = "in_call"
RULE_BEHAVIORAL_CONTRADICTION = "behavioral_contradiction"
RULE_RECENTLY_INTERRUPTED = "recently_interrupted"
RULE_DAILY_LIMIT = "daily_limit"
RULE_LEARNED_DISMISSALS = "learned_dismissals"
RULE_ACT = "act"
RULE_BEHAVIORAL_OVERRIDE = "behavioral_override"

RATIONALE_OUTSIDE_ACTIVE_HOURS = "outside active hours"
RATIONALE_IN_CALL = "in a call or sharing the screen"
RATIONALE_BEHAVIORAL_CONTRADICTION = "stormy reading but behavior looks calm"
RATIONALE_RECENTLY_INTERRUPTED = "recently interrupted"
RATIONALE_DAILY_LIMIT = "daily nudge limit reached"

MAX_CLASSIFIER_RATIONALE = 200

NO_BEHAVIOR_SEVERITY = 0.5
OVERRIDE_MESSAGE = "Your activity patterns suggest elevated stress. A quick practice might help."


def behavioral_severity(metrics: Optional[BehaviorMetrics], deviation: float = 0.0) -> float:
    """Score behavioral load from 0 (calm) to 1 (overloaded)."""
    if metrics is None:
        return NO_BEHAVIOR_SEVERITY

    score = 0.0
    switches = metrics.context_switches_per_minute
    if switches > 8:
        score += 0.4
    elif switches > 5:
        score += 0.3
    elif switches > 3:
        score += 0.15

    if deviation > 2.5:
        score += 0.4
    elif deviation > 1.5:
        score += 0.3
    elif deviation > 0.5:
        score += 0.15

    if metrics.session_duration > 3 * 3600:
        score += 0.1
    elif metrics.session_duration > 2 * 3600:
        score += 0.05

    # Scattered attention: no app holds 30% of recent time
    if metrics.application_focus and metrics.max_focus < 0.3:
        score += 0.1
    return min(score, 1.0)


@dataclass(frozen=True)
class CandidateNudge:
    """A nudge the classifier wants to show, with the context it was made in."""
    nudge: Nudge
    weather: Weather
    active_app: Optional[str] = None
    rationale: str = ""
    signals: tuple = ()
    on_call: bool = False
    screen_sharing: bool = False
    severity: float = NO_BEHAVIOR_SEVERITY
    forced: bool = False  # raised by behavioral override, not the classifier

    @classmethod
    def from_classification(
        cls,
        classification: Classification,
        sample: Optional[BehaviorSample] = None,
        deviation: float = 0.0,
        nudge: Optional[Nudge] = None,
        forced: bool = False,
    ) -> Optional["CandidateNudge"]:
        """None when neither ``nudge`` nor the classification carries a nudge."""
        nudge = nudge or classification.nudge
        if nudge is None:
            return None
        system = sample.system if sample else None
        return cls(
            nudge=nudge,
            weather=classification.weather,
            active_app=sample.active_app if sample else None,
            rationale=classification.rationale,
            signals=tuple(classification.signals),
            on_call=bool(system and system.is_on_video_call),
            screen_sharing=bool(system and system.is_screen_sharing),
            severity=behavioral_severity(sample.metrics if sample else None, deviation),
            forced=forced,
        )


@dataclass(frozen=True)
class Act:
    """Verdict: show the nudge."""
    nudge: Nudge
    effort: EffortLevel
    rule: str = RULE_ACT


@dataclass(frozen=True)
class Suppress:
    """Verdict: stay quiet, with the recorded reason."""
    decision: SilenceDecision

    @property
    def effort(self) -> EffortLevel:
        return self.decision.effort_level

    @property
    def rule(self) -> str:
        return self.decision.rule


Verdict = Union[Act, Suppress]


@dataclass
class InterruptionLedger:
    """Recent interruptions, dismissals and practices, for cooldowns and caps."""
    last_nudge_at: Optional[datetime] = None
    last_practice_nudge_at: Optional[datetime] = None
    last_practice_completed_at: Optional[datetime] = None
    last_dismissal_at: Optional[datetime] = None
    consecutive_dismissals: int = 0
    daily_nudges: int = 0
    daily_practice_nudges: int = 0
    day: Optional[datetime] = None

    def roll_day(self, now: datetime) -> None:
        """Reset the daily counters at local midnight."""
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self.day is None or today > self.day:
            self.day = today
            self.daily_nudges = 0
            self.daily_practice_nudges = 0

    @classmethod
    def from_history(
        cls,
        entries: Iterable[StressEntry],
        dismissals: Iterable[DismissalEvent],
        sessions: Iterable[PracticeSession],
        now: datetime,
    ) -> "InterruptionLedger":
        """Rebuild the ledger from stored entries, dismissals and practice sessions."""
        ledger = cls()
        ledger.roll_day(now)

        for entry in entries:
            if entry.nudge_type is None or entry.timestamp > now:
                continue
            ledger.last_nudge_at = _later(ledger.last_nudge_at, entry.timestamp)
            is_practice = entry.nudge_type == NudgeType.PRACTICE
            if is_practice:
                ledger.last_practice_nudge_at = _later(ledger.last_practice_nudge_at, entry.timestamp)
            if entry.timestamp >= ledger.day:
                ledger.daily_nudges += 1
                if is_practice:
                    ledger.daily_practice_nudges += 1

        for session in sessions:
            if session.was_completed and session.ended_at is not None and session.ended_at <= now:
                ledger.last_practice_completed_at = _later(ledger.last_practice_completed_at, session.ended_at)

        for dismissal in dismissals:
            if dismissal.timestamp > now:
                continue
            ledger.last_dismissal_at = _later(ledger.last_dismissal_at, dismissal.timestamp)
            completed = ledger.last_practice_completed_at
            if completed is None or dismissal.timestamp > completed:
                ledger.consecutive_dismissals += 1
        return ledger


@dataclass(frozen=True)
class _RuleHit:
    rule: str
    text: str
    effort: EffortLevel


class SuppressionModel:
    """
    Suppress-or-act policy with an interruption ledger.

    The ledger is only touched by ``decide`` (on Act), ``restore`` and the
    ``record_*`` feedback methods.
    """

    def __init__(self, config: Optional[CooldownConfig] = None):
        self.config = config or CooldownConfig()
        self.ledger = InterruptionLedger()
        self._rules: list[Callable[..., Optional[_RuleHit]]] = [
            self._rule_active_hours,
            self._rule_in_call,
            self._rule_contradiction,
            self._rule_cooldown,
            self._rule_learned_dismissals,
        ]

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    def decide(
        self,
        candidate: CandidateNudge,
        deviation: float,
        learned_patterns: Optional[LearnedPatterns],
        active_hours: Optional[ActiveHours],
        now: datetime,
    ) -> Verdict:
        """Evaluate the rules in order; the first match wins."""
        self.ledger.roll_day(now)
        patterns = learned_patterns or LearnedPatterns.empty()
        deviation = max(deviation, 0.0)

        for rule in self._rules:
            hit = rule(candidate, deviation, patterns, active_hours, now)
            if hit is not None:
                return Suppress(SilenceDecision(
                    rationale=_compose_rationale(hit.text, candidate.rationale),
                    effort_level=hit.effort,
                    timestamp=now,
                    rule=hit.rule,
                    detected_weather=candidate.weather,
                    signals=tuple(candidate.signals),
                    thinking_text=candidate.rationale or None,
                ))

        self.record_nudge_shown(candidate.nudge.nudge_type, now)
        return Act(
            nudge=candidate.nudge,
            effort=self.effort_for_deviation(deviation),
            rule=RULE_BEHAVIORAL_OVERRIDE if candidate.forced else RULE_ACT,
        )

    def override_candidate(
        self,
        classification: Classification,
        sample: Optional[BehaviorSample],
        deviation: float,
        preferred_practices: Sequence[str] = (),
    ) -> Optional[CandidateNudge]:
        """
        A forced practice nudge when the classifier offered none but behavior
        is severe enough. The candidate still has to pass ``decide``.
        """
        if classification.nudge is not None:
            return None
        severity = behavioral_severity(sample.metrics if sample else None, deviation)
        if severity < self.config.override_severity:
            return None

        nudge = Nudge(
            nudge_type=NudgeType.PRACTICE,
            message=OVERRIDE_MESSAGE,
            practice_id=choose_practice_id(None, preferred_practices),
        )
        return CandidateNudge.from_classification(classification, sample, deviation, nudge=nudge, forced=True)

    def _rule_active_hours(self, candidate, deviation, patterns, active_hours, now) -> Optional[_RuleHit]:
        # No window configured means always active
        if active_hours is None or active_hours.contains(now):
            return None
        return _RuleHit(RULE_OUTSIDE_ACTIVE_HOURS, RATIONALE_OUTSIDE_ACTIVE_HOURS, EffortLevel.LOW)

    def _rule_in_call(self, candidate, deviation, patterns, active_hours, now) -> Optional[_RuleHit]:
        if candidate.on_call or candidate.screen_sharing:
            return _RuleHit(RULE_IN_CALL, RATIONALE_IN_CALL, EffortLevel.LOW)
        return None

    def _rule_contradiction(self, candidate, deviation, patterns, active_hours, now) -> Optional[_RuleHit]:
        if candidate.forced or candidate.weather != Weather.STORMY:
            return None
        if candidate.severity >= self.config.contradiction_severity:
            return None
        return _RuleHit(RULE_BEHAVIORAL_CONTRADICTION, RATIONALE_BEHAVIORAL_CONTRADICTION, EffortLevel.LOW)

    def _rule_cooldown(self, candidate, deviation, patterns, active_hours, now) -> Optional[_RuleHit]:
        reason = self.cooldown_reason(candidate.nudge.nudge_type, now)
        if reason is not None:
            return _RuleHit(RULE_RECENTLY_INTERRUPTED, f"{RATIONALE_RECENTLY_INTERRUPTED} ({reason})", EffortLevel.LOW)

        cfg = self.config
        ledger = self.ledger
        if ledger.daily_nudges >= cfg.max_daily_nudges:
            return _RuleHit(RULE_DAILY_LIMIT, RATIONALE_DAILY_LIMIT, EffortLevel.LOW)
        if (candidate.nudge.nudge_type == NudgeType.PRACTICE
                and ledger.daily_practice_nudges >= cfg.max_daily_practice_nudges):
            return _RuleHit(RULE_DAILY_LIMIT, f"{RATIONALE_DAILY_LIMIT} (practice)", EffortLevel.LOW)
        return None

    def _rule_learned_dismissals(self, candidate, deviation, patterns, active_hours, now) -> Optional[_RuleHit]:
        key = BucketKey.of(candidate.active_app, now, candidate.weather)
        stats = patterns.buckets.get(key)
        if stats is None:
            return None
        if stats.dismissals < self.config.pattern_min_dismissals:
            return None
        if stats.dismissal_rate < self.config.dismissal_rate_threshold:
            return None

        total = max(stats.shown, stats.dismissals)
        text = f"usually dismissed in {key.describe()} ({stats.dismissals} of {total})"
        return _RuleHit(
            RULE_LEARNED_DISMISSALS,
            text,
            self.effort_for_excess(deviation, stats.typical_deviation),
        )

    # -------------------------------------------------------------------------
    # Cooldowns
    # -------------------------------------------------------------------------

    def cooldown_reason(self, nudge_type: NudgeType, now: datetime) -> Optional[str]:
        """Name of the cooldown currently in force, or None."""
        cfg = self.config
        ledger = self.ledger

        def within(since: Optional[datetime], seconds: float) -> bool:
            return since is not None and now - since < timedelta(seconds=seconds)

        if within(ledger.last_nudge_at, cfg.hard_min_interval):
            return "hard minimum interval"
        if within(ledger.last_nudge_at, cfg.min_nudge_interval):
            return "minimum time between nudges"
        if nudge_type == NudgeType.PRACTICE and within(ledger.last_practice_nudge_at, cfg.min_practice_interval):
            return "minimum time between practice nudges"
        if within(ledger.last_practice_completed_at, cfg.post_practice_cooldown):
            return "just finished a practice"
        if ledger.consecutive_dismissals >= cfg.consecutive_dismissal_threshold:
            if within(ledger.last_dismissal_at, cfg.consecutive_dismissal_cooldown):
                return f"{ledger.consecutive_dismissals} dismissals in a row"
        elif within(ledger.last_dismissal_at, cfg.post_dismissal_cooldown):
            return "recent dismissal"
        return None

    def restore(
        self,
        entries: Iterable[StressEntry],
        dismissals: Iterable[DismissalEvent],
        sessions: Iterable[PracticeSession],
        now: datetime,
    ) -> None:
        """
        Merge stored history into the ledger, so interruptions recorded by
        another process (or before a restart) count against the cooldowns.
        Timestamps keep the later value and daily counts the larger one.
        """
        history = InterruptionLedger.from_history(entries, dismissals, sessions, now)
        ledger = self.ledger
        ledger.roll_day(now)

        ledger.last_nudge_at = _later(ledger.last_nudge_at, history.last_nudge_at)
        ledger.last_practice_nudge_at = _later(ledger.last_practice_nudge_at, history.last_practice_nudge_at)
        ledger.last_dismissal_at = _later(ledger.last_dismissal_at, history.last_dismissal_at)
        ledger.daily_nudges = max(ledger.daily_nudges, history.daily_nudges)
        ledger.daily_practice_nudges = max(ledger.daily_practice_nudges, history.daily_practice_nudges)

        # The dismissal streak belongs to whichever side saw the latest completed practice
        ours, theirs = ledger.last_practice_completed_at, history.last_practice_completed_at
        if theirs is not None and (ours is None or theirs > ours):
            ledger.consecutive_dismissals = history.consecutive_dismissals
        elif theirs == ours:
            ledger.consecutive_dismissals = max(ledger.consecutive_dismissals, history.consecutive_dismissals)
        ledger.last_practice_completed_at = _later(ours, theirs)

    def record_nudge_shown(self, nudge_type: NudgeType, at: datetime) -> None:
        self.ledger.roll_day(at)
        self.ledger.last_nudge_at = at
        self.ledger.daily_nudges += 1
        if nudge_type == NudgeType.PRACTICE:
            self.ledger.last_practice_nudge_at = at
            self.ledger.daily_practice_nudges += 1

    def record_dismissal(self, at: datetime) -> None:
        self.ledger.consecutive_dismissals += 1
        self.ledger.last_dismissal_at = at

    def record_practice_completed(self, at: datetime) -> None:
        self.ledger.last_practice_completed_at = at
        self.ledger.consecutive_dismissals = 0

    # -------------------------------------------------------------------------
    # Effort
    # -------------------------------------------------------------------------

    def effort_for_deviation(self, deviation: float) -> EffortLevel:
        """Effort tier from the magnitude of behavioral deviation."""
        if deviation < self.config.high_effort_deviation:
            return EffortLevel.LOW
        if deviation < self.config.max_effort_deviation:
            return EffortLevel.HIGH
        return EffortLevel.MAX

    def effort_for_excess(self, deviation: float, typical_deviation: float) -> EffortLevel:
        """Effort tier from how far deviation exceeds a bucket's typical deviation."""
        excess = deviation - typical_deviation
        if excess <= 0:
            return EffortLevel.LOW
        if excess < self.config.high_effort_deviation:
            return EffortLevel.HIGH
        return EffortLevel.MAX


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _compose_rationale(rule_text: str, classifier_rationale: str) -> str:
    text = " ".join((classifier_rationale or "").split())
    if not text:
        return rule_text
    if len(text) > MAX_CLASSIFIER_RATIONALE:
        text = text[:MAX_CLASSIFIER_RATIONALE - 3].rstrip() + "..."
    return f"{rule_text}; classifier: {text}"
