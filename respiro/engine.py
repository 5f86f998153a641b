"""
Nudge Engine
============

Runs one monitoring cycle end to end:

    IDLE -> SAMPLING -> CLASSIFYING -> DECIDING -> {NUDGING | SILENT | SKIPPED} -> IDLE

Each cycle samples behavior, folds it into the baseline, captures the screen,
classifies it, asks the suppression model whether to interrupt, and writes one
StressEntry. Failures before a classification exists end the cycle as SKIPPED
with a diagnostic and no other effects.

Learned state (patterns, preferred practices, tool context, active hours) is
staged from outside and swapped in at the start of the next cycle as one
immutable EngineSnapshot, so a cycle never sees a half-applied update.

Usage:
    engine = NudgeEngine(sampler, capture, gateway, SuppressionModel(), BaselineTracker(), store)
    outcome = await engine.run_cycle(EffortLevel.LOW)
    if outcome.nudge:
        show(outcome.nudge)
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from respiro.baseline import BaselineTracker
from respiro.capture import FrameSource
from respiro.classifier import ClassificationGateway
from respiro.errors import CaptureFailure, ClassificationError, StoreIOFailure
from respiro.patterns import LearnedPatterns
from respiro.records import (
    ActiveHours,
    Classification,
    EffortLevel,
    Nudge,
    SilenceDecision,
    StressEntry,
    ToolContext,
    Weather,
)
from respiro.sampler import BehaviorSampler
from respiro.suppression import RULE_BEHAVIORAL_OVERRIDE, Act, CandidateNudge, Suppress, SuppressionModel

logger = logging.getLogger(__name__)

DIAG_SAMPLING_FAILED = "sampling failed"
DIAG_USER_AWAY = "user away"
DIAG_CAPTURE_FAILED = "capture failed"
DIAG_CLASSIFICATION_UNAVAILABLE = "classification unavailable"
DIAG_ENTRY_DROPPED = "stress entry not saved"


class CycleState(Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    CLASSIFYING = "classifying"
    DECIDING = "deciding"
    NUDGING = "nudging"
    SILENT = "silent"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({CycleState.NUDGING, CycleState.SILENT, CycleState.SKIPPED})


class EntryWriter(Protocol):
    """The slice of the event store the engine writes to."""

    async def add_stress_entry(self, entry: StressEntry) -> StressEntry:
        ...


@dataclass(frozen=True)
class EngineSnapshot:
    """Learned state used by one cycle. Replaced as a whole, never mutated."""
    learned_patterns: LearnedPatterns = field(default_factory=LearnedPatterns.empty)
    preferred_practices: tuple = ()
    tool_context: ToolContext = field(default_factory=ToolContext)
    active_hours: Optional[ActiveHours] = None

    def classifier_context(self) -> ToolContext:
        """Tool context with the current ranking and pattern summary folded in."""
        return replace(
            self.tool_context,
            preferred_practices=self.preferred_practices or self.tool_context.preferred_practices,
            learned_patterns=self.learned_patterns.summary or self.tool_context.learned_patterns,
        )


@dataclass(frozen=True)
class CycleOutcome:
    """Everything one cycle produced."""
    state: CycleState
    transitions: tuple
    started_at: datetime
    finished_at: datetime
    request_effort: EffortLevel = EffortLevel.LOW
    weather: Optional[Weather] = None
    classification: Optional[Classification] = None
    deviation: float = 0.0
    effort: Optional[EffortLevel] = None
    nudge: Optional[Nudge] = None
    silence: Optional[SilenceDecision] = None
    entry: Optional[StressEntry] = None
    entry_saved: bool = False
    diagnostic: Optional[str] = None

    @property
    def classified(self) -> bool:
        return self.classification is not None

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "transitions": [s.value for s in self.transitions],
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "weather": self.weather.value if self.weather else None,
            "deviation": round(self.deviation, 3),
            "effort": self.effort.value if self.effort else None,
            "nudge": self.nudge.to_dict() if self.nudge else None,
            "silence": self.silence.to_dict() if self.silence else None,
            "entry_saved": self.entry_saved,
            "diagnostic": self.diagnostic,
        }


_UNSET: Any = object()


class NudgeEngine:
    """
    Orchestrates a single monitoring cycle.

    Not reentrant: the monitoring loop guarantees at most one cycle in flight.
    """

    def __init__(
        self,
        sampler: BehaviorSampler,
        capture: FrameSource,
        gateway: ClassificationGateway,
        suppression: SuppressionModel,
        baseline: BaselineTracker,
        store: EntryWriter,
        snapshot: Optional[EngineSnapshot] = None,
        clock: Callable[[], datetime] = datetime.now,
        idle_pause_after: float = 30 * 60,
        store_retry_delay: float = 0.5,
    ):
        self.sampler = sampler
        self.capture = capture
        self.gateway = gateway
        self.suppression = suppression
        self.baseline = baseline
        self.store = store
        self.clock = clock
        self.idle_pause_after = idle_pause_after
        self.store_retry_delay = store_retry_delay
        self._snapshot = snapshot or EngineSnapshot()
        self._staged: Optional[EngineSnapshot] = None
        self._last_entry_at: Optional[datetime] = None

    @property
    def snapshot(self) -> EngineSnapshot:
        """The snapshot the current (or last) cycle runs with."""
        return self._snapshot

    @property
    def pending(self) -> Optional[EngineSnapshot]:
        return self._staged

    def stage(
        self,
        *,
        learned_patterns: Any = _UNSET,
        preferred_practices: Any = _UNSET,
        tool_context: Any = _UNSET,
        active_hours: Any = _UNSET,
    ) -> EngineSnapshot:
        """
        Stage an update for the next cycle. Omitted fields keep their value;
        ``active_hours=None`` means always active.
        """
        changes = {}
        if learned_patterns is not _UNSET:
            changes["learned_patterns"] = learned_patterns or LearnedPatterns.empty()
        if preferred_practices is not _UNSET:
            changes["preferred_practices"] = tuple(preferred_practices)
        if tool_context is not _UNSET:
            changes["tool_context"] = tool_context
        if active_hours is not _UNSET:
            changes["active_hours"] = active_hours

        self._staged = replace(self._staged or self._snapshot, **changes)
        return self._staged

    def _apply_staged(self) -> EngineSnapshot:
        if self._staged is not None:
            self._snapshot, self._staged = self._staged, None
        return self._snapshot

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self, effort: EffortLevel = EffortLevel.LOW) -> CycleOutcome:
        """Run one cycle. Never raises for capture, classification or store failures."""
        started = self.clock()
        snapshot = self._apply_staged()
        transitions = [CycleState.IDLE, CycleState.SAMPLING]

        def skipped(diagnostic: str, deviation: float = 0.0) -> CycleOutcome:
            transitions.extend((CycleState.SKIPPED, CycleState.IDLE))
            return CycleOutcome(
                state=CycleState.SKIPPED,
                transitions=tuple(transitions),
                started_at=started,
                finished_at=self.clock(),
                request_effort=effort,
                deviation=deviation,
                diagnostic=diagnostic,
            )

        try:
            sample = await self.sampler.sample()
        except Exception as e:
            logger.warning("Behavior sampling failed: %s", e)
            return skipped(DIAG_SAMPLING_FAILED)

        if sample.system.idle_seconds >= self.idle_pause_after:
            logger.debug("User idle for %.0fs, skipping cycle", sample.system.idle_seconds)
            return skipped(DIAG_USER_AWAY)

        deviation = self.baseline.observe(sample.metrics)

        try:
            frame = await self.capture.capture_frame()
        except CaptureFailure as e:
            logger.warning("Screen capture failed: %s", e)
            return skipped(DIAG_CAPTURE_FAILED, deviation)

        transitions.append(CycleState.CLASSIFYING)
        try:
            classification = await self.gateway.classify(frame, snapshot.classifier_context(), effort)
        except ClassificationError as e:
            logger.warning("Classification unavailable: %s", e)
            return skipped(DIAG_CLASSIFICATION_UNAVAILABLE, deviation)

        transitions.append(CycleState.DECIDING)
        now = self._entry_time()
        candidate = CandidateNudge.from_classification(classification, sample, deviation)
        if candidate is None:
            candidate = self.suppression.override_candidate(
                classification, sample, deviation, snapshot.preferred_practices
            )

        state = CycleState.SILENT
        nudge = None
        silence = None
        verdict_effort = None
        if candidate is not None:
            verdict = self.suppression.decide(
                candidate,
                deviation,
                snapshot.learned_patterns,
                snapshot.active_hours,
                now,
            )
            verdict_effort = verdict.effort
            if isinstance(verdict, Act):
                state = CycleState.NUDGING
                nudge = verdict.nudge
                if verdict.rule == RULE_BEHAVIORAL_OVERRIDE:
                    logger.info("Behavioral override: nudging although the classifier did not")
            elif isinstance(verdict, Suppress):
                silence = verdict.decision
                logger.info("Staying silent (%s): %s", verdict.rule, silence.rationale)
        transitions.append(state)

        entry = StressEntry(
            timestamp=now,
            weather=classification.weather,
            confidence=classification.confidence,
            signals=list(classification.signals),
            nudge_type=nudge.nudge_type if nudge else None,
            nudge_message=nudge.message if nudge else None,
            active_app=sample.active_app,
            deviation=deviation,
        )
        saved = await self._write_entry(entry)
        transitions.append(CycleState.IDLE)

        return CycleOutcome(
            state=state,
            transitions=tuple(transitions),
            started_at=started,
            finished_at=self.clock(),
            request_effort=effort,
            weather=classification.weather,
            classification=classification,
            deviation=deviation,
            effort=verdict_effort,
            nudge=nudge,
            silence=silence,
            entry=entry,
            entry_saved=saved,
            diagnostic=None if saved else DIAG_ENTRY_DROPPED,
        )

    def _entry_time(self) -> datetime:
        now = self.clock()
        if self._last_entry_at is not None and now < self._last_entry_at:
            now = self._last_entry_at
        self._last_entry_at = now
        return now

    async def _write_entry(self, entry: StressEntry) -> bool:
        """Insert ``entry``, retrying once. Returns False if it was dropped."""
        try:
            await self.store.add_stress_entry(entry)
            return True
        except StoreIOFailure as e:
            logger.info("Could not save stress entry (%s), retrying once", e)

        await asyncio.sleep(self.store_retry_delay)
        try:
            await self.store.add_stress_entry(entry)
            return True
        except StoreIOFailure as e:
            logger.warning("Dropping stress entry after retry: %s", e)
            return False
