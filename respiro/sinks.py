"""
UI State Sinks
==============

The desktop UI is a thin consumer of monitor state. A sink receives weather
updates (the whole MonitorState) and silence decisions, at most once per
completed cycle; the latest update wins.

``ConsoleSink`` renders both with rich for the command-line runner.
"""

from typing import Optional, Protocol

from rich.console import Console
from rich.markup import escape

from respiro.monitor import MonitoringLoop, MonitorState, Subscription
from respiro.output import console as default_console
from respiro.output import effort_label, format_timestamp, icon, weather_label
from respiro.practices import get_practice
from respiro.records import NudgeType, SilenceDecision


class UISink(Protocol):
    def update_weather(self, state: MonitorState) -> None:
        ...

    def update_silence(self, decision: SilenceDecision) -> None:
        ...


class ConsoleSink:
    """Prints weather changes, nudges and silence decisions."""

    def __init__(self, console: Optional[Console] = None, show_silence: bool = True):
        self.console = console or default_console
        self.show_silence = show_silence
        self._last_version = -1
        self._last_nudge = None

    def update_weather(self, state: MonitorState) -> None:
        if state.version <= self._last_version:
            return
        self._last_version = state.version

        line = f"[rs.timestamp]{format_timestamp(state.last_cycle_at)}[/]  {weather_label(state.weather)}"
        if state.diagnostic:
            line += f"  [rs.warn]{escape(state.diagnostic)}[/]"
        self.console.print(line)

        nudge = state.last_nudge
        if nudge is not None and nudge is not self._last_nudge:
            self._last_nudge = nudge
            text = f"{icon('leaf')} {escape(nudge.message)}"
            if nudge.nudge_type == NudgeType.PRACTICE:
                practice = get_practice(nudge.practice_id)
                if practice is not None:
                    text += f"  [rs.muted]({practice.title}, {practice.duration}s)[/]"
            self.console.print(f"[rs.accent]{text}[/]")

    def update_silence(self, decision: SilenceDecision) -> None:
        if not self.show_silence:
            return
        self.console.print(
            f"[rs.muted]{icon('silence')} staying quiet[/] "
            f"({effort_label(decision.effort_level)}) [rs.muted]{escape(decision.rationale)}[/]"
        )


def attach_sink(monitor: MonitoringLoop, sink: UISink) -> tuple[Subscription, Subscription]:
    """Subscribe ``sink`` to both monitor streams."""
    return (
        monitor.subscribe_weather(sink.update_weather),
        monitor.subscribe_silence(sink.update_silence),
    )
