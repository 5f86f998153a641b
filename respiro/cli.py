#!/usr/bin/env python3
"""
Respiro CLI
===========

Command-line interface for the stress-awareness agent.

Usage:
    respiro run                               # monitor until Ctrl+C
    respiro check                             # one forced cycle
    respiro history [--days N]
    respiro rank
    respiro patterns
    respiro practice list
    respiro practice start PRACTICE_ID --weather cloudy
    respiro practice finish SESSION_ID --weather clear [--abandoned] [--note TEXT]
    respiro dismiss --weather cloudy [--type im_fine] [--app Mail]
    respiro hours [9-18 | always]
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.markup import escape

from respiro import __version__
from respiro.app import create_app, load_preferences
from respiro.config import RespiroConfig
from respiro.context import LearningRefresher
from respiro.db import close_db
from respiro.engine import CycleOutcome, CycleState
from respiro.errors import RespiroError, SessionAlreadyClosed
from respiro.feedback import FeedbackRecorder
from respiro.output import (
    console,
    create_table,
    effort_label,
    format_timestamp,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_panel,
    print_success,
    print_warning,
    setup_rich_logging,
    spinner,
    weather_label,
)
from respiro.practices import PRACTICES
from respiro.ranking import PreferenceRanker
from respiro.records import ActiveHours, DismissalType, Weather
from respiro.sinks import ConsoleSink, attach_sink
from respiro.store import EventStore

logger = logging.getLogger(__name__)


def load_config(args) -> RespiroConfig:
    config = RespiroConfig.load(Path(args.config) if args.config else None)
    if args.data_dir:
        config.data_dir = args.data_dir
    return config


def weather_arg(value: str) -> Weather:
    try:
        return Weather.parse(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"weather must be clear, cloudy or stormy (got {value!r})")


# =============================================================================
# Monitoring commands
# =============================================================================

async def cmd_run(args, config: RespiroConfig) -> int:
    """Monitor until interrupted."""
    app = await create_app(config)
    attach_sink(app.monitor, ConsoleSink(show_silence=not args.quiet))

    hours = app.preferences.active_hours
    print_header("Respiro")
    print_key_value_table({
        "Active hours": str(hours) if hours else "always",
        "Interval": f"{app.monitor.policy.current:.0f}s",
        "Model": config.classifier.model,
        "Data": str(config.data_path),
    })
    print_muted("Press Ctrl+C to stop.")

    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.stop()
        await app.close()
    return 0


async def cmd_check(args, config: RespiroConfig) -> int:
    """Run one forced cycle and show what the engine decided."""
    app = await create_app(config)
    try:
        await app.monitor.refresh()
        with spinner("Checking in..."):
            outcome = await app.monitor.run_once()
        await app.save_state()
    finally:
        await app.close()

    if outcome is None:
        print_error("The cycle failed; see the log for details")
        return 1
    print_outcome(outcome)
    return 0 if outcome.state != CycleState.SKIPPED else 1


def print_outcome(outcome: CycleOutcome) -> None:
    data = {
        "State": outcome.state.value,
        "Weather": weather_label(outcome.weather),
        "Confidence": f"{outcome.classification.confidence:.2f}" if outcome.classification else "-",
        "Deviation": f"{outcome.deviation:.2f}",
        "Effort": effort_label(outcome.effort),
    }
    if outcome.classification and outcome.classification.signals:
        data["Signals"] = escape(", ".join(outcome.classification.signals))
    if outcome.diagnostic:
        data["Diagnostic"] = f"[rs.warn]{outcome.diagnostic}[/]"
    print_key_value_table(data, title="Check-in")

    if outcome.nudge is not None:
        subtitle = outcome.nudge.practice_id or outcome.nudge.nudge_type.value
        print_panel(escape(outcome.nudge.message), title="Nudge", subtitle=subtitle)
    elif outcome.silence is not None:
        print_muted(f"Stayed quiet: {escape(outcome.silence.rationale)}")


# =============================================================================
# History commands
# =============================================================================

async def cmd_history(args, config: RespiroConfig) -> int:
    store = await EventStore.open(config.data_path)
    since = datetime.now() - timedelta(days=args.days)
    entries = await store.fetch_stress_entries(since=since, limit=args.limit, newest_first=True)

    if not entries:
        print_info(f"No readings in the last {args.days} day(s)")
        return 0

    table = create_table(title=f"Last {args.days} day(s)", columns=["Time", "Weather", "Conf.", "App", "Nudge"])
    for entry in entries:
        table.add_row(
            format_timestamp(entry.timestamp),
            weather_label(entry.weather),
            f"{entry.confidence:.2f}",
            entry.active_app or "-",
            escape(entry.nudge_message) if entry.nudge_message else "[rs.muted]-[/]",
        )
    console.print(table)
    return 0


async def cmd_rank(args, config: RespiroConfig) -> int:
    store = await EventStore.open(config.data_path)
    since = datetime.now() - timedelta(days=args.days)
    sessions = await store.fetch_practice_sessions(since=since)
    ranker = PreferenceRanker(min_samples=config.ranker_min_samples)
    scores = ranker.scores(sessions, candidates=[p.id for p in PRACTICES])

    table = create_table(title="Practice ranking", columns=["#", "Practice", "Sessions", "Completed", "Improvement", "Score"])
    for position, score in enumerate(scores, 1):
        table.add_row(
            str(position),
            score.practice_id,
            str(score.sessions),
            f"{score.completion_rate:.0%}" if score.sessions else "-",
            f"{score.avg_improvement:+.2f}" if score.sessions else "-",
            f"{score.score:.2f}" + ("" if score.has_enough_samples else " [rs.muted](prior)[/]"),
        )
    console.print(table)
    return 0


async def cmd_patterns(args, config: RespiroConfig) -> int:
    store = await EventStore.open(config.data_path)
    refresher = LearningRefresher(store, window_days=config.cooldowns.pattern_window_days)
    bundle = await refresher.rebuild()
    patterns = bundle.patterns

    if not len(patterns):
        print_info("No dismissal patterns learned yet")
        return 0

    threshold = config.cooldowns.dismissal_rate_threshold
    minimum = config.cooldowns.pattern_min_dismissals
    table = create_table(title="Learned patterns", columns=["App", "Hour", "Weather", "Dismissed", "Shown", "Rate", "Typical dev.", "Suppresses"])
    for key, stats in patterns.strongest(limit=args.limit):
        suppresses = stats.dismissals >= minimum and stats.dismissal_rate >= threshold
        table.add_row(
            key.app,
            f"{key.hour:02d}:00",
            weather_label(key.weather),
            str(stats.dismissals),
            str(stats.shown),
            f"{stats.dismissal_rate:.0%}",
            f"{stats.typical_deviation:.2f}",
            "[rs.warn]yes[/]" if suppresses else "[rs.muted]no[/]",
        )
    console.print(table)
    if patterns.summary:
        print_panel(patterns.summary, title="Classifier summary")
    return 0


# =============================================================================
# Feedback commands
# =============================================================================

async def cmd_practice(args, config: RespiroConfig) -> int:
    if args.practice_command == "list":
        table = create_table(title="Practices", columns=["Id", "Title", "Category", "Duration"])
        for practice in PRACTICES:
            table.add_row(practice.id, practice.title, practice.category.value, f"{practice.duration}s")
        console.print(table)
        return 0

    store = await EventStore.open(config.data_path)
    feedback = FeedbackRecorder(store)

    if args.practice_command == "start":
        try:
            session = await feedback.start_practice(args.practice_id, args.weather)
        except ValueError as e:
            print_error(str(e))
            return 1
        print_success(f"Started {session.practice_id} (session {session.id})")
        return 0

    try:
        outcome = await feedback.complete_practice(
            args.session_id,
            args.weather,
            what_helped=args.note,
            completed=not args.abandoned,
        )
    except KeyError:
        print_error(f"No practice session {args.session_id}")
        return 1
    except SessionAlreadyClosed as e:
        print_warning(str(e))
        return 1
    session = outcome.session
    print_success(
        f"Recorded {session.practice_id}: {session.weather_before.value} -> "
        f"{session.weather_after.value if session.weather_after else '?'}"
    )
    if outcome.alternative is not None:
        alternative = outcome.alternative
        print_info(
            f"That did not shift things. Try {alternative.title} next "
            f"({alternative.id}, {alternative.duration}s)"
        )
    return 0


async def cmd_dismiss(args, config: RespiroConfig) -> int:
    store = await EventStore.open(config.data_path)
    feedback = FeedbackRecorder(store)
    event = await feedback.record_dismissal(
        DismissalType(args.type),
        args.weather,
        active_app=args.app,
        suggested_practice_id=args.practice,
    )
    print_success(f"Recorded dismissal {event.id} ({event.dismissal_type.value})")
    return 0


async def cmd_hours(args, config: RespiroConfig) -> int:
    store = await EventStore.open(config.data_path)
    preferences = await load_preferences(store, config)

    if args.range is None:
        hours = preferences.active_hours
        print_info(f"Active hours: {hours if hours else 'always'}")
        return 0

    if args.range.strip().lower() == "always":
        preferences.active_hours = None
    else:
        try:
            preferences.active_hours = ActiveHours.parse(args.range)
        except ValueError:
            print_error(f"Invalid range {args.range!r}; use e.g. 9-18 or 'always'")
            return 1

    await store.save_preferences(preferences)
    print_success(f"Active hours set to {preferences.active_hours or 'always'}")
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="respiro",
        description="Respiro - a calm stress-awareness companion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Monitor until Ctrl+C
    respiro run

    # One check-in right now
    respiro check

    # Log a practice
    respiro practice start box-breathing --weather stormy
    respiro practice finish 3 --weather cloudy --note "slower exhale"
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", "-c", help="Path to respiro_config.json")
    parser.add_argument("--data-dir", "-d", help="Data directory (default ~/.respiro)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Monitor until interrupted")
    run_parser.add_argument("--quiet", "-q", action="store_true", help="Do not print silence decisions")

    subparsers.add_parser("check", help="Run one check-in now")

    history_parser = subparsers.add_parser("history", help="Show recent weather readings")
    history_parser.add_argument("--days", type=int, default=1)
    history_parser.add_argument("--limit", type=int, default=50)

    rank_parser = subparsers.add_parser("rank", help="Show the practice ranking")
    rank_parser.add_argument("--days", type=int, default=90)

    patterns_parser = subparsers.add_parser("patterns", help="Show learned dismissal patterns")
    patterns_parser.add_argument("--limit", type=int, default=10)

    practice_parser = subparsers.add_parser("practice", help="List, start or finish practices")
    practice_sub = practice_parser.add_subparsers(dest="practice_command", required=True)
    practice_sub.add_parser("list", help="List the practice catalog")
    start_parser = practice_sub.add_parser("start", help="Start a practice session")
    start_parser.add_argument("practice_id")
    start_parser.add_argument("--weather", "-w", type=weather_arg, required=True, help="Weather before")
    finish_parser = practice_sub.add_parser("finish", help="Record how a practice went")
    finish_parser.add_argument("session_id", type=int)
    finish_parser.add_argument("--weather", "-w", type=weather_arg, help="Weather after")
    finish_parser.add_argument("--abandoned", action="store_true", help="Practice was not completed")
    finish_parser.add_argument("--note", help="What helped")

    dismiss_parser = subparsers.add_parser("dismiss", help="Record a dismissed nudge")
    dismiss_parser.add_argument("--weather", "-w", type=weather_arg, required=True)
    dismiss_parser.add_argument("--type", "-t", choices=[t.value for t in DismissalType], default=DismissalType.IM_FINE.value)
    dismiss_parser.add_argument("--app", "-a", help="App in focus")
    dismiss_parser.add_argument("--practice", "-p", help="Practice that was suggested")

    hours_parser = subparsers.add_parser("hours", help="Show or set active hours")
    hours_parser.add_argument("range", nargs="?", help="e.g. 9-18, or 'always'")

    return parser


COMMANDS = {
    "run": cmd_run,
    "check": cmd_check,
    "history": cmd_history,
    "rank": cmd_rank,
    "patterns": cmd_patterns,
    "practice": cmd_practice,
    "dismiss": cmd_dismiss,
    "hours": cmd_hours,
}


async def _dispatch(args, config: RespiroConfig) -> int:
    try:
        return await COMMANDS[args.command](args, config)
    finally:
        await close_db()


def main(argv: Optional[list] = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.INFO)

    if not args.command:
        parser.print_help()
        return 1

    config = load_config(args)
    try:
        return asyncio.run(_dispatch(args, config))
    except KeyboardInterrupt:
        print_muted("Stopped.")
        return 0
    except RespiroError as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
