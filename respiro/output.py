"""
Rich Output Utilities
=====================

Terminal output for Respiro using the Rich library: one themed console,
message helpers, tables and panels, and the logging bridge used by the CLI.

Usage:
    from respiro.output import console, print_info, setup_rich_logging

    setup_rich_logging()
    print_info("Monitoring started")
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.theme import Theme

from respiro.records import EffortLevel, Weather


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class RespiroColors:
    """Respiro palette, hex for truecolor terminals."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    sky: str = "#38BDF8"       # clear weather / accent
    haze: str = "#CBD5E1"      # cloudy weather
    storm: str = "#A78BFA"     # stormy weather
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def respiro_theme(colors: RespiroColors = RespiroColors()) -> Theme:
    """
    Rich Theme for the Respiro CLI.

    Style names are semantic:
      console.print("...", style="rs.ok")
    """
    return Theme(
        {
            "rs.accent": f"bold {colors.sky}",
            "rs.muted": f"{colors.dim}",
            "rs.text": f"{colors.ink}",
            "rs.border": f"{colors.sky}",

            "rs.ok": f"bold {colors.ok}",
            "rs.warn": f"bold {colors.warn}",
            "rs.err": f"bold {colors.err}",
            "rs.info": f"{colors.sky}",

            "rs.key": f"{colors.dim}",
            "rs.value": f"{colors.ink}",
            "rs.timestamp": f"{colors.dim}",

            # Weather
            "rs.weather.clear": f"bold {colors.sky}",
            "rs.weather.cloudy": f"bold {colors.haze}",
            "rs.weather.stormy": f"bold {colors.storm}",

            # Effort
            "rs.effort.low": f"{colors.ok}",
            "rs.effort.high": f"{colors.warn}",
            "rs.effort.max": f"bold {colors.err}",

            "rs.table.header": f"bold {colors.sky}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if the terminal can handle the Unicode icons we print."""
    if os.name == "nt":
        try:
            encoding = sys.stdout.encoding or "utf-8"
            "✓✗•☀".encode(encoding)
            return True
        except (UnicodeEncodeError, LookupError, AttributeError):
            return False
    return True


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠",
    "info": "ℹ",
    "bullet": "•",
    "arrow_right": "→",
    "clear": "☀",
    "cloudy": "☁",
    "stormy": "⛈",
    "silence": "…",
    "leaf": "❧",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bullet": "-",
    "arrow_right": "->",
    "clear": "(clear)",
    "cloudy": "(cloudy)",
    "stormy": "(stormy)",
    "silence": "...",
    "leaf": "*",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# =============================================================================
# Global Console Instance
# =============================================================================

console = Console(theme=respiro_theme())


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[rs.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[rs.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    console.print(f"[rs.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    console.print(f"[rs.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    console.print(f"[rs.muted]{message}[/]")


def print_header(title: str, style: str = "rs.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Domain Formatting
# =============================================================================

def weather_label(weather: Optional[Weather]) -> str:
    """Markup for a weather value, e.g. ``[rs.weather.stormy]... stormy[/]``."""
    if weather is None:
        return "[rs.muted]unknown[/]"
    return f"[rs.weather.{weather.value}]{icon(weather.value)} {weather.value}[/]"


def effort_label(effort: Optional[EffortLevel]) -> str:
    if effort is None:
        return "[rs.muted]-[/]"
    return f"[rs.effort.{effort.value}]{effort.value}[/]"


def format_timestamp(dt: Optional[datetime]) -> str:
    if dt is None:
        return "-"
    return dt.strftime("%Y-%m-%d %H:%M")


# =============================================================================
# Data Display Functions
# =============================================================================

def print_key_value_table(data: Dict[str, Any], *, title: Optional[str] = None) -> None:
    """Print multiple key-value pairs in a borderless table, optionally in a panel."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="rs.key")
    table.add_column("Value", style="rs.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style="rs.border"))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
) -> Table:
    """Create a styled Rich Table with the Respiro theme."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style="rs.table.header",
        border_style="rs.border",
        title_style="rs.accent",
    )
    for col in columns or []:
        table.add_column(col)
    return table


def print_panel(
    content: Any,
    *,
    title: Optional[str] = None,
    subtitle: Optional[str] = None,
    border_style: str = "rs.border",
) -> None:
    """Print content in a styled panel."""
    console.print(Panel(
        content,
        title=f"[bold]{title}[/]" if title else None,
        subtitle=f"[rs.muted]{subtitle}[/]" if subtitle else None,
        border_style=border_style,
        padding=(1, 2),
    ))


@contextmanager
def spinner(message: str) -> Iterator[Status]:
    """
    Show a spinner while work is in progress.

    Usage:
        with spinner("Checking in..."):
            await app.monitor.run_once()
    """
    with console.status(f"[rs.accent]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.getLogger("respiro").info("Monitoring started")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
    # The Anthropic and HTTP client libraries are chatty at INFO
    for noisy in ("httpx", "anthropic", "aiosqlite"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
