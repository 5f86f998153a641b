"""
Configuration Management
========================

Handles loading configuration from environment variables and config files.

Precedence, highest first:
1. Environment variables (RESPIRO_*)
2. Local config file (respiro_config.json)
3. Default values
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Optional

from respiro.errors import ConfigurationMissing
from respiro.records import ActiveHours

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
CONFIG_FILENAME = "respiro_config.json"
DEFAULT_DATA_DIR = "~/.respiro"


@dataclass
class CooldownConfig:
    """Interruption cooldowns and daily caps. Durations in seconds."""
    hard_min_interval: float = 5 * 60
    min_nudge_interval: float = 10 * 60
    min_practice_interval: float = 30 * 60
    post_practice_cooldown: float = 45 * 60
    post_dismissal_cooldown: float = 15 * 60
    consecutive_dismissal_cooldown: float = 2 * 3600
    consecutive_dismissal_threshold: int = 3
    max_daily_nudges: int = 12
    max_daily_practice_nudges: int = 6

    # Learned suppression
    dismissal_rate_threshold: float = 0.6
    pattern_min_dismissals: int = 3
    pattern_window_days: int = 30

    # Deviation -> effort tiers
    high_effort_deviation: float = 1.0
    max_effort_deviation: float = 2.0

    # Behavioral severity (0-1) overrides
    override_severity: float = 0.7
    contradiction_severity: float = 0.15


@dataclass
class IntervalConfig:
    """Adaptive monitoring interval. Durations in seconds."""
    base: float = 300
    stormy: float = 180
    after_practice: float = 600
    after_dismissal: float = 900
    after_multiple_dismissals: float = 1800
    after_error: float = 600
    max_clear: float = 900
    clear_multiplier: float = 1.5
    clear_streak: int = 3
    wake_delay: float = 30
    idle_pause_after: float = 30 * 60
    refresh_every: float = 2 * 60  # reload learned state and history from the store


@dataclass
class ClassifierConfig:
    """Vision classifier and gateway settings."""
    model: str = DEFAULT_MODEL
    timeout: float = 60.0
    retry_delay: float = 5.0
    confidence_floor: float = 0.6
    max_daily_calls: int = 100
    max_tool_rounds: int = 3
    max_image_edge: int = 1568
    jpeg_quality: int = 85


@dataclass
class RespiroConfig:
    """Respiro Configuration."""
    data_dir: str = DEFAULT_DATA_DIR
    active_hours_start: Optional[int] = 9
    active_hours_end: Optional[int] = 18
    baseline_alpha: float = 0.1
    baseline_min_samples: int = 5
    ranker_min_samples: int = 3
    cooldowns: CooldownConfig = field(default_factory=CooldownConfig)
    intervals: IntervalConfig = field(default_factory=IntervalConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def active_hours(self) -> ActiveHours:
        """Return the active-hours window or raise ConfigurationMissing."""
        if self.active_hours_start is None or self.active_hours_end is None:
            raise ConfigurationMissing("active_hours")
        return ActiveHours(self.active_hours_start, self.active_hours_end)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "RespiroConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables
        2. Local config file (respiro_config.json)
        3. Default values
        """
        config = cls()

        # Load from config file if exists
        config_path = Path(path) if path else Path(CONFIG_FILENAME)
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    file_config = json.load(f)
                config._apply(file_config)
            except (OSError, ValueError, TypeError) as e:
                logger.warning("Failed to load config file %s: %s", config_path, e)

        # Override with environment variables
        config._apply_env(os.environ)
        return config

    def _apply(self, data: dict) -> None:
        sections = {
            "cooldowns": self.cooldowns,
            "intervals": self.intervals,
            "classifier": self.classifier,
        }
        top_level = {f.name for f in fields(self)} - set(sections)
        for key, value in data.items():
            if key in sections and isinstance(value, dict):
                _update_section(sections[key], value)
            elif key == "active_hours":
                self._set_active_hours(value)
            elif key == "model":
                self.classifier.model = str(value)
            elif key in top_level:
                setattr(self, key, value)
            else:
                logger.warning("Ignoring unknown config key: %s", key)

    def _apply_env(self, env: Any) -> None:
        if env.get("RESPIRO_MODEL"):
            self.classifier.model = env["RESPIRO_MODEL"]
        if env.get("RESPIRO_DATA_DIR"):
            self.data_dir = env["RESPIRO_DATA_DIR"]
        if env.get("RESPIRO_ACTIVE_HOURS"):
            self._set_active_hours(env["RESPIRO_ACTIVE_HOURS"])
        if env.get("RESPIRO_INTERVAL"):
            self.intervals.base = float(env["RESPIRO_INTERVAL"])
        if env.get("RESPIRO_TIMEOUT"):
            self.classifier.timeout = float(env["RESPIRO_TIMEOUT"])
        if env.get("RESPIRO_CONFIDENCE_FLOOR"):
            self.classifier.confidence_floor = float(env["RESPIRO_CONFIDENCE_FLOOR"])

    def _set_active_hours(self, value: Any) -> None:
        # None, "", "always" -> no window configured
        if value is None or (isinstance(value, str) and value.strip().lower() in ("", "always", "none")):
            self.active_hours_start = None
            self.active_hours_end = None
            return
        if isinstance(value, str):
            hours = ActiveHours.parse(value)
        else:
            hours = ActiveHours(int(value[0]), int(value[1]))
        self.active_hours_start = hours.start_hour
        self.active_hours_end = hours.end_hour


def _update_section(section: Any, values: dict) -> None:
    known = {f.name: f for f in fields(section)}
    for key, value in values.items():
        if key not in known:
            logger.warning("Ignoring unknown config key: %s.%s", type(section).__name__, key)
            continue
        current = getattr(section, key)
        setattr(section, key, type(current)(value) if current is not None else value)
