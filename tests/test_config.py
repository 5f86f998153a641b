"""
Tests for Configuration Loading
===============================

Defaults, the JSON config file, environment overrides and active hours.
"""

import json
from datetime import datetime

import pytest

from respiro.config import RespiroConfig
from respiro.errors import ConfigurationMissing
from respiro.records import ActiveHours

ENV_VARS = (
    "RESPIRO_MODEL",
    "RESPIRO_DATA_DIR",
    "RESPIRO_ACTIVE_HOURS",
    "RESPIRO_INTERVAL",
    "RESPIRO_TIMEOUT",
    "RESPIRO_CONFIDENCE_FLOOR",
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(temp_dir):
    def write(data):
        path = temp_dir / "respiro_config.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data)
        return path
    return write


# =============================================================================
# Loading Tests
# =============================================================================

class TestLoad:
    """Tests for RespiroConfig.load()."""

    def test_defaults(self, temp_dir):
        config = RespiroConfig.load(temp_dir / "missing.json")
        assert config.active_hours() == ActiveHours(9, 18)
        assert config.intervals.base == 300
        assert config.classifier.confidence_floor == 0.6
        assert config.cooldowns.max_daily_nudges == 12

    def test_file_values(self, config_file):
        """Top-level keys, nested sections and shorthand keys are applied."""
        config = RespiroConfig.load(config_file({
            "active_hours": "8-17",
            "model": "claude-test",
            "intervals": {"base": 120, "stormy": 60},
            "cooldowns": {"max_daily_nudges": 4},
            "baseline_alpha": 0.2,
        }))

        assert config.active_hours() == ActiveHours(8, 17)
        assert config.classifier.model == "claude-test"
        assert config.intervals.base == 120
        assert config.intervals.stormy == 60
        assert config.cooldowns.max_daily_nudges == 4
        assert config.baseline_alpha == 0.2

    def test_unknown_keys_are_ignored(self, config_file):
        config = RespiroConfig.load(config_file({"colour": "blue", "intervals": {"speed": 3}}))
        assert config.intervals.base == 300

    def test_broken_file_falls_back_to_defaults(self, config_file):
        config = RespiroConfig.load(config_file("{not json"))
        assert config.intervals.base == 300

    def test_environment_overrides_file(self, config_file, monkeypatch):
        path = config_file({"active_hours": [8, 17], "intervals": {"base": 120}})
        monkeypatch.setenv("RESPIRO_ACTIVE_HOURS", "22-6")
        monkeypatch.setenv("RESPIRO_INTERVAL", "45")
        monkeypatch.setenv("RESPIRO_CONFIDENCE_FLOOR", "0.8")
        monkeypatch.setenv("RESPIRO_DATA_DIR", "/tmp/respiro-test")

        config = RespiroConfig.load(path)

        assert config.active_hours() == ActiveHours(22, 6)
        assert config.intervals.base == 45
        assert config.classifier.confidence_floor == 0.8
        assert str(config.data_path) == "/tmp/respiro-test"


# =============================================================================
# Active Hours Tests
# =============================================================================

class TestActiveHours:
    """Tests for the active-hours window."""

    def test_always_means_no_window(self, monkeypatch, temp_dir):
        monkeypatch.setenv("RESPIRO_ACTIVE_HOURS", "always")
        config = RespiroConfig.load(temp_dir / "missing.json")
        with pytest.raises(ConfigurationMissing):
            config.active_hours()

    def test_window_wraps_midnight(self):
        night = ActiveHours(22, 6)
        assert night.contains(datetime(2026, 3, 10, 23, 0))
        assert night.contains(datetime(2026, 3, 10, 5, 59))
        assert not night.contains(datetime(2026, 3, 10, 12, 0))

    def test_invalid_hour(self):
        with pytest.raises(ValueError):
            ActiveHours(9, 25)
