"""
Tests for the Command-Line Interface
====================================

Commands that only touch the local store are run end to end against a
temporary data directory.
"""

import argparse

import pytest

from respiro.cli import build_parser, main, weather_arg
from respiro.records import Weather


@pytest.fixture
def respiro(temp_dir, monkeypatch):
    """Run the CLI against a temporary data directory."""
    monkeypatch.delenv("RESPIRO_DATA_DIR", raising=False)
    monkeypatch.chdir(temp_dir)

    def run(*argv: str) -> int:
        return main(["--data-dir", str(temp_dir / "data"), *argv])
    return run


class TestParser:
    """Tests for argument parsing."""

    def test_weather_argument(self):
        assert weather_arg("Stormy") == Weather.STORMY
        with pytest.raises(argparse.ArgumentTypeError):
            weather_arg("foggy")

    def test_practice_finish(self):
        args = build_parser().parse_args(["practice", "finish", "3", "--weather", "clear", "--note", "slow"])
        assert args.session_id == 3
        assert args.weather == Weather.CLEAR
        assert args.note == "slow"
        assert not args.abandoned

    def test_dismiss_type_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["dismiss", "--weather", "cloudy", "--type", "whatever"])

    def test_no_command_prints_help(self, respiro):
        assert main([]) == 1


class TestCommands:
    """Tests for store-backed commands."""

    def test_practice_flow(self, respiro):
        """Start and finish a practice; a second finish is refused."""
        assert respiro("practice", "list") == 0
        assert respiro("practice", "start", "box-breathing", "--weather", "stormy") == 0
        assert respiro("practice", "finish", "1", "--weather", "clear", "--note", "counting") == 0
        assert respiro("practice", "finish", "1", "--weather", "cloudy") == 1
        assert respiro("rank") == 0

    def test_unhelpful_practice_suggests_another(self, respiro, capsys):
        assert respiro("practice", "start", "coherent-breathing", "--weather", "stormy") == 0
        assert respiro("practice", "finish", "1", "--weather", "stormy") == 0
        assert "STOP Technique" in capsys.readouterr().out

    def test_practice_errors(self, respiro):
        assert respiro("practice", "start", "levitation", "--weather", "clear") == 1
        assert respiro("practice", "finish", "42", "--weather", "clear") == 1

    def test_dismissals_and_patterns(self, respiro):
        for _ in range(3):
            assert respiro("dismiss", "--weather", "cloudy", "--app", "Mail") == 0
        assert respiro("patterns") == 0

    def test_hours(self, respiro, capsys):
        assert respiro("hours", "10-16") == 0
        assert respiro("hours") == 0
        assert "10:00-16:00" in capsys.readouterr().out

        assert respiro("hours", "always") == 0
        assert respiro("hours", "25-3") == 1

    def test_history_empty(self, respiro):
        assert respiro("history", "--days", "2") == 0

    def test_check_without_api_key(self, respiro, monkeypatch):
        """Missing credentials are reported, not raised."""
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert respiro("check") == 1
