"""
Database Models for Respiro
===========================

SQLAlchemy models for the durable event store: three append-only collections
(stress entries, practice sessions, dismissal events) and a single-row
preferences record.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import String, Integer, Float, DateTime, JSON, Text, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StressEntryModel(Base):
    """One classification result."""
    __tablename__ = "stress_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    weather: Mapped[str] = mapped_column(String(16))  # clear, cloudy, stormy
    confidence: Mapped[float] = mapped_column(Float)
    signals: Mapped[List[str]] = mapped_column(JSON, default=list)

    # Only set when the nudge was actually shown
    nudge_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    nudge_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    active_app: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deviation: Mapped[float] = mapped_column(Float, default=0.0)


class PracticeSessionModel(Base):
    """One attempted coping practice."""
    __tablename__ = "practice_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    practice_id: Mapped[str] = mapped_column(String(64), index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    weather_before: Mapped[str] = mapped_column(String(16))
    weather_after: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    was_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    what_helped: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class DismissalEventModel(Base):
    """A nudge the user declined."""
    __tablename__ = "dismissal_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    detected_weather: Mapped[str] = mapped_column(String(16))
    dismissal_type: Mapped[str] = mapped_column(String(32))  # im_fine, later, auto_dismissed
    active_app: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deviation: Mapped[float] = mapped_column(Float, default=0.0)
    suggested_practice_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    signals: Mapped[List[str]] = mapped_column(JSON, default=list)


class PreferencesModel(Base):
    """
    Single-row user preferences.
    The row always has id 1.
    """
    __tablename__ = "preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    active_hours_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    active_hours_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    screenshot_interval: Mapped[int] = mapped_column(Integer, default=300)
    preferred_practice_ids: Mapped[List[str]] = mapped_column(JSON, default=list)
    learned_patterns: Mapped[str] = mapped_column(Text, default="")
    baseline: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
