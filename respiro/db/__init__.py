"""
Database Package
================

Exports key database components.
"""

from respiro.db.models import (
    Base,
    StressEntryModel,
    PracticeSessionModel,
    DismissalEventModel,
    PreferencesModel,
)
from respiro.db.connection import init_db, get_session_maker, close_db
