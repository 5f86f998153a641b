"""
Practice Catalog
================

The coping practices the classifier may suggest.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from respiro.records import PracticeSession


class PracticeCategory(Enum):
    BREATHING = "breathing"
    BODY = "body"
    MIND = "mind"


@dataclass(frozen=True)
class Practice:
    """A short guided exercise."""
    id: str
    title: str
    category: PracticeCategory
    duration: int  # seconds
    steps: tuple = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "category": self.category.value,
            "duration_seconds": self.duration,
            "steps": list(self.steps),
        }


FALLBACK_PRACTICE_ID = "box-breathing"

PRACTICES = (
    Practice("physiological-sigh", "Physiological Sigh", PracticeCategory.BREATHING, 60,
             ("Quick inhale through nose", "Brief hold", "Second short inhale", "Long exhale through mouth")),
    Practice("box-breathing", "Box Breathing", PracticeCategory.BREATHING, 90,
             ("Breathe in for 4", "Hold for 4", "Breathe out for 4", "Hold for 4")),
    Practice("grounding-54321", "5-4-3-2-1 Grounding", PracticeCategory.BODY, 120,
             ("5 things you can see", "4 things you can hear", "3 things you can touch",
              "2 things you can smell", "1 thing you can taste")),
    Practice("stop-technique", "STOP Technique", PracticeCategory.MIND, 60,
             ("Stop what you're doing", "Take a deep breath", "Observe your experience", "Proceed with awareness")),
    Practice("self-compassion", "Self-Compassion Break", PracticeCategory.MIND, 90,
             ("Acknowledge what you're feeling", "Connect with shared human experience", "Offer yourself kindness")),
    Practice("extended-exhale", "Extended Exhale", PracticeCategory.BREATHING, 90,
             ("Inhale for 4", "Exhale slowly for 8")),
    Practice("thought-defusion", "Thought Defusion", PracticeCategory.MIND, 120,
             ("Notice the thought", "Say 'I'm having the thought that...'", "Watch it pass like a cloud")),
    Practice("coherent-breathing", "Coherent Breathing", PracticeCategory.BREATHING, 120,
             ("Inhale for 5.5 seconds", "Exhale for 5.5 seconds")),
    Practice("body-scan", "Quick Body Scan", PracticeCategory.BODY, 120,
             ("Notice your feet", "Move attention up through legs and back", "Relax shoulders and jaw")),
)

_BY_ID = {p.id: p for p in PRACTICES}


def get_practice(practice_id: Optional[str]) -> Optional[Practice]:
    if not practice_id:
        return None
    return _BY_ID.get(practice_id)


def practice_ids() -> list[str]:
    return [p.id for p in PRACTICES]


def resolve_practice_id(practice_id: Optional[str]) -> str:
    """Return ``practice_id`` if it is in the catalog, otherwise the fallback practice."""
    key = str(practice_id).strip().lower() if practice_id else ""
    if key in _BY_ID:
        return key
    return FALLBACK_PRACTICE_ID


def choose_practice_id(practice_id: Optional[str], preferred_practices: Sequence[str] = ()) -> str:
    """The suggested practice if known, else the first known preferred one, else the fallback."""
    key = str(practice_id).strip().lower() if practice_id else ""
    if key in _BY_ID:
        return key
    for candidate in preferred_practices:
        if get_practice(candidate) is not None:
            return candidate
    return FALLBACK_PRACTICE_ID


def suggest_alternative(session: PracticeSession) -> Optional[Practice]:
    """
    A second chance after a practice that did not help: the shortest practice
    from a different category. None unless the session was completed with a
    weather check that stayed the same or got worse.
    """
    if not session.was_completed:
        return None
    improvement = session.improvement
    if improvement is None or improvement > 0:
        return None

    tried = get_practice(session.practice_id)
    if tried is None:
        return None
    others = [p for p in PRACTICES if p.category != tried.category]
    return min(others, key=lambda p: p.duration, default=None)


def catalog_json() -> str:
    """Catalog as JSON for the classifier's get_practice_catalog tool."""
    return json.dumps([p.to_dict() for p in PRACTICES])
