"""Closed vocabularies for durable memory extraction."""
from typing import Tuple


STRUGGLE_THEMES: Tuple[str, ...] = (
    "fear_of_failure",
    "work_anxiety",
    "loneliness",
    "identity_doubt",
    "discipline",
    "leadership_pressure",
    "shame_guilt",
    "relationship_conflict",
    "grief_loss",
    "anger_bitterness",
)

FAITH_STAGES: Tuple[str, ...] = (
    "seeking",     # exploring faith
    "rebuilding",  # deconstructing / reconstructing
    "grounded",    # established faith
    "leading",     # discipling others
)

TONE_PREFERENCES: Tuple[str, ...] = ("gentle", "direct", "encouraging", "scholarly", "brief")

SIGNAL_TTL_DAYS = 7
PROMOTION_THRESHOLD = 2
MIN_EXTRACTION_CONFIDENCE = 0.7
MAX_CANDIDATES_PER_TURN = 2
MIN_STRENGTH_FOR_CONTEXT = 0.3
MAX_MEMORIES_FOR_CONTEXT = 10


def is_valid_struggle_theme(value: str) -> bool:
    return value in STRUGGLE_THEMES


def is_valid_faith_stage(value: str) -> bool:
    return value in FAITH_STAGES


def strength_from_occurrences(occurrences: int) -> float:
    """strong (7+) 1.0, moderate (4+) 0.7, light 0.4"""
    if occurrences >= 7:
        return 1.0
    if occurrences >= 4:
        return 0.7
    return 0.4
