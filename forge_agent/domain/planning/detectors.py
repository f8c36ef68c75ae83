"""Rule-tier detectors: regex and keyword classifiers over the user message."""
from typing import List, Optional, Pattern, Tuple
from datetime import datetime, timedelta, timezone
import re

from forge_agent.domain.models.plan import (
    ResponseMode,
    SafetyFlags,
    ScriptureScope,
    TemporalFilter,
    TemporalRange,
)
from forge_agent.domain.planning.bible_reference import BOOK_NAME_TO_CODE, parse_reference, book_name_to_id


SELF_HARM_PATTERN = re.compile(r"\b(suicid|self.?harm|kill myself)\b", re.I)
VIOLENCE_PATTERN = re.compile(r"\b(abuse|assault|violence)\b", re.I)

SELF_DISCLOSURE_PATTERNS: List[Pattern] = [
    re.compile(r"i('m| am) (struggling|wrestling|having trouble)", re.I),
    re.compile(r"i (feel|felt)", re.I),
    re.compile(r"i (always|never|keep)", re.I),
    re.compile(r"my (problem|issue|struggle)", re.I),
    re.compile(
        r"i('ve| have|'ve got| got) (a |an )?[a-z]+ "
        r"(issue|issues|problem|problems|struggle|struggles|difficulty|difficulties)\b",
        re.I,
    ),
]

SITUATIONAL_PATTERNS: List[Pattern] = [
    re.compile(
        r"\b(this weekend|tomorrow|today|tonight|next week|next month|"
        r"on (monday|tuesday|wednesday|thursday|friday|saturday|sunday))\b",
        re.I,
    ),
    re.compile(r"\b(i('?m| am) (traveling|travelling|flying|going to)|trip to)\b", re.I),
]

READING_HISTORY_PATTERNS: List[Pattern] = [
    re.compile(r"\bsummariz(e|ing)\b[^?.!]*\b(read|reading|readings)\b", re.I),
    re.compile(r"\bwhere\b[^?.!]*\b(i|we)\b[^?.!]*\b(read|reading)\b", re.I),
    re.compile(r"\bwhat\b[^?.!]*\b(i|we)\b[^?.!]*\b(read|reading)\b", re.I),
    re.compile(r"\b(where|what)\b[^?.!]*\bbeen\b[^?.!]*\b(read|reading)\b", re.I),
    re.compile(r"\bwhat have i been reading\b", re.I),
    re.compile(r"\bwhere have i been reading\b", re.I),
    re.compile(r"\brecently\b[^?.!]*\b(read|reading)\b", re.I),
    re.compile(r"\b(read|reading)\b[^?.!]*\brecently\b", re.I),
    re.compile(r"\blast (day|week|month|year)\b[^?.!]*\b(read|reading)\b", re.I),
]

LEARNINGS_PATTERNS: List[Pattern] = [
    re.compile(r"\b(summarize|summarise)\b", re.I),
    re.compile(r"\bmy learnings?\b", re.I),
    re.compile(r"\bwhat (?:did|have) i (?:learn|learned|learnt)\b", re.I),
    re.compile(r"\bwhat i (?:have )?(?:learn|learned|learnt)\b", re.I),
    re.compile(r"\bwhat\b[^?.!]*\b(i|my)\b[^?.!]*\b(learn|learned|learnt|learnings?)\b", re.I),
]

RESUME_PATTERN = re.compile(r"\b(pick up|pick-up|continue|resume|pick it back up|pick back up)\b", re.I)
LEFT_OFF_PATTERN = re.compile(r"\bwhere we left (off|it)\b", re.I)
READING_RESUME_PATTERN = re.compile(r"\b(pick up|pick-up|resume|continue)\b", re.I)
READING_WORDS_PATTERN = re.compile(r"\b(bible|read|reading|chapter|verse|scripture|passage)\b", re.I)
CONVERSATION_PATTERN = re.compile(r"\bconversation\b", re.I)
HIGHLIGHTS_PATTERN = re.compile(r"\bhighlight(s)?\b", re.I)
NOTES_PATTERN = re.compile(r"\b(note|notes)\b", re.I)
REFLECTIONS_PATTERNS: List[Pattern] = [
    re.compile(r"\b(reflection|reflections)\b", re.I),
    re.compile(r"\bwhat are some of my\b", re.I),
]
DISTRESS_PATTERN = re.compile(r"\b(struggling|anxious|worried|afraid)\b", re.I)

# Response modes in precedence order; first match wins
RESPONSE_MODE_RULES: List[Tuple[ResponseMode, Pattern]] = [
    (ResponseMode.PASTORAL, re.compile(r"\b(pray|prayer|prayers|praying)\b", re.I)),
    (ResponseMode.PASTORAL, re.compile(r"\b(struggling|anxious|worried|afraid|scared|guilty|hopeless)\b", re.I)),
    (ResponseMode.STUDY, re.compile(r"\b(word study|cross.?reference|greek|hebrew)\b", re.I)),
    (ResponseMode.COACH, re.compile(r"\b(apply|application|practice|how do i)\b", re.I)),
]

# Substring -> range, checked in order
TEMPORAL_RULES: List[Tuple[Tuple[str, ...], TemporalRange]] = [
    (("today",), TemporalRange.LAST_DAY),
    (("this week",), TemporalRange.LAST_WEEK),
    (("last week",), TemporalRange.LAST_WEEK),
    (("this month",), TemporalRange.LAST_MONTH),
    (("last month",), TemporalRange.LAST_MONTH),
    (("last year",), TemporalRange.LAST_YEAR),
    (("this year",), TemporalRange.THIS_YEAR),
    (("last 3 months", "last three months"), TemporalRange.LAST_3_MONTHS),
    (("yesterday", "last day"), TemporalRange.LAST_DAY),
]

CHAPTER_LIKE_PATTERN = re.compile(r"\b(?:[1-3]\s*)?[A-Za-z]+(?:\s+[A-Za-z]+){0,2}\s+\d+(?::\d+(?:-\d+)?)?\b")

# Multi-word names first, then longest first, so "1 john" wins over "john"
_SCOPE_KEYS = sorted(
    [k for k in BOOK_NAME_TO_CODE if " " in k] + [k for k in BOOK_NAME_TO_CODE if " " not in k],
    key=len,
    reverse=True,
)
_SCOPE_KEY_PATTERNS = [
    (key, re.compile(rf"\b{re.escape(key)}\b", re.I)) for key in _SCOPE_KEYS if len(key) >= 3
]


def detect_safety_flags(message: str) -> SafetyFlags:
    return SafetyFlags(
        self_harm=bool(SELF_HARM_PATTERN.search(message)),
        violence=bool(VIOLENCE_PATTERN.search(message)),
    )


def detect_self_disclosure(message: str) -> bool:
    return any(p.search(message) for p in SELF_DISCLOSURE_PATTERNS)


def detect_situational(message: str) -> bool:
    return any(p.search(message) for p in SITUATIONAL_PATTERNS)


def detect_temporal_filter(message: str) -> Optional[TemporalFilter]:
    lowered = message.lower()
    for phrases, temporal_range in TEMPORAL_RULES:
        if any(phrase in lowered for phrase in phrases):
            return TemporalFilter(range=temporal_range)
    return None


def is_resume_phrase(message: str) -> bool:
    return bool(RESUME_PATTERN.search(message) or LEFT_OFF_PATTERN.search(message))


def is_reading_history_query(message: str) -> bool:
    return any(p.search(message) for p in READING_HISTORY_PATTERNS)


def is_bible_reading_resume_query(message: str, scope: Optional[ScriptureScope]) -> bool:
    resume = bool(READING_RESUME_PATTERN.search(message) or re.search(r"\bwhere we left off\b", message, re.I))
    return resume and (scope is not None or bool(READING_WORDS_PATTERN.search(message)))


def is_highlights_query(message: str) -> bool:
    return bool(HIGHLIGHTS_PATTERN.search(message))


def is_notes_query(message: str) -> bool:
    return bool(NOTES_PATTERN.search(message))


def is_learnings_summary(message: str) -> bool:
    return any(p.search(message) for p in LEARNINGS_PATTERNS)


def is_topic_reflections(message: str) -> bool:
    return any(p.search(message) for p in REFLECTIONS_PATTERNS)


def mentions_conversation(message: str) -> bool:
    return bool(CONVERSATION_PATTERN.search(message))


def mentions_distress(message: str) -> bool:
    return bool(DISTRESS_PATTERN.search(message))


def detect_response_mode(message: str) -> ResponseMode:
    """continuity > pastoral > study > coach > explain"""
    if is_resume_phrase(message):
        return ResponseMode.CONTINUITY
    for mode, pattern in RESPONSE_MODE_RULES:
        if pattern.search(message):
            return mode
    return ResponseMode.EXPLAIN


def _normalize_for_scope(message: str) -> str:
    lowered = re.sub(r"[^a-z0-9\s]", " ", message.lower())
    return re.sub(r"\s+", " ", lowered).strip()


def detect_scripture_scope(message: str) -> Optional[ScriptureScope]:
    """Book+chapter scope from an explicit reference, else book-only from a name mention"""
    trimmed = message.strip()

    for match in CHAPTER_LIKE_PATTERN.finditer(trimmed):
        candidate = match.group(0)
        attempts = [candidate]
        tokens = candidate.split()
        if len(tokens) > 2:
            # Strip leading non-book words like "into" picked up by the pattern
            attempts.append(" ".join(tokens[1:]))
            attempts.append(" ".join(tokens[2:]))

        parsed = None
        for attempt in attempts:
            parsed = parse_reference(attempt)
            if parsed:
                break
        if not parsed:
            continue

        book_id = book_name_to_id(parsed.book)
        if not book_id:
            continue
        return ScriptureScope(kind="chapter", book_id=book_id, book_name=parsed.book, chapter=parsed.chapter)

    normalized = _normalize_for_scope(trimmed)
    for key, pattern in _SCOPE_KEY_PATTERNS:
        if pattern.search(normalized):
            book_name = re.sub(r"\b\w", lambda m: m.group(0).upper(), key)
            return ScriptureScope(kind="book", book_id=BOOK_NAME_TO_CODE[key], book_name=book_name)

    return None


def compute_date_bounds(
    temporal_range: Optional[TemporalRange],
    now: Optional[datetime] = None,
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """(after, before) bounds for a temporal range; all_time is unbounded"""
    if temporal_range is None:
        return None, None
    now = now or datetime.now(timezone.utc)
    days = {
        TemporalRange.LAST_DAY: 1,
        TemporalRange.LAST_WEEK: 7,
        TemporalRange.LAST_MONTH: 30,
        TemporalRange.LAST_3_MONTHS: 90,
        TemporalRange.LAST_YEAR: 365,
    }.get(TemporalRange(temporal_range))
    if days is not None:
        return now - timedelta(days=days), None
    if temporal_range == TemporalRange.THIS_YEAR:
        return datetime(now.year, 1, 1, tzinfo=timezone.utc), None
    return None, None
