from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, Field
from enum import Enum


class ResponseMode(str, Enum):
    """How the assistant should respond"""
    EXPLAIN = "explain"
    STUDY = "study"
    COACH = "coach"
    PASTORAL = "pastoral"
    CONTINUITY = "continuity"


class RetrievalNeed(str, Enum):
    """Categories of context the planner may request"""
    USER_MEMORY = "user_memory"
    ARTIFACT_SEMANTIC = "artifact_semantic"
    VERSE_HIGHLIGHTS = "verse_highlights"
    VERSE_NOTES = "verse_notes"
    CONVERSATION_SESSION_SUMMARIES = "conversation_session_summaries"
    BIBLE_READING_SESSIONS = "bible_reading_sessions"


class TemporalRange(str, Enum):
    LAST_DAY = "last_day"
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    LAST_3_MONTHS = "last_3_months"
    LAST_YEAR = "last_year"
    THIS_YEAR = "this_year"
    ALL_TIME = "all_time"


class TemporalDirection(str, Enum):
    OLDEST = "oldest"
    NEWEST = "newest"


LengthTarget = Literal["short", "medium"]
PlanSource = Literal["rules", "llm"]

# Personal artifact types the retrieval plan may allowlist
ARTIFACT_TYPES = (
    "conversation_session_summary",
    "journal_entry",
    "prayer_request",
    "prayer_update",
    "testimony",
    "verse_highlight",
    "verse_note",
)


class SafetyFlags(BaseModel):
    self_harm: bool = False
    violence: bool = False


class ResponseFlags(BaseModel):
    self_disclosure: bool = False
    situational: bool = False


class ResponsePlan(BaseModel):
    """How to respond: mode, length, safety posture"""
    response_mode: ResponseMode
    length_target: LengthTarget = "medium"
    safety_flags: SafetyFlags = Field(default_factory=SafetyFlags)
    flags: ResponseFlags = Field(default_factory=ResponseFlags)
    signals: List[str] = Field(default_factory=list, description="Compact explanation of why this plan was chosen")
    source: PlanSource = "rules"
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class TemporalFilter(BaseModel):
    range: Optional[TemporalRange] = None
    direction: Optional[TemporalDirection] = None


class ScriptureScope(BaseModel):
    """Book-only or book+chapter scope, keyed by canonical 3-letter book id"""
    kind: Literal["book", "chapter"]
    book_id: str
    book_name: Optional[str] = None
    chapter: Optional[int] = None


class RetrievalFilters(BaseModel):
    temporal: Optional[TemporalFilter] = None
    scope: Optional[ScriptureScope] = None


class RetrievalPlan(BaseModel):
    """What to retrieve: needs plus filters"""
    needs: List[RetrievalNeed] = Field(default_factory=list)
    filters: Optional[RetrievalFilters] = None
    query: Optional[str] = Field(None, description="Semantic query; defaults to the user message")
    artifact_types: Optional[List[str]] = None
    limits: Dict[RetrievalNeed, int] = Field(default_factory=dict)

    def has_need(self, need: RetrievalNeed) -> bool:
        return need in self.needs

    @property
    def temporal(self) -> Optional[TemporalFilter]:
        return self.filters.temporal if self.filters else None

    @property
    def scope(self) -> Optional[ScriptureScope]:
        return self.filters.scope if self.filters else None


class Plan(BaseModel):
    """Planner output, produced once per run and read by later stages"""
    response: ResponsePlan
    retrieval: RetrievalPlan
