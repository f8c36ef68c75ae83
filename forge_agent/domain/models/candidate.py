from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, Field


class CandidateFeatures(BaseModel):
    """Scoring features attached by providers and the ranker"""
    semantic_score: Optional[float] = None
    recency_score: Optional[float] = None
    temporal_score: Optional[float] = None
    scope_score: Optional[float] = None
    created_at: Optional[str] = Field(None, description="ISO creation time used for temporal ordering")


class BaseCandidate(BaseModel):
    """Common shape shared by every candidate variant"""
    id: str = Field(description="Stable derivable id, e.g. 'bible:John 3:16'")
    label: str
    preview: str = Field(description="Redacted, truncated preview")
    features: CandidateFeatures = Field(default_factory=CandidateFeatures)


class BibleCandidate(BaseCandidate):
    source: Literal["bible"] = "bible"
    reference: str
    entity_type: str = "verse"
    full_text: Optional[str] = None


class ArtifactCandidate(BaseCandidate):
    source: Literal["artifact"] = "artifact"
    artifact_type: str
    title: Optional[str] = None
    scripture_refs: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None
    full_content: str = ""
    note_summary: Optional[str] = None
    note_tags: List[str] = Field(default_factory=list)
    artifact_metadata: Dict[str, Any] = Field(default_factory=dict)


class MemoryCandidate(BaseCandidate):
    source: Literal["user_memory"] = "user_memory"
    memory_id: str
    memory_type: str
    value: Dict[str, Any] = Field(default_factory=dict)
    strength: float = 0.0


class LifeContextCandidate(BaseCandidate):
    source: Literal["life_context"] = "life_context"
    context_type: Literal["season", "carrying", "hoping"]
    value: str


class ReadingRef(BaseModel):
    book_id: str
    book: str
    chapter: int
    verse: Optional[int] = None


class ReadingSessionCandidate(BaseCandidate):
    source: Literal["bible_reading_session"] = "bible_reading_session"
    translation: Optional[str] = None
    read_ranges: List[str] = Field(default_factory=list)
    start_ref: ReadingRef
    end_ref: ReadingRef
    duration_seconds: Optional[float] = None
    completion_status: Optional[Dict[str, Any]] = None
    local_date: str
    time_zone: Optional[str] = None
    ended_at: Optional[str] = None


class SystemCandidate(BaseCandidate):
    source: Literal["system"] = "system"
    response_mode: str
    confidence: float
    signals: List[str] = Field(default_factory=list)
    needs: List[str] = Field(default_factory=list)


Candidate = Annotated[
    Union[
        BibleCandidate,
        ArtifactCandidate,
        MemoryCandidate,
        LifeContextCandidate,
        ReadingSessionCandidate,
        SystemCandidate,
    ],
    Field(discriminator="source"),
]
