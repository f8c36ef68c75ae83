from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class UserArtifact(BaseModel):
    """A personal artifact the pipeline reads (journal, note, highlight, summary...)"""
    id: str = Field(default_factory=_new_id)
    user_id: str
    type: str
    title: Optional[str] = None
    content: str = ""
    scripture_refs: List[str] = Field(default_factory=list)
    scope: str = "private"
    status: str = "active"
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReadingRollup(BaseModel):
    """Per-day, per-chapter rollup of Bible reading activity"""
    user_id: str
    book_id: str
    book_name: Optional[str] = None
    chapter: int
    local_date: str
    time_zone: Optional[str] = None
    translation: Optional[str] = None
    read_ranges: List[str] = Field(default_factory=list)
    duration_seconds: Optional[float] = None
    completion_status: Optional[Dict[str, Any]] = None
    last_read_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class UserMemory(BaseModel):
    """Durable fact about the user"""
    id: str = Field(default_factory=_new_id)
    user_id: str
    memory_type: str
    value: Dict[str, Any]
    strength: float = 0.4
    occurrences: int = 1
    source: str = "signal_promotion"
    is_active: bool = True
    access_count: int = 0
    first_seen_at: datetime = Field(default_factory=_utcnow)
    last_seen_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: Optional[datetime] = None


class UserSignal(BaseModel):
    """Short-lived counter for a recurring pattern, promoted to memory on repetition"""
    id: str = Field(default_factory=_new_id)
    user_id: str
    signal_type: str
    value: Dict[str, Any]
    count: int = 1
    expires_at: datetime
    last_counted_conversation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class VaultEntry(BaseModel):
    """Encrypted raw content for one (run, stage)"""
    run_id: str
    stage: str
    ciphertext: str = Field(description="Hex-encoded ciphertext without the auth tag")
    iv: str
    auth_tag: str
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
