from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum
import uuid


PIPELINE_VERSION = "1.0.0"


class PipelineStage(str, Enum):
    """Pipeline stages in execution order"""
    INGRESS = "INGRESS"
    CONTEXT_CANDIDATES = "CONTEXT_CANDIDATES"
    RANK_AND_BUDGET = "RANK_AND_BUDGET"
    PROMPT_ASSEMBLY = "PROMPT_ASSEMBLY"
    MODEL_CALL = "MODEL_CALL"
    MEMORY_EXTRACTION = "MEMORY_EXTRACTION"


class ExecutionMode(str, Enum):
    PROD = "prod"
    DEBUG = "debug"


class SideEffectPolicy(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class WritePolicy(str, Enum):
    ALLOW = "allow"
    FORBID = "forbid"


Entrypoint = Literal["chat_start", "followup", "explain", "prayer_help"]


class ConversationMessage(BaseModel):
    """A single prior turn of the conversation"""
    role: Literal["user", "assistant", "system"]
    content: str


class EntityRef(BaseModel):
    """Typed reference detected in (or supplied with) the message"""
    type: Literal["verse", "chapter", "book", "theme"]
    reference: str = Field(description="Canonical reference string, e.g. 'John 3:16'")
    text: Optional[str] = Field(None, description="Resolved passage text when available")


class WeeklyIntention(BaseModel):
    carrying: Optional[str] = None
    hoping: Optional[str] = None


class LifeContext(BaseModel):
    """Life-context signals the user shared through the app"""
    current_season: Optional[str] = None
    season_note: Optional[str] = None
    weekly_intention: Optional[WeeklyIntention] = None
    session_preference: Optional[str] = None
    encouragement_style: Optional[str] = None
    prayer_topics: List[str] = Field(default_factory=list)


class UserProfile(BaseModel):
    display_name: Optional[str] = None
    first_name: Optional[str] = None


class MemorySnapshot(BaseModel):
    """Durable memory as precomputed for the user context"""
    id: str
    memory_type: str
    value: Dict[str, Any] = Field(default_factory=dict)
    strength: float = Field(ge=0.0, le=1.0)
    last_seen_at: Optional[datetime] = None


class UserContext(BaseModel):
    """Precomputed per-user context handed to the pipeline by the caller"""
    user_profile: UserProfile = Field(default_factory=UserProfile)
    life_context: Optional[LifeContext] = None
    memories: List[MemorySnapshot] = Field(default_factory=list)
    feature_flags: Dict[str, bool] = Field(default_factory=dict)


class AIContext(BaseModel):
    system_prompt: Optional[str] = None
    user_context: Optional[UserContext] = None


class RunContext(BaseModel):
    """Immutable execution context for one pipeline run"""
    model_config = ConfigDict(frozen=True)

    # Identifiers
    trace_id: str
    run_id: str
    request_id: str

    # User scope
    user_id: str
    group_id: Optional[str] = None

    # Request
    entrypoint: Entrypoint
    message: str
    entity_refs: List[EntityRef] = Field(default_factory=list)

    # Debug controls
    mode: ExecutionMode = ExecutionMode.PROD
    stop_at_stage: Optional[PipelineStage] = None
    side_effects: SideEffectPolicy = SideEffectPolicy.ENABLED
    write_policy: WritePolicy = WritePolicy.ALLOW

    # App metadata
    app_version: str
    platform: str
    locale: Optional[str] = None
    pipeline_version: str = PIPELINE_VERSION

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deadline_seconds: Optional[float] = Field(
        None, description="Caller-supplied deadline for provider and model calls"
    )

    conversation_history: List[ConversationMessage] = Field(default_factory=list)
    initial_context: Optional[str] = None
    ai_context: Optional[AIContext] = None

    @property
    def user_context(self) -> Optional[UserContext]:
        return self.ai_context.user_context if self.ai_context else None


def create_run_context(
    trace_id: str,
    user_id: str,
    entrypoint: Entrypoint,
    message: str,
    app_version: str,
    platform: str,
    entity_refs: Optional[List[EntityRef]] = None,
    mode: ExecutionMode = ExecutionMode.PROD,
    stop_at_stage: Optional[PipelineStage] = None,
    side_effects: Optional[SideEffectPolicy] = None,
    write_policy: Optional[WritePolicy] = None,
    locale: Optional[str] = None,
    conversation_history: Optional[List[ConversationMessage]] = None,
    initial_context: Optional[str] = None,
    ai_context: Optional[AIContext] = None,
    group_id: Optional[str] = None,
    deadline_seconds: Optional[float] = None,
) -> RunContext:
    """Build a fresh run context.

    Debug mode defaults side effects to disabled and writes to forbidden
    unless the caller overrides them explicitly.
    """
    mode = ExecutionMode(mode)
    is_debug = mode == ExecutionMode.DEBUG

    return RunContext(
        trace_id=trace_id,
        run_id=f"run_{uuid.uuid4().hex[:12]}",
        request_id=f"req_{uuid.uuid4().hex[:8]}",
        user_id=user_id,
        group_id=group_id,
        entrypoint=entrypoint,
        message=message,
        entity_refs=list(entity_refs or []),
        mode=mode,
        stop_at_stage=stop_at_stage,
        side_effects=side_effects or (SideEffectPolicy.DISABLED if is_debug else SideEffectPolicy.ENABLED),
        write_policy=write_policy or (WritePolicy.FORBID if is_debug else WritePolicy.ALLOW),
        app_version=app_version,
        platform=platform,
        locale=locale,
        deadline_seconds=deadline_seconds,
        conversation_history=list(conversation_history or []),
        initial_context=initial_context,
        ai_context=ai_context,
    )


def is_debug_mode(ctx: RunContext) -> bool:
    return ctx.mode == ExecutionMode.DEBUG


def are_side_effects_enabled(ctx: RunContext) -> bool:
    """True only when both the side-effect and write policies are permissive"""
    return ctx.side_effects == SideEffectPolicy.ENABLED and ctx.write_policy == WritePolicy.ALLOW


def should_stop_at_stage(ctx: RunContext, stage: PipelineStage) -> bool:
    return ctx.stop_at_stage == stage


def get_primary_verse_ref(ctx: RunContext) -> Optional[str]:
    """Reference of the first verse-typed entity, if any"""
    for entity in ctx.entity_refs:
        if entity.type == "verse":
            return entity.reference
    return None


def get_elapsed_ms(ctx: RunContext) -> int:
    return int((datetime.now(timezone.utc) - ctx.started_at).total_seconds() * 1000)


def get_remaining_seconds(ctx: RunContext) -> Optional[float]:
    """Seconds left before the caller's deadline, or None when unbounded"""
    if ctx.deadline_seconds is None:
        return None
    elapsed = (datetime.now(timezone.utc) - ctx.started_at).total_seconds()
    return max(0.0, ctx.deadline_seconds - elapsed)
