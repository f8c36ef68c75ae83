from typing import Dict, Any, List, Optional, Literal, Tuple
from pydantic import BaseModel, Field
from datetime import datetime, timezone

from forge_agent.domain.models.run_context import EntityRef, PipelineStage, PIPELINE_VERSION
from forge_agent.domain.models.plan import Plan
from forge_agent.domain.models.candidate import Candidate


INGRESS_SCHEMA_VERSION = "2.0.0"
CONTEXT_CANDIDATES_SCHEMA_VERSION = "2.0.0"
RANK_AND_BUDGET_SCHEMA_VERSION = "2.0.0"
PROMPT_ASSEMBLY_SCHEMA_VERSION = "1.0.0"
MODEL_CALL_SCHEMA_VERSION = "1.0.0"
MEMORY_EXTRACTION_SCHEMA_VERSION = "2.0.0"

TokenEstimateMethod = Literal["heuristic", "tiktoken", "model_reported"]


class StageArtifact(BaseModel):
    """Redacted, timed record of one stage's output for one run"""
    trace_id: str
    run_id: str
    stage: PipelineStage
    schema_version: str
    pipeline_version: str = PIPELINE_VERSION
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0
    summary: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    raw_ref: Optional[str] = Field(None, description="Vault pointer: vault://<run_id>/<stage>")
    stats: Dict[str, float] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None


class StageOutput(BaseModel):
    """What a stage executor hands back to the orchestrator"""
    payload: Any
    summary: str
    stats: Dict[str, float] = Field(default_factory=dict)
    raw_content: Optional[Any] = Field(None, description="Unredacted content destined for the vault")


# ----------------------------------------------------------------------------
# INGRESS / CONTEXT_CANDIDATES

class IngressPayload(BaseModel):
    schema_version: str = INGRESS_SCHEMA_VERSION
    normalized_input: str
    detected_entities: List[EntityRef] = Field(default_factory=list)
    plan: Plan


class ContextCandidatesPayload(BaseModel):
    schema_version: str = CONTEXT_CANDIDATES_SCHEMA_VERSION
    candidates: List[Candidate] = Field(default_factory=list)
    by_source_counts: Dict[str, int] = Field(default_factory=dict)
    plan: Plan


# ----------------------------------------------------------------------------
# RANK_AND_BUDGET

class SelectedCandidate(BaseModel):
    id: str
    candidate: Candidate
    final_score: float
    token_estimate: int
    token_estimate_method: TokenEstimateMethod = "heuristic"
    reason: str


class ExcludedCandidate(BaseModel):
    id: str
    reason: str
    details: Optional[str] = None


class BudgetSummary(BaseModel):
    max: int
    used: int
    by_source: Dict[str, int] = Field(default_factory=dict)
    token_estimate_method: TokenEstimateMethod = "heuristic"


class ScoringSummary(BaseModel):
    avg_score: float
    score_range: Tuple[float, float]


class RankAndBudgetPayload(BaseModel):
    schema_version: str = RANK_AND_BUDGET_SCHEMA_VERSION
    plan: Plan
    selected: List[SelectedCandidate] = Field(default_factory=list)
    excluded: List[ExcludedCandidate] = Field(default_factory=list)
    budget: BudgetSummary
    scoring_summary: Optional[ScoringSummary] = None


# ----------------------------------------------------------------------------
# PROMPT_ASSEMBLY

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None


class FullPromptData(BaseModel):
    """Untruncated prompt, kept in memory and stored in the vault in debug mode"""
    system_prompt: str
    messages: List[ChatMessage]


class MessagePreview(BaseModel):
    role: str
    content_preview: str
    content_length: int


class ModelRequestRedacted(BaseModel):
    model: str
    messages_preview: List[MessagePreview] = Field(default_factory=list)
    messages_count: int
    temperature: float
    max_tokens: int


class TokenBreakdown(BaseModel):
    system_prompt: int
    context: int
    conversation_history: int
    user_message: int
    total: int
    estimate_method: TokenEstimateMethod = "heuristic"


class PromptAssemblyPayload(BaseModel):
    schema_version: str = PROMPT_ASSEMBLY_SCHEMA_VERSION
    model_request_redacted: ModelRequestRedacted
    token_breakdown: TokenBreakdown
    prompt_version: str
    raw_ref: Optional[str] = None


# ----------------------------------------------------------------------------
# MODEL_CALL

class ToolCallRecord(BaseModel):
    """Transcript entry for one executed tool call"""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    latency_ms: int = 0
    output_preview: str = ""
    success: bool = True
    error_type: Optional[str] = None


class InputTokenDetails(BaseModel):
    cached_tokens: int = 0
    audio_tokens: int = 0


class OutputTokenDetails(BaseModel):
    reasoning_tokens: int = 0
    audio_tokens: int = 0
    accepted_prediction_tokens: int = 0
    rejected_prediction_tokens: int = 0


class ModelCallPayload(BaseModel):
    schema_version: str = MODEL_CALL_SCHEMA_VERSION
    model: str
    temperature: float
    max_tokens: int
    latency_ms: int
    input_tokens: int = 0
    input_token_details: Optional[InputTokenDetails] = None
    output_tokens: int = 0
    output_token_details: Optional[OutputTokenDetails] = None
    finish_reason: str = "unknown"
    response_preview: str = Field(description="Redacted response text")
    response_length: int
    response_source: Literal["content", "refusal", "empty"]
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)


class ModelCallResponse(BaseModel):
    """User-visible response returned to the caller"""
    content: str
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)


# ----------------------------------------------------------------------------
# MEMORY_EXTRACTION

class ExtractionBasis(BaseModel):
    response_mode: str
    self_disclosure: bool


class MemoryCandidateSummary(BaseModel):
    """Extracted candidate without its evidence text"""
    type: str
    value: str
    confidence: float


class EvaluationResultSummary(BaseModel):
    signals_created: int = 0
    signals_incremented: int = 0
    memories_promoted: int = 0
    memories_reinforced: int = 0
    actions: List[str] = Field(default_factory=list)


class MemoryExtractionPayload(BaseModel):
    schema_version: str = MEMORY_EXTRACTION_SCHEMA_VERSION
    eligible: bool
    basis: ExtractionBasis
    candidates_extracted: List[MemoryCandidateSummary] = Field(default_factory=list)
    evaluation_result: Optional[EvaluationResultSummary] = None
    success: bool = True
    error: Optional[str] = None
    dry_run: bool = False


# ----------------------------------------------------------------------------

class PipelineResult(BaseModel):
    artifacts: List[StageArtifact] = Field(default_factory=list)
    stopped_at: Optional[PipelineStage] = None
    response: Optional[ModelCallResponse] = None
