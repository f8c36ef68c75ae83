from typing import Dict, List, Optional, Sequence, Tuple
from datetime import datetime
import math
import structlog

from forge_agent.domain.context.memory.vocabularies import MAX_MEMORIES_FOR_CONTEXT
from forge_agent.domain.models.artifacts import (
    BudgetSummary,
    ExcludedCandidate,
    RankAndBudgetPayload,
    ScoringSummary,
    SelectedCandidate,
)
from forge_agent.domain.models.candidate import ArtifactCandidate, BaseCandidate, MemoryCandidate
from forge_agent.domain.models.plan import Plan, RetrievalNeed, TemporalDirection
from forge_agent.domain.planning.detectors import SELF_HARM_PATTERN, VIOLENCE_PATTERN

logger = structlog.get_logger(__name__)

MAX_TOKEN_BUDGET = 2000
SEMANTIC_THRESHOLD = 0.3

DEFAULT_MAX_SEMANTIC_ARTIFACTS = 5
DEFAULT_MAX_HIGHLIGHTS = 10
DEFAULT_MAX_NOTES = 10
DEFAULT_MAX_SESSION_SUMMARIES = 3

# Artifact type -> (cap category, need that admits it alongside semantic)
TYPED_ARTIFACTS: Dict[str, Tuple[str, RetrievalNeed]] = {
    "verse_highlight": ("highlights", RetrievalNeed.VERSE_HIGHLIGHTS),
    "verse_note": ("notes", RetrievalNeed.VERSE_NOTES),
    "conversation_session_summary": ("session_summaries", RetrievalNeed.CONVERSATION_SESSION_SUMMARIES),
}

CATEGORY_LABELS = {
    "semantic": "semantic artifacts",
    "highlights": "highlights",
    "notes": "notes",
    "session_summaries": "session summaries",
    "memories": "memories",
}


def estimate_tokens(text: str) -> int:
    """~4 characters per token, rounded up"""
    return math.ceil(len(text) / 4)


def is_safe_content(preview: str) -> bool:
    return not (SELF_HARM_PATTERN.search(preview) or VIOLENCE_PATTERN.search(preview))


def temporal_score(created_at: Optional[str], direction: TemporalDirection, all_dates: Sequence[str]) -> float:
    """Position of created_at between the oldest and newest dates, flipped for 'oldest'"""
    if not created_at or not all_dates:
        return 0.5

    timestamp = datetime.fromisoformat(created_at).timestamp()
    timestamps = [datetime.fromisoformat(d).timestamp() for d in all_dates]
    lo, hi = min(timestamps), max(timestamps)
    if hi == lo:
        return 0.5

    normalized = (timestamp - lo) / (hi - lo)
    return 1 - normalized if direction == TemporalDirection.OLDEST else normalized


def score_candidate(candidate: BaseCandidate, direction: Optional[TemporalDirection]) -> float:
    features = candidate.features

    if isinstance(candidate, ArtifactCandidate):
        semantic = features.semantic_score if features.semantic_score is not None else 0.5
        recency = features.recency_score if features.recency_score is not None else 0.5
        temporal = features.temporal_score if features.temporal_score is not None else 0.5
        if direction:
            return semantic * 0.5 + temporal * 0.4 + recency * 0.1
        return semantic * 0.8 + recency * 0.2

    if isinstance(candidate, MemoryCandidate):
        recency = features.recency_score if features.recency_score is not None else 0.5
        return candidate.strength * 0.7 + recency * 0.3

    return 1.0


def _artifact_category(candidate: ArtifactCandidate) -> str:
    if candidate.features.semantic_score is not None:
        return "semantic"
    typed = TYPED_ARTIFACTS.get(candidate.artifact_type)
    return typed[0] if typed else "semantic"


class ContextRanker:
    """Ranks candidates and allocates them a shared token budget.

    Every input candidate ends up in exactly one of selected or excluded.
    """

    def __init__(self, memory_retrieval_enabled: bool = False, max_token_budget: int = MAX_TOKEN_BUDGET):
        self.memory_retrieval_enabled = memory_retrieval_enabled
        self.max_token_budget = max_token_budget

    def _is_artifact_allowed(self, candidate: ArtifactCandidate, needs: set) -> bool:
        semantic_requested = RetrievalNeed.ARTIFACT_SEMANTIC in needs
        if candidate.features.semantic_score is not None:
            return semantic_requested

        typed = TYPED_ARTIFACTS.get(candidate.artifact_type)
        if typed:
            return typed[1] in needs or semantic_requested
        return semantic_requested

    def _caps(self, plan: Plan) -> Dict[str, int]:
        limits = plan.retrieval.limits
        return {
            "semantic": limits.get(RetrievalNeed.ARTIFACT_SEMANTIC, DEFAULT_MAX_SEMANTIC_ARTIFACTS),
            "highlights": limits.get(RetrievalNeed.VERSE_HIGHLIGHTS, DEFAULT_MAX_HIGHLIGHTS),
            "notes": limits.get(RetrievalNeed.VERSE_NOTES, DEFAULT_MAX_NOTES),
            "session_summaries": limits.get(RetrievalNeed.CONVERSATION_SESSION_SUMMARIES, DEFAULT_MAX_SESSION_SUMMARIES),
            "memories": limits.get(RetrievalNeed.USER_MEMORY, MAX_MEMORIES_FOR_CONTEXT),
        }

    def rank_and_budget(self, candidates: Sequence[BaseCandidate], plan: Plan) -> RankAndBudgetPayload:
        needs = set(plan.retrieval.needs)
        temporal = plan.retrieval.temporal
        direction = temporal.direction if temporal else None

        excluded: List[ExcludedCandidate] = []
        always_include: List[BaseCandidate] = []
        ranked_pool: List[BaseCandidate] = []

        for candidate in candidates:
            if isinstance(candidate, MemoryCandidate):
                if not self.memory_retrieval_enabled:
                    excluded.append(ExcludedCandidate(
                        id=candidate.id,
                        reason="disabled",
                        details="User memory retrieval is disabled for pipeline flows",
                    ))
                else:
                    ranked_pool.append(candidate)
            elif isinstance(candidate, ArtifactCandidate):
                if self._is_artifact_allowed(candidate, needs):
                    ranked_pool.append(candidate)
                else:
                    excluded.append(ExcludedCandidate(
                        id=candidate.id,
                        reason="plan_needs",
                        details="Artifact not requested by retrieval plan",
                    ))
            else:
                always_include.append(candidate)

        filtered: List[BaseCandidate] = []
        for candidate in ranked_pool:
            semantic = candidate.features.semantic_score
            if not is_safe_content(candidate.preview):
                excluded.append(ExcludedCandidate(
                    id=candidate.id,
                    reason="safety_filter",
                    details="Contains potentially sensitive content",
                ))
            elif isinstance(candidate, ArtifactCandidate) and semantic is not None and semantic < SEMANTIC_THRESHOLD:
                excluded.append(ExcludedCandidate(
                    id=candidate.id,
                    reason="semantic_threshold",
                    details=f"Semantic score {semantic:.3f} below threshold {SEMANTIC_THRESHOLD}",
                ))
            else:
                filtered.append(candidate)

        if direction:
            artifacts = [c for c in filtered if isinstance(c, ArtifactCandidate)]
            all_dates = [c.features.created_at for c in artifacts if c.features.created_at]
            logger.debug(
                "Applying temporal re-ranking",
                direction=direction.value,
                range=temporal.range.value if temporal.range else None,
                artifact_count=len(artifacts),
            )
            filtered = [
                c.model_copy(update={"features": c.features.model_copy(update={
                    "temporal_score": temporal_score(c.features.created_at, direction, all_dates),
                })})
                if isinstance(c, ArtifactCandidate) else c
                for c in filtered
            ]

        scored = sorted(
            ((c, score_candidate(c, direction)) for c in filtered),
            key=lambda item: item[1],
            reverse=True,
        )

        selected: List[SelectedCandidate] = []
        used = 0

        for candidate in always_include:
            estimate = estimate_tokens(candidate.preview)
            if used + estimate > self.max_token_budget:
                excluded.append(ExcludedCandidate(
                    id=candidate.id,
                    reason="budget_exceeded",
                    details=f"Would exceed {self.max_token_budget} token budget",
                ))
                continue
            selected.append(SelectedCandidate(
                id=candidate.id,
                candidate=candidate,
                final_score=1.0,
                token_estimate=estimate,
                reason=candidate.source,
            ))
            used += estimate

        caps = self._caps(plan)
        counts = {category: 0 for category in caps}

        for candidate, score in scored:
            if isinstance(candidate, MemoryCandidate):
                category, reason = "memories", "memory_ranking"
            else:
                category = _artifact_category(candidate)
                reason = "semantic_ranking" if candidate.features.semantic_score is not None else "artifact_ranking"

            if counts[category] >= caps[category]:
                excluded.append(ExcludedCandidate(
                    id=candidate.id,
                    reason="max_limit",
                    details=f"Max {CATEGORY_LABELS[category]} {caps[category]}",
                ))
                continue

            estimate = estimate_tokens(candidate.preview)
            if used + estimate > self.max_token_budget:
                excluded.append(ExcludedCandidate(
                    id=candidate.id,
                    reason="budget_exceeded",
                    details=f"Would exceed {self.max_token_budget} token budget",
                ))
                continue

            selected.append(SelectedCandidate(
                id=candidate.id,
                candidate=candidate,
                final_score=score,
                token_estimate=estimate,
                reason=reason,
            ))
            used += estimate
            counts[category] += 1

        by_source: Dict[str, int] = {}
        for entry in selected:
            by_source[entry.candidate.source] = by_source.get(entry.candidate.source, 0) + entry.token_estimate

        scoring_summary = None
        if selected:
            scores = [entry.final_score for entry in selected]
            scoring_summary = ScoringSummary(avg_score=sum(scores) / len(scores), score_range=(min(scores), max(scores)))

        return RankAndBudgetPayload(
            plan=plan,
            selected=selected,
            excluded=excluded,
            budget=BudgetSummary(max=self.max_token_budget, used=used, by_source=by_source),
            scoring_summary=scoring_summary,
        )
