from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
import asyncio
import structlog

from forge_agent.domain.context.context_retriever import ContextRetriever
from forge_agent.domain.models.artifacts import IngressPayload
from forge_agent.domain.models.candidate import BaseCandidate, CandidateFeatures
from forge_agent.domain.models.run_context import RunContext, get_remaining_seconds
from forge_agent.infrastructure.observability.logging import MetricsCollector, pipeline_logger

logger = structlog.get_logger(__name__)

Provider = Callable[[RunContext, IngressPayload], Awaitable[List[Any]]]


def _max_score(current: Optional[float], incoming: Optional[float]) -> Optional[float]:
    if incoming is None:
        return current
    return max(incoming, current or 0.0)


def merge_features(current: CandidateFeatures, incoming: CandidateFeatures) -> CandidateFeatures:
    """Field-wise max of scores; the incoming creation time wins when present"""
    return CandidateFeatures(
        semantic_score=_max_score(current.semantic_score, incoming.semantic_score),
        recency_score=_max_score(current.recency_score, incoming.recency_score),
        temporal_score=_max_score(current.temporal_score, incoming.temporal_score),
        scope_score=_max_score(current.scope_score, incoming.scope_score),
        created_at=incoming.created_at or current.created_at,
    )


def dedupe_candidates(candidates: Sequence[BaseCandidate]) -> List[BaseCandidate]:
    """Collapse candidates sharing an id.

    The entry with the higher semantic score is kept (ties broken by recency),
    and its features become the max-merge of both.
    """
    by_id: Dict[str, BaseCandidate] = {}

    for candidate in candidates:
        existing = by_id.get(candidate.id)
        if existing is None:
            by_id[candidate.id] = candidate
            continue

        existing_sem = existing.features.semantic_score if existing.features.semantic_score is not None else -1
        incoming_sem = candidate.features.semantic_score if candidate.features.semantic_score is not None else -1
        existing_rec = existing.features.recency_score if existing.features.recency_score is not None else -1
        incoming_rec = candidate.features.recency_score if candidate.features.recency_score is not None else -1

        replace = incoming_sem > existing_sem or (incoming_sem == existing_sem and incoming_rec > existing_rec)
        winner = candidate if replace else existing
        by_id[candidate.id] = winner.model_copy(
            update={"features": merge_features(existing.features, candidate.features)}
        )

    return list(by_id.values())


def group_by_source(candidates: Sequence[BaseCandidate]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for candidate in candidates:
        source = getattr(candidate, "source", "unknown")
        counts[source] = counts.get(source, 0) + 1
    return counts


class ContextManager:
    """Fans out to candidate providers concurrently and merges their results"""

    def __init__(
        self,
        retriever: ContextRetriever,
        provider_timeout_seconds: Optional[float] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.retriever = retriever
        self.provider_timeout_seconds = provider_timeout_seconds
        self.metrics = metrics
        self.providers: Dict[str, Provider] = {
            "bible": retriever.get_bible_context,
            "user_memory": retriever.get_user_memories,
            "life_context": retriever.get_life_context,
            "system": retriever.get_system_context,
            "artifact_semantic": retriever.get_artifact_context,
            "verse_highlights": retriever.get_verse_highlights,
            "verse_notes": retriever.get_verse_notes,
            "conversation_session_summaries": retriever.get_conversation_session_summaries,
            "bible_reading_sessions": retriever.get_bible_reading_sessions,
        }

    def _timeout_for(self, ctx: RunContext) -> Optional[float]:
        remaining = get_remaining_seconds(ctx)
        limits = [t for t in (remaining, self.provider_timeout_seconds) if t is not None]
        return min(limits) if limits else None

    async def _run_provider(self, name: str, provider: Provider, ctx: RunContext, ingress: IngressPayload) -> List[Any]:
        """Run one provider; failures and timeouts yield no candidates"""
        try:
            return await asyncio.wait_for(provider(ctx, ingress), timeout=self._timeout_for(ctx))
        except asyncio.TimeoutError:
            pipeline_logger.log_provider_failure(name, ctx.run_id, "timed out", timed_out=True)
        except Exception as e:
            pipeline_logger.log_provider_failure(name, ctx.run_id, str(e))

        if self.metrics:
            self.metrics.increment_counter("provider_failures", tags={"provider": name})
        return []

    async def gather_candidates(self, ctx: RunContext, ingress: IngressPayload) -> Dict[str, List[Any]]:
        """Provider name -> raw candidates, all providers run concurrently"""
        names = list(self.providers)
        results = await asyncio.gather(
            *(self._run_provider(name, self.providers[name], ctx, ingress) for name in names)
        )

        by_provider = dict(zip(names, results))
        logger.info(
            "Gathered candidates",
            run_id=ctx.run_id,
            counts={name: len(items) for name, items in by_provider.items() if items},
        )
        return by_provider
