from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
import math
import re
import structlog

from forge_agent.domain.context.memory.vocabularies import MAX_MEMORIES_FOR_CONTEXT, MIN_STRENGTH_FOR_CONTEXT
from forge_agent.domain.models.artifacts import IngressPayload
from forge_agent.domain.models.candidate import (
    ArtifactCandidate,
    BibleCandidate,
    CandidateFeatures,
    LifeContextCandidate,
    MemoryCandidate,
    ReadingRef,
    ReadingSessionCandidate,
    SystemCandidate,
)
from forge_agent.domain.models.plan import ARTIFACT_TYPES, ResponseMode, RetrievalNeed, ScriptureScope
from forge_agent.domain.models.records import UserArtifact
from forge_agent.domain.models.run_context import RunContext
from forge_agent.domain.planning.bible_reference import book_display_name
from forge_agent.domain.planning.detectors import compute_date_bounds
from forge_agent.domain.redaction import redact_preview
from forge_agent.infrastructure.persistence.storage import PipelineStorage
from forge_agent.infrastructure.search.similarity_search import SearchFilters, SimilaritySearch

logger = structlog.get_logger(__name__)

SEMANTIC_TOP_K = 20
RECENT_ARTIFACTS_LIMIT = 20

ARTIFACT_TYPE_LABELS = {
    "conversation_session_summary": "Session Summary",
    "journal_entry": "Journal",
    "prayer_request": "Prayer Request",
    "prayer_update": "Prayer Update",
    "testimony": "Testimony",
    "verse_highlight": "Highlight",
    "verse_note": "Note",
    "group_meeting_notes": "Meeting Notes",
}

READ_RANGE_PATTERN = re.compile(r"^(\d{1,3})(?:-(\d{1,3}))?$")


def recency_score(at: datetime, now: Optional[datetime] = None) -> float:
    """Step decay over 90 days"""
    now = now or datetime.now(timezone.utc)
    age_days = (now - at).total_seconds() / 86400

    if age_days < 1:
        return 1.0
    if age_days < 7:
        return 0.9
    if age_days < 30:
        return 0.7
    if age_days < 90:
        return 0.5
    return 0.3


def format_artifact_label(artifact_type: str, title: Optional[str]) -> str:
    type_label = ARTIFACT_TYPE_LABELS.get(artifact_type, "Artifact")
    return f"{type_label}: {title}" if title else type_label


def parse_first_verse_range(read_range: str) -> Optional[Tuple[int, int]]:
    """'2:1-10', '2:1', '1-10' or '1' -> (start, end) verses"""
    raw = read_range.strip()
    if not raw:
        return None

    after_colon = raw.split(":", 1)[1] if ":" in raw else raw
    match = READ_RANGE_PATTERN.match(after_colon)
    if not match:
        return None

    a = int(match.group(1))
    b = int(match.group(2)) if match.group(2) else a
    return max(1, min(a, b)), max(1, max(a, b))


def format_duration(seconds: Optional[float]) -> Optional[str]:
    if seconds is None or not math.isfinite(seconds) or seconds < 0:
        return None
    mins, secs = int(seconds // 60), int(seconds % 60)
    if mins <= 0:
        return f"{secs}s"
    return f"{mins}m {secs}s" if secs > 0 else f"{mins}m"


def create_artifact_candidate(artifact: UserArtifact, features: CandidateFeatures) -> ArtifactCandidate:
    note_summary = artifact.metadata.get("note_summary")
    note_tags = artifact.metadata.get("note_tags") or []

    return ArtifactCandidate(
        id=f"artifact:{artifact.id}",
        label=format_artifact_label(artifact.type, artifact.title),
        preview=redact_preview(artifact.content),
        features=features,
        artifact_type=artifact.type,
        title=artifact.title,
        scripture_refs=artifact.scripture_refs,
        created_at=artifact.created_at.isoformat(),
        full_content=artifact.content,
        note_summary=note_summary if isinstance(note_summary, str) and note_summary else None,
        note_tags=[str(t) for t in note_tags] if isinstance(note_tags, list) else [],
        artifact_metadata=artifact.metadata,
    )


def _recency_features(at: datetime) -> CandidateFeatures:
    return CandidateFeatures(recency_score=recency_score(at), created_at=at.isoformat())


def _scope_book_name(scope: ScriptureScope) -> Optional[str]:
    if scope.book_name and scope.book_name.strip():
        return scope.book_name.strip()
    return book_display_name(scope.book_id)


def _safe_reading_scope(scope: Any) -> Optional[Tuple[str, Optional[int]]]:
    """Re-validate a scope before it reaches the rollup query; malformed scopes become None"""
    if scope is None:
        return None
    kind = getattr(scope, "kind", None)
    book_id = getattr(scope, "book_id", None)
    chapter = getattr(scope, "chapter", None)

    if not isinstance(book_id, str) or not book_id.strip():
        return None
    if kind == "book":
        return book_id.strip(), None
    if kind == "chapter":
        if isinstance(chapter, bool) or not isinstance(chapter, (int, float)) or not math.isfinite(chapter):
            return None
        return book_id.strip(), int(math.floor(chapter))
    return None


class ContextRetriever:
    """Candidate providers, one per context source.

    Each provider takes the run context and the ingress payload and returns
    candidates. Providers gate themselves on the plan's retrieval needs and
    let storage errors propagate to the caller's isolation boundary.
    """

    def __init__(
        self,
        storage: PipelineStorage,
        similarity_search: SimilaritySearch,
        memory_retrieval_enabled: bool = False,
    ):
        self.storage = storage
        self.similarity_search = similarity_search
        self.memory_retrieval_enabled = memory_retrieval_enabled

    async def get_bible_context(self, ctx: RunContext, ingress: IngressPayload) -> List[BibleCandidate]:
        candidates = []
        for entity in ingress.detected_entities:
            if entity.type not in ("verse", "chapter"):
                continue
            candidates.append(BibleCandidate(
                id=f"bible:{entity.reference}",
                label=entity.reference,
                preview=redact_preview(entity.text) if entity.text else f"Reference: {entity.reference}",
                reference=entity.reference,
                entity_type=entity.type,
                full_text=entity.text,
            ))
        return candidates

    async def get_artifact_context(self, ctx: RunContext, ingress: IngressPayload) -> List[ArtifactCandidate]:
        """Semantic matches for the plan query; recency only for session start"""
        retrieval = ingress.plan.retrieval
        if not retrieval.has_need(RetrievalNeed.ARTIFACT_SEMANTIC):
            return []

        artifact_types = list(retrieval.artifact_types or ARTIFACT_TYPES)
        temporal = retrieval.temporal
        created_after, created_before = compute_date_bounds(temporal.range if temporal else None)

        if ctx.entrypoint == "chat_start":
            recent = await self.storage.query_user_artifacts(
                user_id=ctx.user_id,
                types=artifact_types,
                status="active",
                created_after=created_after,
                created_before=created_before,
                limit=RECENT_ARTIFACTS_LIMIT,
            )
            logger.debug("Found recent artifacts", run_id=ctx.run_id, count=len(recent))
            return [create_artifact_candidate(a, _recency_features(a.created_at)) for a in recent]

        results = await self.similarity_search.search_similar(
            retrieval.query or ctx.message,
            SearchFilters(
                user_id=ctx.user_id,
                types=artifact_types,
                scopes=["private"],
                status="active",
                created_after=created_after,
                created_before=created_before,
            ),
            top_k=SEMANTIC_TOP_K,
        )
        logger.debug("Found semantic artifacts", run_id=ctx.run_id, count=len(results))

        return [
            create_artifact_candidate(
                r.artifact,
                CandidateFeatures(
                    semantic_score=r.score,
                    recency_score=recency_score(r.artifact.created_at),
                    created_at=r.artifact.created_at.isoformat(),
                ),
            )
            for r in results
        ]

    async def get_verse_highlights(self, ctx: RunContext, ingress: IngressPayload) -> List[ArtifactCandidate]:
        if not ingress.plan.retrieval.has_need(RetrievalNeed.VERSE_HIGHLIGHTS):
            return []
        limit = ingress.plan.retrieval.limits.get(RetrievalNeed.VERSE_HIGHLIGHTS, 20)
        return await self._scoped_artifacts(ctx, ingress, "verse_highlight", limit)

    async def get_verse_notes(self, ctx: RunContext, ingress: IngressPayload) -> List[ArtifactCandidate]:
        if not ingress.plan.retrieval.has_need(RetrievalNeed.VERSE_NOTES):
            return []
        limit = ingress.plan.retrieval.limits.get(RetrievalNeed.VERSE_NOTES, 20)
        return await self._scoped_artifacts(ctx, ingress, "verse_note", limit)

    async def _scoped_artifacts(
        self,
        ctx: RunContext,
        ingress: IngressPayload,
        artifact_type: str,
        limit: int,
    ) -> List[ArtifactCandidate]:
        """Typed lookup within the scripture scope, widening chapter to book on no hits"""
        retrieval = ingress.plan.retrieval
        scope = retrieval.scope
        temporal = retrieval.temporal
        created_after, created_before = compute_date_bounds(temporal.range if temporal else None)

        book = _scope_book_name(scope) if scope else None
        chapter = scope.chapter if scope and scope.kind == "chapter" and book else None

        async def query(chapter_filter: Optional[int]) -> List[UserArtifact]:
            return await self.storage.query_user_artifacts(
                user_id=ctx.user_id,
                types=[artifact_type],
                status="active",
                created_after=created_after,
                created_before=created_before,
                book=book,
                chapter=chapter_filter,
                limit=limit,
            )

        rows = await query(chapter)
        if chapter is not None and not rows:
            logger.debug("Widening scope to book", run_id=ctx.run_id, artifact_type=artifact_type, book=book)
            rows = await query(None)

        return [create_artifact_candidate(a, _recency_features(a.created_at)) for a in rows]

    async def get_conversation_session_summaries(
        self, ctx: RunContext, ingress: IngressPayload
    ) -> List[ArtifactCandidate]:
        retrieval = ingress.plan.retrieval
        if not retrieval.has_need(RetrievalNeed.CONVERSATION_SESSION_SUMMARIES):
            return []

        temporal = retrieval.temporal
        created_after, created_before = compute_date_bounds(temporal.range if temporal else None)
        rows = await self.storage.query_user_artifacts(
            user_id=ctx.user_id,
            types=["conversation_session_summary"],
            status="active",
            created_after=created_after,
            created_before=created_before,
            limit=retrieval.limits.get(RetrievalNeed.CONVERSATION_SESSION_SUMMARIES, 5),
        )
        return [create_artifact_candidate(a, _recency_features(a.created_at)) for a in rows]

    async def get_bible_reading_sessions(
        self, ctx: RunContext, ingress: IngressPayload
    ) -> List[ReadingSessionCandidate]:
        retrieval = ingress.plan.retrieval
        if not retrieval.has_need(RetrievalNeed.BIBLE_READING_SESSIONS):
            return []

        temporal = retrieval.temporal
        read_after, read_before = compute_date_bounds(temporal.range if temporal else None)
        safe_scope = _safe_reading_scope(retrieval.scope)
        book_id, chapter = safe_scope if safe_scope else (None, None)

        rollups = await self.storage.query_reading_rollups(
            user_id=ctx.user_id,
            book_id=book_id,
            chapter=chapter,
            read_after=read_after,
            read_before=read_before,
            limit=retrieval.limits.get(RetrievalNeed.BIBLE_READING_SESSIONS, 10),
        )

        candidates = []
        for r in rollups:
            book_name = r.book_name or book_display_name(r.book_id) or r.book_id
            first_read_range = r.read_ranges[0] if r.read_ranges else None
            ref = f"{book_name} {first_read_range}" if first_read_range else f"{book_name} {r.chapter}"
            verse_range = parse_first_verse_range(first_read_range) if first_read_range else None

            parts = []
            if r.translation:
                parts.append(r.translation)
            duration_text = format_duration(r.duration_seconds)
            if duration_text:
                parts.append(duration_text)
            if r.completion_status and r.completion_status.get("status"):
                parts.append(str(r.completion_status["status"]))
            preview = " · ".join(parts) if parts else ref

            seen_at = r.last_read_at or r.updated_at
            candidates.append(ReadingSessionCandidate(
                id=f"bible_chapter_daily_rollup:{r.book_id}:{r.chapter}:{r.local_date}",
                label=f"Reading: {ref}",
                preview=redact_preview(preview),
                features=_recency_features(seen_at),
                translation=r.translation,
                read_ranges=r.read_ranges,
                start_ref=ReadingRef(
                    book_id=r.book_id, book=book_name, chapter=r.chapter,
                    verse=verse_range[0] if verse_range else None,
                ),
                end_ref=ReadingRef(
                    book_id=r.book_id, book=book_name, chapter=r.chapter,
                    verse=verse_range[1] if verse_range else None,
                ),
                duration_seconds=r.duration_seconds,
                completion_status=r.completion_status,
                local_date=r.local_date,
                time_zone=r.time_zone,
                ended_at=r.last_read_at.isoformat() if r.last_read_at else None,
            ))
        return candidates

    async def get_life_context(self, ctx: RunContext, ingress: IngressPayload) -> List[LifeContextCandidate]:
        """Season and weekly intention from the precomputed user context"""
        mode = ingress.plan.response.response_mode
        wanted = (
            mode in (ResponseMode.PASTORAL, ResponseMode.COACH)
            or ingress.plan.retrieval.has_need(RetrievalNeed.USER_MEMORY)
        )
        user_context = ctx.user_context
        life = user_context.life_context if user_context else None
        if not wanted or life is None:
            return []

        entries = [("season", "Current Season", life.current_season)]
        if life.weekly_intention:
            entries.append(("carrying", "What You're Carrying", life.weekly_intention.carrying))
            entries.append(("hoping", "What You're Hoping For", life.weekly_intention.hoping))

        return [
            LifeContextCandidate(
                id=f"life:{ctx.user_id}:{context_type}",
                label=label,
                preview=redact_preview(str(value)),
                context_type=context_type,
                value=str(value),
            )
            for context_type, label, value in entries
            if value
        ]

    async def get_user_memories(self, ctx: RunContext, ingress: IngressPayload) -> List[MemoryCandidate]:
        """Durable memories above the strength floor, strongest first"""
        retrieval = ingress.plan.retrieval
        if not self.memory_retrieval_enabled or not retrieval.has_need(RetrievalNeed.USER_MEMORY):
            return []
        user_context = ctx.user_context
        if not user_context:
            return []

        memories = [m for m in user_context.memories if m.strength >= MIN_STRENGTH_FOR_CONTEXT]
        memories.sort(key=lambda m: m.strength, reverse=True)
        limit = retrieval.limits.get(RetrievalNeed.USER_MEMORY, MAX_MEMORIES_FOR_CONTEXT)

        candidates = []
        for memory in memories[:limit]:
            features = CandidateFeatures()
            if memory.last_seen_at:
                features = _recency_features(memory.last_seen_at)
            summary = ", ".join(f"{k}: {v}" for k, v in memory.value.items())
            candidates.append(MemoryCandidate(
                id=f"memory:{memory.id}",
                label=f"Memory: {memory.memory_type.replace('_', ' ')}",
                preview=redact_preview(summary),
                features=features,
                memory_id=memory.id,
                memory_type=memory.memory_type,
                value=memory.value,
                strength=memory.strength,
            ))
        return candidates

    async def get_system_context(self, ctx: RunContext, ingress: IngressPayload) -> List[SystemCandidate]:
        response = ingress.plan.response
        needs = [n.value for n in ingress.plan.retrieval.needs]
        mode = response.response_mode.value
        return [SystemCandidate(
            id=f"system:plan:{mode}",
            label=f"Plan: {mode}",
            preview=f"Planned response: {mode}; retrieval needs: {', '.join(needs) or 'none'}",
            response_mode=mode,
            confidence=response.confidence,
            signals=response.signals,
            needs=needs,
        )]
