from forge_agent.domain.context.context_manager import ContextManager, dedupe_candidates, group_by_source
from forge_agent.domain.models.artifacts import (
    CONTEXT_CANDIDATES_SCHEMA_VERSION,
    ContextCandidatesPayload,
    StageOutput,
)
from forge_agent.domain.models.run_context import PipelineStage, RunContext
from forge_agent.domain.orchestration.stages.base_stage import BaseStage, StageOutputs

ARTIFACT_PROVIDERS = ("artifact_semantic", "verse_highlights", "verse_notes", "conversation_session_summaries")


class ContextCandidatesStage(BaseStage):
    stage = PipelineStage.CONTEXT_CANDIDATES
    schema_version = CONTEXT_CANDIDATES_SCHEMA_VERSION
    requires = (PipelineStage.INGRESS,)

    def __init__(self, context_manager: ContextManager):
        super().__init__("Fans out to context providers and dedupes their candidates")
        self.context_manager = context_manager

    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        ingress = outputs[PipelineStage.INGRESS].payload
        by_provider = await self.context_manager.gather_candidates(ctx, ingress)

        merged = [c for items in by_provider.values() for c in items]
        candidates = dedupe_candidates(merged)
        by_source = group_by_source(candidates)

        payload = ContextCandidatesPayload(
            candidates=candidates,
            by_source_counts=by_source,
            plan=ingress.plan,
        )
        return StageOutput(
            payload=payload,
            summary=f"{len(candidates)} candidates from {len(by_source)} sources",
            stats={
                "total_candidates": len(candidates),
                "bible_count": len(by_provider.get("bible", [])),
                "memory_count": len(by_provider.get("user_memory", [])),
                "life_context_count": len(by_provider.get("life_context", [])),
                "system_count": len(by_provider.get("system", [])),
                "artifact_count": sum(len(by_provider.get(name, [])) for name in ARTIFACT_PROVIDERS),
                "reading_session_count": len(by_provider.get("bible_reading_sessions", [])),
            },
        )
