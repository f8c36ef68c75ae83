from typing import Callable, Optional
import structlog

from forge_agent.domain.context.context_ranker import ContextRanker
from forge_agent.domain.context.state.side_effects import SideEffects
from forge_agent.domain.models.artifacts import RANK_AND_BUDGET_SCHEMA_VERSION, StageOutput
from forge_agent.domain.models.candidate import ArtifactCandidate, MemoryCandidate
from forge_agent.domain.models.run_context import PipelineStage, RunContext
from forge_agent.domain.orchestration.stages.base_stage import BaseStage, StageOutputs

logger = structlog.get_logger(__name__)


class RankAndBudgetStage(BaseStage):
    stage = PipelineStage.RANK_AND_BUDGET
    schema_version = RANK_AND_BUDGET_SCHEMA_VERSION
    requires = (PipelineStage.CONTEXT_CANDIDATES,)

    def __init__(
        self,
        ranker: ContextRanker,
        side_effects_factory: Optional[Callable[[RunContext], SideEffects]] = None,
    ):
        super().__init__("Filters, scores and budgets candidates")
        self.ranker = ranker
        self.side_effects_factory = side_effects_factory

    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        candidates_payload = outputs[PipelineStage.CONTEXT_CANDIDATES].payload
        payload = self.ranker.rank_and_budget(candidates_payload.candidates, candidates_payload.plan)

        # Selected durable memories count as accessed
        memory_ids = [s.candidate.memory_id for s in payload.selected if isinstance(s.candidate, MemoryCandidate)]
        if memory_ids and self.side_effects_factory is not None:
            try:
                await self.side_effects_factory(ctx).update_access_stats(memory_ids)
            except Exception as e:
                logger.warning("Failed to update memory access stats", run_id=ctx.run_id, error=str(e))

        artifact_count = sum(1 for s in payload.selected if isinstance(s.candidate, ArtifactCandidate))
        other_count = len(payload.selected) - artifact_count

        return StageOutput(
            payload=payload,
            summary=f"{artifact_count} artifacts, {other_count} other, {len(payload.excluded)} excluded",
            stats={
                "selected_count": len(payload.selected),
                "artifact_count": artifact_count,
                "excluded_count": len(payload.excluded),
                "budget_used": payload.budget.used,
                "budget_max": payload.budget.max,
            },
        )
