from typing import Callable, Dict, List
import structlog

from forge_agent.domain.context.memory.candidate_extractor import CandidateExtractor, ExtractedMemoryCandidate
from forge_agent.domain.context.memory.signal_evaluator import EvaluationResult, SignalEvaluator
from forge_agent.domain.context.state.side_effects import SideEffects
from forge_agent.domain.models.artifacts import (
    MEMORY_EXTRACTION_SCHEMA_VERSION,
    EvaluationResultSummary,
    ExtractionBasis,
    MemoryCandidateSummary,
    MemoryExtractionPayload,
    StageOutput,
)
from forge_agent.domain.models.run_context import PipelineStage, RunContext, are_side_effects_enabled
from forge_agent.domain.orchestration.stages.base_stage import BaseStage, StageOutputs
from forge_agent.infrastructure.persistence.storage import PipelineStorage

logger = structlog.get_logger(__name__)


def summarize_candidates(candidates: List[ExtractedMemoryCandidate]) -> List[MemoryCandidateSummary]:
    """Drop evidence text; the artifact keeps only type, value and confidence"""
    return [MemoryCandidateSummary(type=c.type, value=c.value, confidence=c.confidence) for c in candidates]


def summarize_evaluation(result: EvaluationResult) -> EvaluationResultSummary:
    return EvaluationResultSummary(
        signals_created=result.signals_created,
        signals_incremented=result.signals_incremented,
        memories_promoted=result.memories_promoted,
        memories_reinforced=result.memories_reinforced,
        actions=[d.action for d in result.details],
    )


class MemoryExtractionStage(BaseStage):
    """Extracts durable-memory candidates from a self-disclosing turn.

    Runs detached after the model call. Never raises: failures become an
    error payload. Runs as a dry run whenever the run's side effects are
    disabled.
    """

    stage = PipelineStage.MEMORY_EXTRACTION
    schema_version = MEMORY_EXTRACTION_SCHEMA_VERSION
    requires = (PipelineStage.INGRESS, PipelineStage.MODEL_CALL)

    def __init__(
        self,
        extractor: CandidateExtractor,
        storage: PipelineStorage,
        side_effects_factory: Callable[[RunContext], SideEffects],
    ):
        super().__init__("Extracts memory candidates and promotes recurring signals")
        self.extractor = extractor
        self.storage = storage
        self.side_effects_factory = side_effects_factory

    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        ingress = outputs[PipelineStage.INGRESS].payload
        response = ingress.plan.response
        basis = ExtractionBasis(
            response_mode=response.response_mode.value,
            self_disclosure=response.flags.self_disclosure,
        )
        dry_run = not are_side_effects_enabled(ctx)
        dry_run_flag = 1 if dry_run else 0

        if not response.flags.self_disclosure:
            return StageOutput(
                payload=MemoryExtractionPayload(eligible=False, basis=basis, dry_run=dry_run),
                summary=f"Skipped: not eligible for extraction (self_disclosure=false){' (dry run)' if dry_run else ''}",
                stats={"eligible": 0, "candidates_extracted": 0, "dry_run": dry_run_flag},
            )

        try:
            candidates = await self.extractor.extract(ingress.normalized_input)

            if not candidates:
                return StageOutput(
                    payload=MemoryExtractionPayload(eligible=True, basis=basis, dry_run=dry_run),
                    summary=f"No candidates extracted{' (dry run)' if dry_run else ''}",
                    stats={"eligible": 1, "candidates_extracted": 0, "dry_run": dry_run_flag},
                )

            evaluator = SignalEvaluator(self.storage, self.side_effects_factory(ctx))
            # request id stands in for the conversation when preventing double counts
            result = await evaluator.evaluate_and_promote(
                ctx.user_id, ctx.request_id, candidates, dry_run=dry_run
            )
        except Exception as e:
            logger.error("Memory extraction failed", run_id=ctx.run_id, error=str(e))
            return self.error_output(ctx, outputs, str(e))

        stats: Dict[str, float] = {
            "eligible": 1,
            "candidates_extracted": len(candidates),
            "signals_created": result.signals_created,
            "signals_incremented": result.signals_incremented,
            "memories_promoted": result.memories_promoted,
            "memories_reinforced": result.memories_reinforced,
            "dry_run": dry_run_flag,
        }
        return StageOutput(
            payload=MemoryExtractionPayload(
                eligible=True,
                basis=basis,
                candidates_extracted=summarize_candidates(candidates),
                evaluation_result=summarize_evaluation(result),
                dry_run=dry_run,
            ),
            summary=(
                f"Extracted {len(candidates)} candidates, promoted {result.memories_promoted}"
                f"{' (dry run - no writes)' if dry_run else ''}"
            ),
            stats=stats,
        )

    def error_output(self, ctx: RunContext, outputs: StageOutputs, error: str) -> StageOutput:
        ingress = outputs[PipelineStage.INGRESS].payload
        response = ingress.plan.response
        dry_run = not are_side_effects_enabled(ctx)
        return StageOutput(
            payload=MemoryExtractionPayload(
                eligible=True,
                basis=ExtractionBasis(
                    response_mode=response.response_mode.value,
                    self_disclosure=response.flags.self_disclosure,
                ),
                success=False,
                error=error,
                dry_run=dry_run,
            ),
            summary=f"Failed: {error}",
            stats={"eligible": 1, "candidates_extracted": 0, "error": 1, "dry_run": 1 if dry_run else 0},
        )
