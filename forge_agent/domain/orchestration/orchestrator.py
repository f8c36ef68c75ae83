from typing import TypedDict, Annotated, Any, Dict, List, Literal, Optional, Set
import asyncio
from datetime import datetime, timezone
import operator
import time
from langgraph.graph import StateGraph, END
from pydantic import BaseModel
import structlog

from forge_agent.domain.context.context_manager import ContextManager
from forge_agent.domain.context.context_ranker import ContextRanker
from forge_agent.domain.context.context_retriever import ContextRetriever
from forge_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from forge_agent.domain.context.memory.candidate_extractor import CandidateExtractor
from forge_agent.domain.context.state.side_effects import SideEffects, create_side_effects
from forge_agent.domain.context.state.state_manager import UserStateManager
from forge_agent.domain.errors import PipelineError
from forge_agent.domain.models.artifacts import (
    ModelCallResponse,
    PipelineResult,
    StageArtifact,
    StageOutput,
)
from forge_agent.domain.models.run_context import (
    PipelineStage,
    RunContext,
    get_elapsed_ms,
    get_primary_verse_ref,
    is_debug_mode,
    should_stop_at_stage,
)
from forge_agent.domain.orchestration.stages.base_stage import BaseStage
from forge_agent.domain.orchestration.stages.context_candidates import ContextCandidatesStage
from forge_agent.domain.orchestration.stages.ingress import IngressStage
from forge_agent.domain.orchestration.stages.memory_extraction import MemoryExtractionStage
from forge_agent.domain.orchestration.stages.model_call import ModelCallStage
from forge_agent.domain.orchestration.stages.prompt_assembly import PromptAssemblyStage
from forge_agent.domain.orchestration.stages.rank_and_budget import RankAndBudgetStage
from forge_agent.domain.planning.plan_builder import PlanBuilder
from forge_agent.domain.prompt.prompt_assembler import PromptAssembler
from forge_agent.domain.tool.tool_executor import ToolExecutor
from forge_agent.domain.tool.tool_registry import ToolRegistry
from forge_agent.infrastructure.config.settings import PipelineSettings
from forge_agent.infrastructure.llm.completion_client import CompletionClient
from forge_agent.infrastructure.observability.langfuse_tracing import PipelineTracer
from forge_agent.infrastructure.observability.logging import MetricsCollector, pipeline_logger
from forge_agent.infrastructure.persistence.artifact_store import ArtifactStore
from forge_agent.infrastructure.persistence.storage import PipelineStorage
from forge_agent.infrastructure.search.similarity_search import SimilaritySearch
from forge_agent.infrastructure.security.vault import Vault, resolve_vault_key

logger = structlog.get_logger(__name__)


STAGE_ORDER = [
    PipelineStage.INGRESS,
    PipelineStage.CONTEXT_CANDIDATES,
    PipelineStage.RANK_AND_BUDGET,
    PipelineStage.PROMPT_ASSEMBLY,
    PipelineStage.MODEL_CALL,
]


def get_stage_order() -> List[PipelineStage]:
    """The synchronous stages in execution order"""
    return list(STAGE_ORDER)


def get_next_stage(stage: PipelineStage) -> Optional[PipelineStage]:
    if stage not in STAGE_ORDER:
        return None
    index = STAGE_ORDER.index(stage)
    return STAGE_ORDER[index + 1] if index + 1 < len(STAGE_ORDER) else None


def merge_outputs(
    current: Dict[PipelineStage, StageOutput],
    update: Dict[PipelineStage, StageOutput],
) -> Dict[PipelineStage, StageOutput]:
    return {**current, **update}


class PipelineGraphState(TypedDict):
    """State for the pipeline graph"""
    ctx: RunContext
    outputs: Annotated[Dict[PipelineStage, StageOutput], merge_outputs]
    artifacts: Annotated[List[StageArtifact], operator.add]
    stopped_at: Optional[PipelineStage]
    trace: Any


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class PipelineOrchestrator:
    """Runs the staged pipeline on a LangGraph state graph.

    Stages run strictly in order, each producing a persisted artifact. A run
    halts after the stage named by `stop_at_stage`. Memory extraction is
    spawned as a detached task once the model has answered.
    """

    def __init__(
        self,
        settings: PipelineSettings,
        storage: PipelineStorage,
        similarity_search: SimilaritySearch,
        completion_client: CompletionClient,
        metrics: Optional[MetricsCollector] = None,
        tracer: Optional[PipelineTracer] = None,
        cache: Optional[CacheMemoryStore] = None,
        state_manager: Optional[UserStateManager] = None,
    ):
        self.settings = settings
        self.storage = storage
        self.completion_client = completion_client
        self.metrics = metrics or MetricsCollector()
        self.tracer = tracer or PipelineTracer(settings.langfuse)
        self.cache = cache or CacheMemoryStore()
        self.state_manager = state_manager or UserStateManager()

        self.vault = Vault(storage, resolve_vault_key(settings.vault_encryption_key, settings.environment))
        self.artifact_store = ArtifactStore(storage)

        retriever = ContextRetriever(
            storage,
            similarity_search,
            memory_retrieval_enabled=settings.memory_retrieval_enabled,
        )
        tool_executor = ToolExecutor(ToolRegistry()) if settings.tools_enabled else None

        self.stages: Dict[PipelineStage, BaseStage] = {
            PipelineStage.INGRESS: IngressStage(PlanBuilder(
                completion_client,
                model=settings.planner_model,
                timeout_seconds=settings.llm_timeout_seconds,
            )),
            PipelineStage.CONTEXT_CANDIDATES: ContextCandidatesStage(ContextManager(
                retriever,
                provider_timeout_seconds=settings.provider_timeout_seconds,
                metrics=self.metrics,
            )),
            PipelineStage.RANK_AND_BUDGET: RankAndBudgetStage(
                ContextRanker(memory_retrieval_enabled=settings.memory_retrieval_enabled),
                side_effects_factory=self.create_side_effects,
            ),
            PipelineStage.PROMPT_ASSEMBLY: PromptAssemblyStage(PromptAssembler(
                model=settings.chat_model,
                tools_enabled=settings.tools_enabled,
            )),
            PipelineStage.MODEL_CALL: ModelCallStage(
                completion_client,
                vault=self.vault,
                tool_executor=tool_executor,
                side_effects_factory=self.create_side_effects,
                max_tool_iterations=settings.max_tool_iterations,
            ),
        }
        self.memory_extraction = MemoryExtractionStage(
            CandidateExtractor(
                completion_client,
                model=settings.planner_model,
                timeout_seconds=settings.llm_timeout_seconds,
            ),
            storage,
            side_effects_factory=self.create_side_effects,
        )

        self._background_tasks: Set[asyncio.Task] = set()
        self.workflow = self._create_workflow()

    def create_side_effects(self, ctx: RunContext) -> SideEffects:
        return create_side_effects(ctx, self.storage, self.cache, self.state_manager, metrics=self.metrics)

    def _create_workflow(self):
        """One node per stage, each followed by a breakpoint check"""

        workflow = StateGraph(PipelineGraphState)

        for stage in STAGE_ORDER:
            workflow.add_node(stage.value, self._make_node(self.stages[stage]))

        workflow.set_entry_point(STAGE_ORDER[0].value)

        for stage in STAGE_ORDER:
            next_stage = get_next_stage(stage)
            if next_stage is None:
                workflow.add_edge(stage.value, END)
                continue
            workflow.add_conditional_edges(
                stage.value,
                self.check_breakpoint,
                {
                    "continue": next_stage.value,
                    "stop": END,
                },
            )

        return workflow.compile()

    def _make_node(self, executor: BaseStage):
        async def node(state: PipelineGraphState) -> Dict[str, Any]:
            return await self.run_stage(executor, state)
        return node

    def check_breakpoint(self, state: PipelineGraphState) -> Literal["continue", "stop"]:
        return "stop" if state.get("stopped_at") else "continue"

    async def run_stage(self, executor: BaseStage, state: PipelineGraphState) -> Dict[str, Any]:
        """Time a stage, vault its raw content (debug only), persist its artifact"""

        ctx = state["ctx"]
        outputs = state["outputs"]
        stage = executor.stage

        if not executor.validate_input(outputs):
            raise PipelineError(f"Stage {stage.value} is missing its inputs")

        pipeline_logger.log_stage_event("started", stage.value, ctx.run_id)
        start = time.perf_counter()

        output = await executor.process(ctx, outputs)
        executor.update_activity()
        duration_ms = int((time.perf_counter() - start) * 1000)

        artifact = await self._record(ctx, executor, output, duration_ms, state.get("trace"))

        stopped = should_stop_at_stage(ctx, stage)
        pipeline_logger.log_stage_event(
            "stopped" if stopped else "completed",
            stage.value,
            ctx.run_id,
            data={"duration_ms": duration_ms, "summary": output.summary},
        )

        return {
            "outputs": {stage: output},
            "artifacts": [artifact],
            "stopped_at": stage if stopped else None,
        }

    async def _record(
        self,
        ctx: RunContext,
        executor: BaseStage,
        output: StageOutput,
        duration_ms: int,
        trace: Any,
    ) -> StageArtifact:
        stage = executor.stage
        raw_ref = None
        if output.raw_content is not None and is_debug_mode(ctx):
            raw_ref = await self.vault.store(ctx, stage, _jsonable(output.raw_content)) or None

        # Later stages find the full content through the payload's raw_ref
        if raw_ref and hasattr(output.payload, "raw_ref"):
            output.payload = output.payload.model_copy(update={"raw_ref": raw_ref})

        artifact = StageArtifact(
            trace_id=ctx.trace_id,
            run_id=ctx.run_id,
            stage=stage,
            schema_version=executor.schema_version,
            duration_ms=duration_ms,
            summary=output.summary,
            payload=output.payload.model_dump(mode="json"),
            raw_ref=raw_ref,
            stats=output.stats,
        )
        await self.artifact_store.persist(ctx, artifact)

        self.metrics.record_latency(f"stage.{stage.value}", duration_ms)
        self.tracer.record_stage(trace, stage.value, duration_ms, output.summary, output.stats)
        return artifact

    async def run_pipeline(self, ctx: RunContext) -> PipelineResult:
        """Run the synchronous stages; model-provider errors propagate to the caller"""

        structlog.contextvars.bind_contextvars(trace_id=ctx.trace_id, run_id=ctx.run_id, mode=ctx.mode.value)
        try:
            trace = self.tracer.start_run(
                ctx.trace_id, ctx.run_id, ctx.user_id, ctx.entrypoint, ctx.mode.value
            )
            try:
                final = await self.workflow.ainvoke({
                    "ctx": ctx,
                    "outputs": {},
                    "artifacts": [],
                    "stopped_at": None,
                    "trace": trace,
                })
            except Exception as e:
                logger.error("Pipeline run failed", error=str(e), error_type=type(e).__name__)
                self.metrics.increment_counter("pipeline_failures")
                raise

            artifacts = final["artifacts"]
            if final.get("stopped_at"):
                logger.info("Pipeline stopped at breakpoint", stage=final["stopped_at"].value)
                return PipelineResult(artifacts=artifacts, stopped_at=final["stopped_at"])

            outputs = final["outputs"]
            model_output = outputs[PipelineStage.MODEL_CALL]
            model_payload = model_output.payload
            self.tracer.record_generation(
                trace,
                model_payload.model,
                model_payload.latency_ms,
                model_payload.input_tokens,
                model_payload.output_tokens,
                model_payload.finish_reason,
            )

            self._spawn_memory_extraction(ctx, outputs, trace)
            logger.info(
                "Pipeline completed",
                elapsed_ms=get_elapsed_ms(ctx),
                artifacts=len(artifacts),
                primary_verse=get_primary_verse_ref(ctx),
            )

            return PipelineResult(
                artifacts=artifacts,
                response=ModelCallResponse(
                    content=model_output.raw_content["content"],
                    tool_calls=model_payload.tool_calls,
                ),
            )
        finally:
            structlog.contextvars.unbind_contextvars("trace_id", "run_id", "mode")

    def _spawn_memory_extraction(
        self,
        ctx: RunContext,
        outputs: Dict[PipelineStage, StageOutput],
        trace: Any,
    ) -> None:
        task = asyncio.create_task(self._run_memory_extraction(ctx, dict(outputs), trace))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        self.metrics.set_gauge("background_tasks", len(self._background_tasks))

    async def _run_memory_extraction(
        self,
        ctx: RunContext,
        outputs: Dict[PipelineStage, StageOutput],
        trace: Any,
    ) -> None:
        """Detached; errors end up in the artifact, never in the caller"""

        start = time.perf_counter()
        try:
            output = await self.memory_extraction.process(ctx, outputs)
        except Exception as e:
            logger.error("Memory extraction crashed", error=str(e))
            output = self.memory_extraction.error_output(ctx, outputs, str(e))

        duration_ms = int((time.perf_counter() - start) * 1000)
        try:
            await self._record(ctx, self.memory_extraction, output, duration_ms, trace)
        except Exception as e:
            logger.error("Failed to record memory extraction", error=str(e))
        logger.info("Memory extraction finished", summary=output.summary, duration_ms=duration_ms)

    async def wait_for_background_tasks(self, timeout: Optional[float] = None) -> None:
        """Drain detached memory-extraction tasks, e.g. on shutdown"""

        if not self._background_tasks:
            return
        pending = list(self._background_tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        if not_done:
            logger.warning("Background tasks still running", count=len(not_done))

    async def cleanup_expired(self) -> Dict[str, int]:
        """Periodic sweep of expired artifacts, vault entries and signals"""

        return {
            "artifacts": await self.artifact_store.cleanup_expired(),
            "vault_entries": await self.vault.cleanup_expired(),
            "signals": await self.storage.delete_expired_signals(datetime.now(timezone.utc)),
        }

    async def close(self) -> None:
        await self.wait_for_background_tasks()
        self.tracer.flush()
        await self.completion_client.close()
