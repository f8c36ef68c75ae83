import pytest

from forge_agent.domain.errors import ModelProviderError, PipelineError
from forge_agent.domain.models.run_context import ExecutionMode, PipelineStage
from forge_agent.domain.orchestration.orchestrator import PipelineOrchestrator, get_next_stage, get_stage_order
from forge_agent.infrastructure.search.similarity_search import InMemorySimilaritySearch

from tests.conftest import FakeCompletionClient, make_completion

SYNC_STAGES = [
    PipelineStage.INGRESS,
    PipelineStage.CONTEXT_CANDIDATES,
    PipelineStage.RANK_AND_BUDGET,
    PipelineStage.PROMPT_ASSEMBLY,
    PipelineStage.MODEL_CALL,
]


def build(settings, storage, client):
    return PipelineOrchestrator(settings, storage, InMemorySimilaritySearch(storage), client)


def test_stage_order():
    assert get_stage_order() == SYNC_STAGES
    assert get_next_stage(PipelineStage.INGRESS) == PipelineStage.CONTEXT_CANDIDATES
    assert get_next_stage(PipelineStage.MODEL_CALL) is None
    assert get_next_stage(PipelineStage.MEMORY_EXTRACTION) is None


class TestRunPipeline:

    @pytest.mark.asyncio
    async def test_full_run(self, settings, storage, make_ctx):
        client = FakeCompletionClient(
            chat_responses=[make_completion("Let's look at that together.")],
            json_responses=[{
                "candidates": [{"type": "struggle_theme", "value": "work_anxiety", "confidence": 0.9}],
            }],
        )
        orchestrator = build(settings, storage, client)
        ctx = make_ctx("I keep struggling with worry at work")

        result = await orchestrator.run_pipeline(ctx)
        await orchestrator.wait_for_background_tasks(timeout=5)

        assert result.stopped_at is None
        assert result.response.content == "Let's look at that together."
        assert [a.stage for a in result.artifacts] == SYNC_STAGES
        assert all(a.raw_ref is None for a in result.artifacts)

        extraction = storage.stage_artifacts[(ctx.run_id, "MEMORY_EXTRACTION")]
        assert extraction.payload["eligible"] is True
        assert extraction.payload["evaluation_result"]["actions"] == ["created_signal"]
        assert len(await storage.list_signals("user-1")) == 1
        assert client.timeouts[-1] == settings.llm_timeout_seconds
        assert orchestrator.metrics.metrics["latency.stage.MODEL_CALL"]["count"] == 1

    @pytest.mark.asyncio
    async def test_stops_at_breakpoint(self, settings, storage, make_ctx):
        client = FakeCompletionClient()
        orchestrator = build(settings, storage, client)
        ctx = make_ctx(stop_at_stage=PipelineStage.RANK_AND_BUDGET)

        result = await orchestrator.run_pipeline(ctx)
        await orchestrator.wait_for_background_tasks()

        assert result.stopped_at == PipelineStage.RANK_AND_BUDGET
        assert result.response is None
        assert [a.stage for a in result.artifacts] == SYNC_STAGES[:3]
        assert client.chat_requests == []
        assert (ctx.run_id, "MEMORY_EXTRACTION") not in storage.stage_artifacts

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, settings, storage, make_ctx):
        client = FakeCompletionClient(chat_responses=[ModelProviderError("upstream down", status_code=502)])
        orchestrator = build(settings, storage, client)
        ctx = make_ctx()

        with pytest.raises(ModelProviderError):
            await orchestrator.run_pipeline(ctx)

        assert orchestrator.metrics.metrics["pipeline_failures"] == 1
        persisted = {stage for run_id, stage in storage.stage_artifacts if run_id == ctx.run_id}
        assert "MODEL_CALL" not in persisted
        assert "PROMPT_ASSEMBLY" in persisted

    @pytest.mark.asyncio
    async def test_debug_run_vaults_raw_content(self, settings, storage, make_ctx):
        client = FakeCompletionClient()
        orchestrator = build(settings, storage, client)
        ctx = make_ctx(mode=ExecutionMode.DEBUG)

        result = await orchestrator.run_pipeline(ctx)
        await orchestrator.wait_for_background_tasks()

        by_stage = {a.stage: a for a in result.artifacts}
        prompt_ref = by_stage[PipelineStage.PROMPT_ASSEMBLY].raw_ref
        assert prompt_ref == f"vault://{ctx.run_id}/PROMPT_ASSEMBLY"
        assert by_stage[PipelineStage.PROMPT_ASSEMBLY].payload["raw_ref"] == prompt_ref

        recovered = await orchestrator.vault.retrieve_ref(prompt_ref)
        last_message = recovered["messages"][-1]
        assert (last_message["role"], last_message["content"]) == ("user", "What does grace mean?")
        model_raw = await orchestrator.vault.retrieve(ctx.run_id, PipelineStage.MODEL_CALL)
        assert model_raw["content"] == "Grace is unearned favor."

    @pytest.mark.asyncio
    async def test_stage_without_inputs_is_rejected(self, settings, storage, make_ctx):
        orchestrator = build(settings, storage, FakeCompletionClient())
        state = {"ctx": make_ctx(), "outputs": {}, "artifacts": [], "stopped_at": None, "trace": None}

        with pytest.raises(PipelineError):
            await orchestrator.run_stage(orchestrator.stages[PipelineStage.RANK_AND_BUDGET], state)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_cleanup_and_close(self, settings, storage, make_ctx):
        client = FakeCompletionClient()
        orchestrator = build(settings, storage, client)
        await orchestrator.run_pipeline(make_ctx())

        assert await orchestrator.cleanup_expired() == {"artifacts": 0, "vault_entries": 0, "signals": 0}

        await orchestrator.close()
        assert client.closed
