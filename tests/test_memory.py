from datetime import datetime, timedelta, timezone

import pytest

from forge_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from forge_agent.domain.context.memory.candidate_extractor import (
    CandidateExtractor,
    ExtractedMemoryCandidate,
    validate_candidates,
)
from forge_agent.domain.context.memory.signal_evaluator import SignalEvaluator
from forge_agent.domain.context.memory.vocabularies import strength_from_occurrences
from forge_agent.domain.context.state.side_effects import NoOpSideEffects, create_side_effects
from forge_agent.domain.context.state.state_manager import UserStateManager
from forge_agent.domain.errors import ModelProviderError
from forge_agent.domain.models.artifacts import StageOutput
from forge_agent.domain.models.records import UserMemory, UserSignal
from forge_agent.domain.models.run_context import ExecutionMode, PipelineStage
from forge_agent.domain.orchestration.stages.ingress import IngressStage
from forge_agent.domain.orchestration.stages.memory_extraction import MemoryExtractionStage
from forge_agent.domain.planning.plan_builder import PlanBuilder

from tests.conftest import FakeCompletionClient

WORK_ANXIETY = {
    "candidates": [
        {"type": "struggle_theme", "value": "work_anxiety", "confidence": 0.9, "evidence": "worry at work"},
    ],
}


def candidate(value="work_anxiety", kind="struggle_theme"):
    return ExtractedMemoryCandidate(type=kind, value=value, confidence=0.9)


def real_side_effects(storage, ctx):
    return create_side_effects(ctx, storage, CacheMemoryStore(), UserStateManager())


class TestCandidateValidation:

    def test_filters_out_of_vocabulary_and_weak(self):
        validated = validate_candidates([
            {"type": "struggle_theme", "value": "work_anxiety", "confidence": 0.8},
            {"type": "struggle_theme", "value": "made_up_theme", "confidence": 0.9},
            {"type": "faith_stage", "value": "seeking", "confidence": 0.5},
            {"type": "favorite_color", "value": "blue", "confidence": 0.9},
            {"type": "faith_stage", "value": "grounded", "confidence": True},
        ])

        assert [(c.type, c.value) for c in validated] == [("struggle_theme", "work_anxiety")]

    def test_caps_candidates_per_turn(self):
        raw = [{"type": "faith_stage", "value": stage, "confidence": 0.9} for stage in ("seeking", "grounded", "leading")]
        assert len(validate_candidates(raw)) == 2

    @pytest.mark.asyncio
    async def test_extractor_parses_json(self):
        client = FakeCompletionClient(json_responses=[WORK_ANXIETY])

        candidates = await CandidateExtractor(client).extract("I always worry at work")

        assert candidates[0].value == "work_anxiety"
        assert client.requests[0]["max_completion_tokens"] == 300

    @pytest.mark.asyncio
    async def test_extractor_bounds_the_call(self):
        client = FakeCompletionClient(json_responses=[WORK_ANXIETY])

        await CandidateExtractor(client, timeout_seconds=4.0).extract("I always worry at work")

        assert client.timeouts == [4.0]

    @pytest.mark.asyncio
    async def test_extractor_tolerates_bad_json(self):
        client = FakeCompletionClient(json_responses=[{"choices": [{"message": {"content": "not json"}}]}])
        assert await CandidateExtractor(client).extract("hello") == []


class TestSignalEvaluator:

    def test_strength_bands(self):
        assert strength_from_occurrences(1) == 0.4
        assert strength_from_occurrences(4) == 0.7
        assert strength_from_occurrences(7) == 1.0

    @pytest.mark.asyncio
    async def test_second_sighting_promotes(self, storage, make_ctx):
        ctx = make_ctx()
        evaluator = SignalEvaluator(storage, real_side_effects(storage, ctx))

        first = await evaluator.evaluate_and_promote("user-1", "conv-1", [candidate()])
        second = await evaluator.evaluate_and_promote("user-1", "conv-2", [candidate()])

        assert first.signals_created == 1
        assert second.memories_promoted == 1
        memories = await storage.list_memories("user-1")
        assert memories[0].value == {"theme": "work_anxiety"}
        assert memories[0].occurrences == 2
        assert await storage.list_signals("user-1") == []

    @pytest.mark.asyncio
    async def test_same_conversation_counts_once(self, storage, make_ctx):
        evaluator = SignalEvaluator(storage, real_side_effects(storage, make_ctx()))

        await evaluator.evaluate_and_promote("user-1", "conv-1", [candidate()])
        result = await evaluator.evaluate_and_promote("user-1", "conv-1", [candidate()])

        assert [d.action for d in result.details] == ["skipped_double_count"]
        assert (await storage.list_signals("user-1"))[0].count == 1

    @pytest.mark.asyncio
    async def test_existing_memory_is_reinforced(self, storage, make_ctx):
        existing = await storage.create_memory(UserMemory(
            user_id="user-1", memory_type="faith_stage", value={"stage": "rebuilding"}, occurrences=3,
        ))
        evaluator = SignalEvaluator(storage, real_side_effects(storage, make_ctx()))

        result = await evaluator.evaluate_and_promote("user-1", "conv-9", [candidate("rebuilding", "faith_stage")])

        assert result.memories_reinforced == 1
        updated = await storage.get_memory(existing.id)
        assert updated.occurrences == 4
        assert updated.strength == 0.7

    @pytest.mark.asyncio
    async def test_dry_run_counts_without_writing(self, storage, make_ctx):
        await storage.create_signal(UserSignal(
            user_id="user-1",
            signal_type="struggle_theme_signal",
            value={"theme": "loneliness"},
            expires_at=datetime.now(timezone.utc) + timedelta(days=3),
            last_counted_conversation_id="conv-1",
        ))
        ctx = make_ctx(mode=ExecutionMode.DEBUG)
        side_effects = NoOpSideEffects(ctx.run_id)
        evaluator = SignalEvaluator(storage, side_effects)

        result = await evaluator.evaluate_and_promote(
            "user-1", "conv-2", [candidate("loneliness"), candidate("discipline")], dry_run=True,
        )

        assert result.memories_promoted == 1
        assert result.signals_created == 1
        assert side_effects.blocked == []
        assert await storage.list_memories("user-1") == []
        assert len(await storage.list_signals("user-1")) == 1


async def run_ingress(ctx):
    output = await IngressStage(PlanBuilder()).process(ctx, {})
    return {PipelineStage.INGRESS: output, PipelineStage.MODEL_CALL: StageOutput(payload=None, summary="")}


class TestMemoryExtractionStage:

    def stage(self, storage, client):
        cache, state = CacheMemoryStore(), UserStateManager()
        return MemoryExtractionStage(
            CandidateExtractor(client),
            storage,
            side_effects_factory=lambda ctx: create_side_effects(ctx, storage, cache, state),
        )

    @pytest.mark.asyncio
    async def test_skips_without_self_disclosure(self, storage, make_ctx):
        client = FakeCompletionClient()
        ctx = make_ctx("Who wrote Hebrews?")

        output = await self.stage(storage, client).process(ctx, await run_ingress(ctx))

        assert not output.payload.eligible
        assert output.summary.startswith("Skipped")
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_extracts_and_records_signal(self, storage, make_ctx):
        client = FakeCompletionClient(json_responses=[WORK_ANXIETY])
        ctx = make_ctx("I keep struggling with worry at work")

        output = await self.stage(storage, client).process(ctx, await run_ingress(ctx))
        payload = output.payload

        assert payload.eligible and payload.success
        assert payload.candidates_extracted[0].value == "work_anxiety"
        assert payload.evaluation_result.actions == ["created_signal"]
        assert not payload.dry_run
        assert len(await storage.list_signals("user-1")) == 1

    @pytest.mark.asyncio
    async def test_debug_run_is_dry(self, storage, make_ctx):
        client = FakeCompletionClient(json_responses=[WORK_ANXIETY])
        ctx = make_ctx("I keep struggling with worry at work", mode=ExecutionMode.DEBUG)

        output = await self.stage(storage, client).process(ctx, await run_ingress(ctx))

        assert output.payload.dry_run
        assert output.summary.endswith("(dry run - no writes)")
        assert await storage.list_signals("user-1") == []

    @pytest.mark.asyncio
    async def test_provider_failure_becomes_error_payload(self, storage, make_ctx):
        client = FakeCompletionClient(json_responses=[ModelProviderError("unavailable", status_code=503)])
        ctx = make_ctx("I keep struggling with worry at work")

        output = await self.stage(storage, client).process(ctx, await run_ingress(ctx))

        assert not output.payload.success
        assert output.payload.error == "unavailable"
        assert output.stats["error"] == 1
