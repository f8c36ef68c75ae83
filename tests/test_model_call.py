import pytest

from forge_agent.domain.context.memory.cache_memory_store import CacheMemoryStore
from forge_agent.domain.context.state.side_effects import create_side_effects
from forge_agent.domain.context.state.state_manager import UserStateManager
from forge_agent.domain.errors import ModelProviderError
from forge_agent.domain.models.artifacts import BudgetSummary, RankAndBudgetPayload
from forge_agent.domain.models.plan import Plan, ResponseMode, ResponsePlan, RetrievalPlan
from forge_agent.domain.models.run_context import ExecutionMode, PipelineStage
from forge_agent.domain.orchestration.stages.model_call import ModelCallStage
from forge_agent.domain.prompt.prompt_assembler import PromptAssembler
from forge_agent.domain.tool.tool_executor import ToolExecutor
from forge_agent.domain.tool.tool_registry import ToolRegistry
from forge_agent.infrastructure.security.vault import Vault

from tests.conftest import FakeCompletionClient, make_completion, make_tool_call

TEST_KEY = bytes(range(32))


def prompt_outputs(ctx, tools_enabled=False):
    selection = RankAndBudgetPayload(
        plan=Plan(response=ResponsePlan(response_mode=ResponseMode.EXPLAIN), retrieval=RetrievalPlan()),
        budget=BudgetSummary(max=2000, used=0),
    )
    output = PromptAssembler(model="chat-model", tools_enabled=tools_enabled).assemble(ctx, selection)
    return {PipelineStage.PROMPT_ASSEMBLY: output}


def side_effects_factory(storage):
    cache, state = CacheMemoryStore(), UserStateManager()
    return lambda ctx: create_side_effects(ctx, storage, cache, state)


class TestModelCallStage:

    @pytest.mark.asyncio
    async def test_content_response(self, make_ctx):
        client = FakeCompletionClient(chat_responses=[
            make_completion("Email me at pat@example.com", prompt_tokens=200, completion_tokens=12),
        ])
        ctx = make_ctx()

        output = await ModelCallStage(client).process(ctx, prompt_outputs(ctx))
        payload = output.payload

        assert payload.response_source == "content"
        assert payload.input_tokens == 200
        assert payload.output_tokens == 12
        assert payload.finish_reason == "stop"
        assert payload.response_preview == "Email me at [EMAIL]"
        assert output.raw_content["content"] == "Email me at pat@example.com"
        assert "tools" not in client.chat_requests[0]
        assert client.chat_requests[0]["max_completion_tokens"] == 500

    @pytest.mark.asyncio
    async def test_refusal_and_empty(self, make_ctx):
        client = FakeCompletionClient(chat_responses=[
            make_completion(content=None, refusal="I can't help with that"),
            make_completion(content=None),
        ])
        ctx = make_ctx()
        stage = ModelCallStage(client)

        refusal = await stage.process(ctx, prompt_outputs(ctx))
        empty = await stage.process(ctx, prompt_outputs(ctx))

        assert refusal.payload.response_source == "refusal"
        assert refusal.raw_content["content"] == "I can't help with that"
        assert empty.payload.response_source == "empty"
        assert empty.raw_content["content"] == ""

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, make_ctx):
        client = FakeCompletionClient(chat_responses=[ModelProviderError("rate limited", status_code=429)])
        ctx = make_ctx()

        with pytest.raises(ModelProviderError) as excinfo:
            await ModelCallStage(client).process(ctx, prompt_outputs(ctx))
        assert excinfo.value.status_code == 429

    @pytest.mark.asyncio
    async def test_prompt_recovered_from_vault(self, storage, make_ctx):
        ctx = make_ctx(mode=ExecutionMode.DEBUG)
        vault = Vault(storage, TEST_KEY)
        outputs = prompt_outputs(ctx)
        prompt = outputs[PipelineStage.PROMPT_ASSEMBLY]
        ref = await vault.store(ctx, PipelineStage.PROMPT_ASSEMBLY, prompt.raw_content.model_dump(mode="json"))
        stripped = prompt.model_copy(update={
            "raw_content": None,
            "payload": prompt.payload.model_copy(update={"raw_ref": ref}),
        })
        client = FakeCompletionClient()

        await ModelCallStage(client, vault=vault).process(ctx, {PipelineStage.PROMPT_ASSEMBLY: stripped})

        roles = [m["role"] for m in client.chat_requests[0]["messages"]]
        assert roles == ["system", "user"]
        assert client.chat_requests[0]["messages"][0]["content"].startswith("You are a careful")

    @pytest.mark.asyncio
    async def test_minimal_prompt_without_raw_content(self, make_ctx):
        ctx = make_ctx("Who was Boaz?")
        outputs = prompt_outputs(ctx)
        prompt = outputs[PipelineStage.PROMPT_ASSEMBLY]
        stripped = prompt.model_copy(update={"raw_content": None})
        client = FakeCompletionClient()

        await ModelCallStage(client).process(ctx, {PipelineStage.PROMPT_ASSEMBLY: stripped})

        assert client.chat_requests[0]["messages"] == [{"role": "user", "content": "Who was Boaz?"}]


class TestToolLoop:

    @pytest.mark.asyncio
    async def test_tool_call_then_answer(self, storage, make_ctx):
        client = FakeCompletionClient(chat_responses=[
            make_completion(
                content=None,
                tool_calls=[make_tool_call("call_1", "remember_preference", {"tone": "gentle"})],
                finish_reason="tool_calls",
                prompt_tokens=100,
                completion_tokens=10,
            ),
            make_completion("Noted, I'll keep it gentle.", prompt_tokens=150, completion_tokens=20),
        ])
        ctx = make_ctx("Please be gentle with me")
        stage = ModelCallStage(
            client,
            tool_executor=ToolExecutor(ToolRegistry()),
            side_effects_factory=side_effects_factory(storage),
        )

        output = await stage.process(ctx, prompt_outputs(ctx, tools_enabled=True))

        assert output.raw_content["content"] == "Noted, I'll keep it gentle."
        assert output.payload.input_tokens == 250
        assert output.payload.output_tokens == 30
        assert [t.name for t in output.payload.tool_calls] == ["remember_preference"]
        assert output.payload.tool_calls[0].success

        second_messages = client.chat_requests[1]["messages"]
        assert second_messages[-2]["tool_calls"][0]["id"] == "call_1"
        assert second_messages[-1]["role"] == "tool"
        assert second_messages[-1]["tool_call_id"] == "call_1"

        memories = await storage.list_memories("user-1")
        assert memories[0].memory_type == "tone_preference"
        assert memories[0].value == {"tone": "gentle"}

    @pytest.mark.asyncio
    async def test_tool_writes_blocked_in_debug(self, storage, make_ctx):
        client = FakeCompletionClient(chat_responses=[
            make_completion(content=None, tool_calls=[make_tool_call("call_1", "remember_preference", {"tone": "brief"})]),
            make_completion("Okay."),
        ])
        ctx = make_ctx(mode=ExecutionMode.DEBUG)
        stage = ModelCallStage(
            client,
            tool_executor=ToolExecutor(ToolRegistry()),
            side_effects_factory=side_effects_factory(storage),
        )

        output = await stage.process(ctx, prompt_outputs(ctx, tools_enabled=True))

        assert output.payload.tool_calls[0].success
        assert '"stored": false' in output.payload.tool_calls[0].output_preview
        assert await storage.list_memories("user-1") == []

    @pytest.mark.asyncio
    async def test_iterations_are_bounded(self, storage, make_ctx):
        looping = make_completion(
            content=None,
            tool_calls=[make_tool_call("call_x", "log_study_event", {"event": "passage_read"})],
        )
        client = FakeCompletionClient(chat_responses=[looping, looping, looping])
        ctx = make_ctx()
        stage = ModelCallStage(
            client,
            tool_executor=ToolExecutor(ToolRegistry()),
            side_effects_factory=side_effects_factory(storage),
            max_tool_iterations=1,
        )

        output = await stage.process(ctx, prompt_outputs(ctx, tools_enabled=True))

        assert len(client.chat_requests) == 2
        assert len(output.payload.tool_calls) == 1
        assert output.payload.response_source == "empty"

    @pytest.mark.asyncio
    async def test_tools_not_offered_without_executor(self, make_ctx):
        client = FakeCompletionClient(chat_responses=[
            make_completion(content="plain", tool_calls=[make_tool_call("c", "remember_preference", {"tone": "direct"})]),
        ])
        ctx = make_ctx()

        output = await ModelCallStage(client).process(ctx, prompt_outputs(ctx))

        assert output.raw_content["content"] == "plain"
        assert output.payload.tool_calls == []
        assert len(client.chat_requests) == 1
