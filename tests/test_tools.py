import json

import pytest

from forge_agent.domain.context.state.side_effects import NoOpSideEffects
from forge_agent.domain.tool.tool_executor import ToolExecutor
from forge_agent.domain.tool.tool_registry import ToolContext, ToolDefinition, ToolRegistry
from forge_agent.domain.tool.tool_validator import SecurityValidator, ToolParameterValidator


async def echo(arguments, tool_ctx):
    return {"echo": arguments["text"]}


ECHO_TOOL = ToolDefinition(
    id="echo",
    name="Echo",
    description="Echo text back",
    category="testing",
    parameters={
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
    handler=echo,
)


@pytest.fixture
def tool_ctx(make_ctx):
    ctx = make_ctx()
    return ToolContext(ctx=ctx, side_effects=NoOpSideEffects(ctx.run_id))


class TestRegistry:

    def test_builtins_and_categories(self):
        registry = ToolRegistry()

        assert registry.get_tool_info("remember_preference") is not None
        assert [t.id for t in registry.get_tools_by_category("analytics")] == ["log_study_event"]

    def test_openai_schema_shape(self):
        registry = ToolRegistry(include_builtins=False)
        registry.register_tool(ECHO_TOOL)

        schemas = registry.get_openai_schemas()

        assert schemas == [{
            "type": "function",
            "function": {
                "name": "echo",
                "description": "Echo text back",
                "parameters": ECHO_TOOL.parameters,
            },
        }]


class TestValidator:

    def test_schema_violation(self):
        result = ToolParameterValidator.validate_tool_call(ECHO_TOOL, {"text": 3})
        assert not result.is_valid
        assert result.errors[0].startswith("Schema validation failed")

    def test_contact_details_rejected(self):
        issues = SecurityValidator.check_parameters({"text": "call 555-123-4567"})
        assert issues == ["Parameter 'text' contains contact details"]

    def test_oversized_string_rejected(self):
        result = ToolParameterValidator.validate_tool_call(ECHO_TOOL, {"text": "a" * 501})
        assert not result.is_valid


class TestExecutor:

    @pytest.mark.asyncio
    async def test_successful_call(self, tool_ctx):
        registry = ToolRegistry(include_builtins=False)
        registry.register_tool(ECHO_TOOL)

        record, output = await ToolExecutor(registry).execute_tool("echo", '{"text": "hi"}', tool_ctx)

        assert record.success
        assert record.arguments == {"text": "hi"}
        assert json.loads(output) == {"echo": "hi"}

    @pytest.mark.asyncio
    async def test_unknown_tool_reported_not_raised(self, tool_ctx):
        record, output = await ToolExecutor(ToolRegistry()).execute_tool("delete_everything", "{}", tool_ctx)

        assert not record.success
        assert record.error_type == "ToolExecutionError"
        assert "Unknown tool" in json.loads(output)["error"]

    @pytest.mark.asyncio
    async def test_bad_arguments(self, tool_ctx):
        executor = ToolExecutor(ToolRegistry())

        record, _ = await executor.execute_tool("remember_preference", "{not json", tool_ctx)
        assert record.error_type == "ToolValidationError"

        record, _ = await executor.execute_tool("remember_preference", '{"tone": "sarcastic"}', tool_ctx)
        assert record.error_type == "ToolValidationError"

    @pytest.mark.asyncio
    async def test_noop_gateway_blocks_analytics(self, tool_ctx):
        record, output = await ToolExecutor(ToolRegistry()).execute_tool(
            "log_study_event", {"event": "prayer_completed"}, tool_ctx
        )

        assert record.success
        assert json.loads(output) == {"logged": True, "event": "prayer_completed"}
        assert tool_ctx.side_effects.blocked == ["log_analytics", "increment_counter"]
