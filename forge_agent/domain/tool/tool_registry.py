from typing import Any, Awaitable, Callable, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from forge_agent.domain.context.memory.vocabularies import TONE_PREFERENCES
from forge_agent.domain.context.state.side_effects import AnalyticsEvent, MemoryWrite, SideEffects
from forge_agent.domain.models.run_context import RunContext


class ToolContext(BaseModel):
    """What a tool handler may touch: the run and its side-effect gateway"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ctx: RunContext
    side_effects: SideEffects


ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[Dict[str, Any]]]


class ToolDefinition(BaseModel):
    id: str
    name: str
    description: str
    category: str = "general"
    parameters: Dict[str, Any] = Field(description="JSON schema for the call arguments")
    handler: ToolHandler
    timeout_seconds: float = 5.0

    def to_openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


STUDY_EVENTS = ("passage_read", "prayer_completed", "reflection_written", "memorized_verse")


async def remember_preference(arguments: Dict[str, Any], tool_ctx: ToolContext) -> Dict[str, Any]:
    memory = await tool_ctx.side_effects.write_memory(
        tool_ctx.ctx.user_id,
        MemoryWrite(
            memory_type="tone_preference",
            value={"tone": arguments["tone"]},
            strength=0.7,
            source="user_explicit",
        ),
    )
    return {"stored": memory is not None, "tone": arguments["tone"]}


async def log_study_event(arguments: Dict[str, Any], tool_ctx: ToolContext) -> Dict[str, Any]:
    event = arguments["event"]
    properties = {"event": event, "user_id": tool_ctx.ctx.user_id}
    if arguments.get("reference"):
        properties["reference"] = arguments["reference"]

    await tool_ctx.side_effects.log_analytics(AnalyticsEvent(type="study_event", properties=properties))
    await tool_ctx.side_effects.increment_counter(f"study_events.{event}")
    return {"logged": True, "event": event}


BUILTIN_TOOLS = [
    ToolDefinition(
        id="remember_preference",
        name="Remember Preference",
        description="Remember how the user prefers responses to sound, when they ask for it explicitly",
        category="memory",
        parameters={
            "type": "object",
            "properties": {
                "tone": {"type": "string", "enum": list(TONE_PREFERENCES)},
            },
            "required": ["tone"],
            "additionalProperties": False,
        },
        handler=remember_preference,
    ),
    ToolDefinition(
        id="log_study_event",
        name="Log Study Event",
        description="Record a Bible study activity the user reports having completed",
        category="analytics",
        parameters={
            "type": "object",
            "properties": {
                "event": {"type": "string", "enum": list(STUDY_EVENTS)},
                "reference": {"type": "string", "maxLength": 64},
            },
            "required": ["event"],
            "additionalProperties": False,
        },
        handler=log_study_event,
    ),
]


class ToolRegistry:
    """Registry of tools the chat model may call"""

    def __init__(self, include_builtins: bool = True):
        self.tools: Dict[str, ToolDefinition] = {}
        self.tool_categories: Dict[str, List[str]] = {}
        if include_builtins:
            for tool in BUILTIN_TOOLS:
                self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition):
        self.tools[tool.id] = tool
        self.tool_categories.setdefault(tool.category, [])
        if tool.id not in self.tool_categories[tool.category]:
            self.tool_categories[tool.category].append(tool.id)

    def get_tool_info(self, tool_id: str) -> Optional[ToolDefinition]:
        return self.tools.get(tool_id)

    def get_tools_by_category(self, category: str) -> List[ToolDefinition]:
        tool_ids = self.tool_categories.get(category, [])
        return [self.tools[tool_id] for tool_id in tool_ids if tool_id in self.tools]

    def get_openai_schemas(self) -> List[Dict[str, Any]]:
        """Tool declarations in the chat completions `tools` format"""
        return [tool.to_openai_schema() for tool in self.tools.values()]
