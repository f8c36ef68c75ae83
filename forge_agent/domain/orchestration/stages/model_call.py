from typing import Any, Callable, Dict, List, Optional
import time
import structlog

from forge_agent.domain.context.state.side_effects import SideEffects
from forge_agent.domain.models.artifacts import (
    MODEL_CALL_SCHEMA_VERSION,
    ChatMessage,
    FullPromptData,
    InputTokenDetails,
    ModelCallPayload,
    OutputTokenDetails,
    StageOutput,
    ToolCallRecord,
)
from forge_agent.domain.models.run_context import PipelineStage, RunContext, get_remaining_seconds
from forge_agent.domain.orchestration.stages.base_stage import BaseStage, StageOutputs
from forge_agent.domain.redaction import strip_pii
from forge_agent.domain.tool.tool_executor import ToolExecutor
from forge_agent.domain.tool.tool_registry import ToolContext
from forge_agent.infrastructure.llm.completion_client import CompletionClient
from forge_agent.infrastructure.security.vault import Vault

logger = structlog.get_logger(__name__)

SideEffectsFactory = Callable[[RunContext], SideEffects]


def _input_details(usage: Dict[str, Any]) -> Optional[InputTokenDetails]:
    details = usage.get("prompt_tokens_details")
    if not details:
        return None
    return InputTokenDetails(
        cached_tokens=details.get("cached_tokens") or 0,
        audio_tokens=details.get("audio_tokens") or 0,
    )


def _output_details(usage: Dict[str, Any]) -> Optional[OutputTokenDetails]:
    details = usage.get("completion_tokens_details")
    if not details:
        return None
    return OutputTokenDetails(
        reasoning_tokens=details.get("reasoning_tokens") or 0,
        audio_tokens=details.get("audio_tokens") or 0,
        accepted_prediction_tokens=details.get("accepted_prediction_tokens") or 0,
        rejected_prediction_tokens=details.get("rejected_prediction_tokens") or 0,
    )


class ModelCallStage(BaseStage):
    """Calls the chat model with the assembled prompt.

    Provider failures raise ModelProviderError and are not caught here or by
    the orchestrator: without a response there is nothing to return. When a
    tool executor is configured, requested tools run against the run's
    side-effect gateway for at most `max_tool_iterations` rounds.
    """

    stage = PipelineStage.MODEL_CALL
    schema_version = MODEL_CALL_SCHEMA_VERSION
    requires = (PipelineStage.PROMPT_ASSEMBLY,)

    def __init__(
        self,
        completion_client: CompletionClient,
        vault: Optional[Vault] = None,
        tool_executor: Optional[ToolExecutor] = None,
        side_effects_factory: Optional[SideEffectsFactory] = None,
        max_tool_iterations: int = 3,
    ):
        super().__init__("Executes the chat completion and any tool calls")
        self.completion_client = completion_client
        self.vault = vault
        self.tool_executor = tool_executor
        self.side_effects_factory = side_effects_factory
        self.max_tool_iterations = max_tool_iterations

    async def _resolve_prompt(self, ctx: RunContext, prompt_output: StageOutput) -> FullPromptData:
        """In-memory prompt first, then the vault, then a bare user message"""
        if isinstance(prompt_output.raw_content, FullPromptData):
            return prompt_output.raw_content

        raw_ref = prompt_output.payload.raw_ref
        if raw_ref and self.vault is not None:
            stored = await self.vault.retrieve_ref(raw_ref)
            if stored:
                return FullPromptData.model_validate(stored)

        logger.warning("Missing full prompt data, using minimal prompt", run_id=ctx.run_id, raw_ref=raw_ref)
        return FullPromptData(system_prompt="", messages=[ChatMessage(role="user", content=ctx.message)])

    async def process(self, ctx: RunContext, outputs: StageOutputs) -> StageOutput:
        start = time.perf_counter()
        prompt_output = outputs[PipelineStage.PROMPT_ASSEMBLY]
        redacted = prompt_output.payload.model_request_redacted
        full_prompt = await self._resolve_prompt(ctx, prompt_output)

        messages: List[Dict[str, Any]] = [m.model_dump(exclude_none=True) for m in full_prompt.messages]
        request: Dict[str, Any] = {
            "model": redacted.model,
            "messages": messages,
            "max_completion_tokens": redacted.max_tokens,
        }

        tools_enabled = self.tool_executor is not None and self.side_effects_factory is not None
        tool_ctx: Optional[ToolContext] = None
        if tools_enabled:
            request["tools"] = self.tool_executor.registry.get_openai_schemas()
            tool_ctx = ToolContext(ctx=ctx, side_effects=self.side_effects_factory(ctx))

        tool_records: List[ToolCallRecord] = []
        input_tokens = output_tokens = 0
        iterations = 0

        while True:
            data = await self.completion_client.complete(request, timeout=get_remaining_seconds(ctx))
            usage = data.get("usage") or {}
            input_tokens += usage.get("prompt_tokens") or 0
            output_tokens += usage.get("completion_tokens") or 0

            choice = (data.get("choices") or [{}])[0]
            message = choice.get("message") or {}
            tool_calls = message.get("tool_calls")

            if not tools_enabled or not tool_calls or iterations >= self.max_tool_iterations:
                break

            iterations += 1
            messages.append({"role": "assistant", "content": message.get("content"), "tool_calls": tool_calls})
            for call in tool_calls:
                function = call.get("function") or {}
                record, output = await self.tool_executor.execute_tool(
                    function.get("name", ""), function.get("arguments"), tool_ctx
                )
                tool_records.append(record)
                messages.append({"role": "tool", "tool_call_id": call.get("id"), "content": output})

        latency_ms = int((time.perf_counter() - start) * 1000)

        # Safety refusals arrive as content=None plus a refusal string
        if message.get("content") is not None:
            response_source, content = "content", message["content"]
        elif message.get("refusal") is not None:
            response_source, content = "refusal", message["refusal"]
        else:
            response_source, content = "empty", ""

        model = data.get("model") or redacted.model
        payload = ModelCallPayload(
            model=model,
            temperature=redacted.temperature,
            max_tokens=redacted.max_tokens,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            input_token_details=_input_details(usage),
            output_tokens=output_tokens,
            output_token_details=_output_details(usage),
            finish_reason=choice.get("finish_reason") or "unknown",
            response_preview=strip_pii(content),
            response_length=len(content),
            response_source=response_source,
            tool_calls=tool_records,
        )

        return StageOutput(
            payload=payload,
            summary=f"{model}, {latency_ms}ms",
            stats={
                "latency_ms": latency_ms,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "tool_calls": len(tool_records),
            },
            raw_content={"content": content, "full_response": data},
        )
