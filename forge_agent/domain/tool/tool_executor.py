from typing import Any, Dict, Tuple
import asyncio
import json
import time
import structlog

from forge_agent.domain.errors import ToolExecutionError, ToolValidationError
from forge_agent.domain.models.artifacts import ToolCallRecord
from forge_agent.domain.redaction import redact_preview
from forge_agent.domain.tool.tool_registry import ToolContext, ToolRegistry
from forge_agent.domain.tool.tool_validator import ToolParameterValidator
from forge_agent.infrastructure.observability.logging import pipeline_logger

logger = structlog.get_logger(__name__)

OUTPUT_PREVIEW_LENGTH = 200


def parse_arguments(raw_arguments: Any) -> Dict[str, Any]:
    """Tool-call arguments arrive as a JSON string from the provider"""
    if isinstance(raw_arguments, dict):
        return raw_arguments
    try:
        parsed = json.loads(raw_arguments or "{}")
    except (TypeError, ValueError) as e:
        raise ToolValidationError(f"Arguments are not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise ToolValidationError("Arguments must be a JSON object")
    return parsed


class ToolExecutor:
    """Runs model-requested tools against the side-effect gateway"""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def _run(self, name: str, arguments: Dict[str, Any], tool_ctx: ToolContext) -> Dict[str, Any]:
        tool = self.registry.get_tool_info(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {name}")

        validation = ToolParameterValidator.validate_tool_call(tool, arguments)
        if not validation.is_valid:
            raise ToolValidationError("; ".join(validation.errors))

        try:
            return await asyncio.wait_for(tool.handler(arguments, tool_ctx), timeout=tool.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(f"Tool execution timeout: {name}") from e

    async def execute_tool(
        self,
        name: str,
        raw_arguments: Any,
        tool_ctx: ToolContext,
    ) -> Tuple[ToolCallRecord, str]:
        """Execute one call; returns its transcript entry and the content sent back to the model.

        Failures are reported to the model as an error object instead of raised,
        so one bad call does not end the turn.
        """
        start = time.perf_counter()
        arguments: Dict[str, Any] = {}
        try:
            arguments = parse_arguments(raw_arguments)
            result = await self._run(name, arguments, tool_ctx)
            output = json.dumps(result, default=str)
            success, error_type, error = True, None, None
        except Exception as e:
            output = json.dumps({"error": str(e)})
            success, error_type, error = False, type(e).__name__, str(e)
            logger.warning("Tool call failed", tool_name=name, error_type=error_type, error=error)

        latency_ms = int((time.perf_counter() - start) * 1000)
        preview = redact_preview(output, OUTPUT_PREVIEW_LENGTH)
        pipeline_logger.log_tool_execution(
            tool_name=name,
            run_id=tool_ctx.ctx.run_id,
            arguments=arguments,
            output_preview=preview,
            duration_ms=latency_ms,
            success=success,
            error=error,
        )

        record = ToolCallRecord(
            name=name,
            arguments=arguments,
            latency_ms=latency_ms,
            output_preview=preview,
            success=success,
            error_type=error_type,
        )
        return record, output
