from typing import Dict, Any, Optional
from datetime import datetime, timedelta
import structlog
from langfuse import Langfuse

from forge_agent.infrastructure.config.settings import LangfuseSettings


logger = structlog.get_logger(__name__)


class PipelineTracer:
    """Langfuse tracing for pipeline runs.

    One trace per run, one span per stage, one generation per model call.
    Disabled unless both Langfuse keys are configured. Tracing errors are
    logged and never reach the pipeline.
    """

    def __init__(self, settings: Optional[LangfuseSettings] = None):
        self.langfuse: Optional[Langfuse] = None
        if settings and settings.enabled:
            self.langfuse = Langfuse(
                public_key=settings.public_key,
                secret_key=settings.secret_key,
                host=settings.host
            )

    @property
    def enabled(self) -> bool:
        return self.langfuse is not None

    def start_run(
        self,
        trace_id: str,
        run_id: str,
        user_id: str,
        entrypoint: str,
        mode: str,
    ):
        """Open a trace for a run; returns None when tracing is off or fails"""

        if not self.langfuse:
            return None
        try:
            return self.langfuse.trace(
                id=run_id,
                name="pipeline_run",
                user_id=user_id,
                session_id=trace_id,
                metadata={"entrypoint": entrypoint, "mode": mode},
                tags=[mode, entrypoint],
            )
        except Exception as e:
            logger.warning("Langfuse trace creation failed", run_id=run_id, error=str(e))
            return None

    def record_stage(
        self,
        trace,
        stage: str,
        duration_ms: int,
        summary: str,
        stats: Optional[Dict[str, Any]] = None,
    ) -> None:
        if trace is None:
            return
        try:
            end_time = datetime.now()
            trace.span(
                name=stage,
                start_time=end_time - timedelta(milliseconds=duration_ms),
                end_time=end_time,
                output=summary,
                metadata=stats or {},
            )
        except Exception as e:
            logger.warning("Langfuse span failed", stage=stage, error=str(e))

    def record_generation(
        self,
        trace,
        model: str,
        latency_ms: int,
        input_tokens: int,
        output_tokens: int,
        finish_reason: str,
    ) -> None:
        if trace is None:
            return
        try:
            end_time = datetime.now()
            trace.generation(
                name="model_call",
                model=model,
                start_time=end_time - timedelta(milliseconds=latency_ms),
                end_time=end_time,
                usage={"input": input_tokens, "output": output_tokens, "unit": "TOKENS"},
                metadata={"finish_reason": finish_reason},
            )
        except Exception as e:
            logger.warning("Langfuse generation failed", model=model, error=str(e))

    def flush(self) -> None:
        if not self.langfuse:
            return
        try:
            self.langfuse.flush()
        except Exception as e:
            logger.warning("Langfuse flush failed", error=str(e))
