import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


CORRELATION_KEYS = ("service", "environment", "version", "trace_id", "run_id", "mode")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "forge-agent"
) -> None:
    """Configure structlog on top of stdlib logging.

    `log_format` is "json" for deployments or "console" for local runs. The
    service identity is bound once as context variables; the orchestrator
    binds trace_id, run_id and mode per run.
    """

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_run_correlation,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown"),
    )


def add_run_correlation(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy service identity and the current run's ids onto every event"""

    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

    bound = structlog.contextvars.get_contextvars()
    for key in CORRELATION_KEYS:
        value = bound.get(key)
        if value and key not in event_dict:
            event_dict[key] = value

    return event_dict


class PipelineLogger:
    """Typed helpers for the events every run emits"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_stage_event(self, event_type: str, stage: str, run_id: str, data: Optional[Dict[str, Any]] = None):
        """event_type is one of started, completed, stopped"""
        self.logger.info("stage_event", event_type=event_type, stage=stage, run_id=run_id, data=data or {})

    def log_provider_failure(self, provider: str, run_id: str, error: str, timed_out: bool = False):
        self.logger.warning(
            "provider_failure",
            provider=provider,
            run_id=run_id,
            error=error,
            timed_out=timed_out,
        )

    def log_side_effect(self, operation: str, run_id: str, executed: bool, details: Optional[Dict[str, Any]] = None):
        # executed=False means the no-op gateway blocked the call
        self.logger.info(
            "side_effect",
            operation=operation,
            run_id=run_id,
            executed=executed,
            details=details or {},
        )

    def log_tool_execution(
        self,
        tool_name: str,
        run_id: str,
        arguments: Dict[str, Any],
        output_preview: Optional[str] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_name=tool_name,
            run_id=run_id,
            arguments=arguments,
            output_preview=output_preview,
            duration_ms=duration_ms,
            success=success,
            error=error,
        )


pipeline_logger = PipelineLogger("forge_agent.pipeline")


class MetricsCollector:
    """In-process metrics: latency histograms, counters and gauges.

    Latencies live under "latency.<operation>" as count/sum/min/max; counters
    and gauges are plain numbers keyed by name. Every update is also logged as
    a debug "metric" event so a log pipeline can pick them up.
    """

    def __init__(self):
        self.metrics: Dict[str, Any] = {}

    def _emit(self, metric_type: str, name: str, value: float, tags: Optional[Dict[str, str]]):
        pipeline_logger.logger.debug("metric", metric_type=metric_type, name=name, value=value, tags=tags or {})

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        key = f"latency.{operation}"
        stats = self.metrics.setdefault(key, {"count": 0, "sum": 0, "min": None, "max": 0})
        stats["count"] += 1
        stats["sum"] += duration_ms
        stats["min"] = duration_ms if stats["min"] is None else min(stats["min"], duration_ms)
        stats["max"] = max(stats["max"], duration_ms)
        self._emit("latency", operation, duration_ms, tags)

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.metrics[name] = self.metrics.get(name, 0) + value
        self._emit("counter", name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.metrics[name] = value
        self._emit("gauge", name, value, tags)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Latencies reduced to count/avg/min/max; counters and gauges as-is"""

        summary: Dict[str, Any] = {}
        for key, value in self.metrics.items():
            if not key.startswith("latency."):
                summary[key] = value
                continue
            count = value["count"]
            summary[key] = {
                "count": count,
                "avg": value["sum"] / count if count else 0,
                "min": value["min"] or 0,
                "max": value["max"],
            }
        return summary
