import logging

import pytest
import structlog

from forge_agent.infrastructure.config.settings import PipelineSettings
from forge_agent.infrastructure.observability.langfuse_tracing import PipelineTracer
from forge_agent.infrastructure.observability.logging import MetricsCollector, setup_logging


class TestSettings:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("TOOLS_ENABLED", "true")
        monkeypatch.setenv("MEMORY_RETRIEVAL_ENABLED", "0")
        monkeypatch.setenv("PROVIDER_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("MAX_TOOL_ITERATIONS", "5")
        monkeypatch.setenv("LANGFUSE_PUBLIC_KEY", "pk")
        monkeypatch.delenv("LANGFUSE_SECRET_KEY", raising=False)

        settings = PipelineSettings.from_env()

        assert not settings.is_development
        assert settings.tools_enabled
        assert not settings.memory_retrieval_enabled
        assert settings.provider_timeout_seconds == 2.5
        assert settings.max_tool_iterations == 5
        assert not settings.langfuse.enabled

    def test_defaults(self, monkeypatch):
        for name in ("ENVIRONMENT", "LLM_TIMEOUT_SECONDS", "PROVIDER_TIMEOUT_SECONDS"):
            monkeypatch.delenv(name, raising=False)

        settings = PipelineSettings.from_env()

        assert settings.is_development
        assert settings.llm_timeout_seconds == 30.0
        assert settings.provider_timeout_seconds is None


class TestMetrics:

    def test_summary(self):
        metrics = MetricsCollector()
        metrics.record_latency("stage.INGRESS", 10)
        metrics.record_latency("stage.INGRESS", 30)
        metrics.increment_counter("provider_failures")
        metrics.increment_counter("provider_failures", 2)
        metrics.set_gauge("background_tasks", 3)

        summary = metrics.get_metrics_summary()

        assert summary["latency.stage.INGRESS"] == {"count": 2, "avg": 20, "min": 10, "max": 30}
        assert summary["provider_failures"] == 3
        assert summary["background_tasks"] == 3


class TestLogging:

    @pytest.fixture(autouse=True)
    def reset_structlog(self):
        yield
        structlog.reset_defaults()
        structlog.contextvars.clear_contextvars()

    def test_setup_binds_service_context(self, caplog):
        caplog.set_level(logging.INFO)
        setup_logging(log_level="INFO", log_format="json", service_name="forge-agent-test")
        structlog.contextvars.bind_contextvars(run_id="run_1")

        structlog.get_logger("test").info("hello")

        output = caplog.records[-1].getMessage()
        assert '"event": "hello"' in output
        assert '"service": "forge-agent-test"' in output
        assert '"run_id": "run_1"' in output


def test_tracer_disabled_without_keys():
    tracer = PipelineTracer()

    assert not tracer.enabled
    assert tracer.start_run("trace-1", "run_1", "user-1", "followup", "prod") is None
    tracer.record_stage(None, "INGRESS", 5, "ok", {})
    tracer.flush()
