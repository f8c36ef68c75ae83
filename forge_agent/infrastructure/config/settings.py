from typing import Optional
from pydantic import BaseModel, Field
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


class LangfuseSettings(BaseModel):
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    host: str = "https://cloud.langfuse.com"

    @property
    def enabled(self) -> bool:
        return bool(self.public_key and self.secret_key)


class PipelineSettings(BaseModel):
    """Deployment configuration, constructed once and injected into components"""
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"
    service_name: str = "forge-agent"

    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    llm_timeout_seconds: float = 30.0

    vault_encryption_key: Optional[str] = Field(None, description="64 hex chars (256-bit key)")

    planner_model: str = "gpt-5-nano"
    chat_model: str = "gpt-5.1-chat-latest"

    memory_retrieval_enabled: bool = False
    tools_enabled: bool = False
    max_tool_iterations: int = 3
    provider_timeout_seconds: Optional[float] = None

    langfuse: LangfuseSettings = Field(default_factory=LangfuseSettings)

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Build settings from environment variables"""

        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            service_name=os.getenv("SERVICE_NAME", "forge-agent"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS") or 30.0,
            vault_encryption_key=os.getenv("VAULT_ENCRYPTION_KEY"),
            planner_model=os.getenv("PLANNER_MODEL", "gpt-5-nano"),
            chat_model=os.getenv("CHAT_MODEL", "gpt-5.1-chat-latest"),
            memory_retrieval_enabled=_env_bool("MEMORY_RETRIEVAL_ENABLED", False),
            tools_enabled=_env_bool("TOOLS_ENABLED", False),
            max_tool_iterations=int(os.getenv("MAX_TOOL_ITERATIONS", "3")),
            provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS"),
            langfuse=LangfuseSettings(
                public_key=os.getenv("LANGFUSE_PUBLIC_KEY"),
                secret_key=os.getenv("LANGFUSE_SECRET_KEY"),
                host=os.getenv("LANGFUSE_HOST", "https://cloud.langfuse.com"),
            ),
        )
