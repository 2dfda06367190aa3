from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OllamaSettings(BaseModel):
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3", description="Default model served via Ollama.")
    temperature: float = Field(0.1, ge=0.0, le=1.0)
    num_ctx: int | None = Field(default=None, ge=512, description="Optional context window override.")


class AgentBackendSettings(BaseModel):
    """Backend references (model or hosted agent ids) for each pipeline agent.

    Empty values fall back to the catalog defaults.
    """

    architect: str | None = None
    backend: str | None = None
    frontend: str | None = None
    integrator: str | None = None
    qa: str | None = None
    devops: str | None = None

    def overrides(self) -> dict[str, str]:
        return {key: value for key, value in self.model_dump().items() if value}


class OrchestrationSettings(BaseModel):
    step_budget: int = Field(25, ge=1, description="Maximum agent turns the driver may spend after approval.")
    agent_timeout_seconds: float = Field(120.0, gt=0.0, description="Ceiling for a single agent invocation.")
    invocation_retries: int = Field(1, ge=0, description="Retries for a failed agent invocation before the run errors.")
    plan_retries: int = Field(1, ge=0, description="Retries granted to the architect after a malformed plan.")
    start_policy: Literal["reject", "supersede"] = Field(
        "reject",
        description="What `start` does while a run is planning or executing.",
    )
    auto_execute: bool = Field(True, description="Drive the pipeline automatically once a plan is approved.")
    poll_interval_seconds: float = Field(2.0, gt=0.0, description="Polling interval advertised to clients.")
    max_narration_chars: int = Field(2_000, ge=80, description="Narration kept per agent turn.")


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    ollama: OllamaSettings = Field(default_factory=OllamaSettings)  # type: ignore[arg-type]
    agents: AgentBackendSettings = Field(default_factory=AgentBackendSettings)  # type: ignore[arg-type]
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    frontend_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Origins permitted to access the API via CORS.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        materialized = dict(overrides)
        allowed_keys = {"environment", "orchestration", "observability"}
        filtered = {key: value for key, value in materialized.items() if key in allowed_keys}
        if filtered:
            return Settings(**filtered)
    return _get_cached_settings()
