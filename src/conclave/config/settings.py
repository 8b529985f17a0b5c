"""
Engine configuration with Pydantic Settings and validation.

All values can be overridden from the environment using the CONCLAVE_ prefix and
`__` for nesting, e.g. CONCLAVE_ENGINE__DEFAULT_TIMEOUT_MS=30000.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentEndpoint(BaseModel):
    """Default model endpoint used by the HTTP agent invoker."""

    model: str = Field("llama3.1:8b-instruct", description="Model name sent with each call")
    base_url: str = Field("http://localhost:11434", description="Base URL for the model API")
    api_key: str | None = Field(None, description="API key if required")
    timeout: float = Field(120.0, gt=0, description="Transport timeout in seconds")
    max_retries: int = Field(2, ge=0, description="Transport-level retries on connect errors")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")


class EngineConfig(BaseModel):
    """Run engine behaviour that pipeline definitions do not carry themselves."""

    default_timeout_ms: int = Field(60000, gt=0)
    default_max_rounds: int = Field(3, gt=0)
    default_consensus_threshold: float = Field(80.0, ge=0.0, le=100.0)
    sequential_result: Literal["last", "concatenate"] = Field("last")
    round_robin_stop_token: str = Field("NO_CHANGES")
    phase_join_timeout_s: float | None = Field(None, gt=0)
    retry_backoff_s: float = Field(0.0, ge=0.0)
    pause_poll_interval_s: float = Field(0.05, gt=0)


class ObservabilityConfig(BaseModel):
    """Configuration for observability and monitoring."""

    enable_tracing: bool = Field(False)
    log_level: str = Field("INFO")
    otlp_endpoint: str | None = Field(None)
    service_name: str = Field("conclave")
    service_version: str = Field("1.0.0")
    artifacts_directory: Path = Field(Path("./artifacts"))
    save_run_snapshots: bool = Field(False)


class APIConfig(BaseModel):
    """Configuration for the HTTP control surface."""

    host: str = Field("127.0.0.1")
    port: int = Field(8000, gt=0, le=65535)
    reload: bool = Field(False)
    enable_cors: bool = Field(False)
    cors_origins: list[str] = Field(default_factory=list)
    enable_docs: bool = Field(True)


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="CONCLAVE_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    agents: AgentEndpoint = Field(default_factory=AgentEndpoint)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    directory_file: Path | None = Field(
        None, description="JSON file with positions, teams and pipelines for the default directory"
    )

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    debug: bool = Field(False)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
