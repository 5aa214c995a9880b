from __future__ import annotations

from functools import lru_cache
from typing import List, Literal

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.

    Prefix: TOPOLOGY_STUDIO_

    Examples:
      TOPOLOGY_STUDIO_ENV=dev
      TOPOLOGY_STUDIO_CODEGEN_API_URL=https://api.example.com
      TOPOLOGY_STUDIO_POLL_BASE_DELAY=30
    """

    model_config = SettingsConfigDict(
        env_prefix="TOPOLOGY_STUDIO_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # General
    env: Literal["dev", "staging", "prod"] = Field(
        "dev",
        description="Deployment environment name.",
    )
    app_name: str = Field(
        "Topology Studio",
        description="Human-friendly app name.",
    )
    debug: bool = Field(
        False,
        description="Enable debug mode for FastAPI & logging.",
    )
    log_level: str = Field(
        "INFO",
        description="Base log level (DEBUG, INFO, WARNING, ERROR).",
    )
    log_json: bool | None = Field(
        None,
        description="Render logs as JSON lines. Defaults to JSON outside dev.",
    )

    # HTTP
    host: str = Field(
        "0.0.0.0",
        description="Bind host.",
    )
    port: int = Field(
        8000,
        description="Bind port.",
    )
    api_prefix: str = Field(
        "/api",
        description="Base prefix for API routes.",
    )
    cors_allow_origins: List[str] = Field(
        default_factory=lambda: ["*"],
        description="Origins allowed to call the API from a browser.",
    )

    # Remote code generation service
    codegen_api_url: HttpUrl | None = Field(
        default=None,
        description="Base URL of the remote generation service. If not set, generation is disabled.",
    )
    codegen_api_token: str | None = Field(
        default=None,
        description="Bearer token sent to the generation service (optional).",
    )
    codegen_request_timeout: float = Field(
        30.0,
        description="Per-request timeout in seconds for generation service calls.",
    )

    # Polling / backoff
    poll_base_delay: float = Field(
        30.0,
        gt=0,
        description="Delay in seconds before the first status poll.",
    )
    poll_multiplier: float = Field(
        1.5,
        ge=1.0,
        description="Exponential growth factor applied to the delay after every poll.",
    )
    poll_max_delay: float = Field(
        300.0,
        gt=0,
        description="Upper bound in seconds for a single inter-poll delay.",
    )
    poll_max_attempts: int = Field(
        12,
        ge=1,
        description="Number of status polls before a job is given up as timed out.",
    )
    job_history_limit: int = Field(
        100,
        ge=0,
        description="How many acknowledged jobs are kept in the orchestrator history.",
    )

    # Default generation model
    default_llm_provider: str = Field(
        "openai",
        description="Provider used when a generate request does not name one.",
    )
    default_llm_model: str = Field(
        "gpt-4o-mini",
        description="Model used when a generate request does not name one.",
    )

    # Persistence / Redis
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for topology persistence; if omitted, topologies are kept in memory.",
    )
    redis_key_prefix: str = Field(
        "topology-studio:",
        description="Namespace prefix for every Redis key written by this service.",
    )

    # Canvas default layout
    canvas_shape_width: float = Field(
        120.0,
        description="Width given to shapes created from topology nodes.",
    )
    canvas_shape_height: float = Field(
        80.0,
        description="Height given to shapes created from topology nodes.",
    )
    canvas_layout_spacing: float = Field(
        60.0,
        description="Gap between shapes in the default grid layout.",
    )
    canvas_layout_columns: int = Field(
        5,
        ge=1,
        description="Number of columns in the default grid layout.",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Cached singleton settings object.

    Usage:
        from topology_studio.config import get_settings
        settings = get_settings()
    """
    return Settings()
