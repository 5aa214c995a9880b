from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import JobStatus

# UI-facing provider names -> the upper-case form the generation API expects.
PROVIDER_MAPPING: Dict[str, str] = {
    "openai": "OPENAI",
    "anthropic": "ANTHROPIC",
    "claude": "ANTHROPIC",
    "google": "GOOGLE",
    "azure": "AZURE",
    "deepseek": "DEEPSEEK",
}


def normalize_provider(provider: str) -> str:
    """
    Transform a provider name (any case) to the API's upper-case form.

    Raises ValueError for an empty or unsupported provider.
    """
    if not provider or not provider.strip():
        raise ValueError("Provider name is required")
    key = provider.strip().lower()
    if key not in PROVIDER_MAPPING:
        supported = ", ".join(sorted(set(PROVIDER_MAPPING.values())))
        raise ValueError(f"Unsupported provider {provider!r}. Expected one of: {supported}")
    return PROVIDER_MAPPING[key]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConversationMessage(_CamelModel):
    role: str
    content: str


class GenerationConfig(_CamelModel):
    """Which model the remote service should use to generate artifacts."""

    provider: str
    model: str
    context: List[ConversationMessage] = Field(default_factory=list)

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return normalize_provider(value)

    @field_validator("model")
    @classmethod
    def _strip_model(cls, value: str) -> str:
        return value.strip()


class ArtifactFragment(_CamelModel):
    """One named piece of generated code or configuration."""

    model_config = ConfigDict(frozen=True)

    name: str
    content: str
    language: Optional[str] = None


class GeneratedArtifact(_CamelModel):
    """
    Everything generated for one node of one topology by one job.
    """

    model_config = ConfigDict(frozen=True)

    graph_id: str
    node_id: str
    fragments: Tuple[ArtifactFragment, ...] = ()
    file_name: Optional[str] = None
    path: Optional[str] = None
    job_id: Optional[str] = None
    generated_at: datetime = Field(default_factory=_utcnow)


# --------------------------------------------------------------------------- #
# Remote API shapes
# --------------------------------------------------------------------------- #


class JobStatusReport(_CamelModel):
    status: JobStatus
    step: str = ""
    error: Optional[str] = None


class NodeResult(_CamelModel):
    node_id: str
    artifacts: List[ArtifactFragment] = Field(default_factory=list)
    file_name: Optional[str] = None
    path: Optional[str] = None


class GenerationResult(_CamelModel):
    nodes: List[NodeResult] = Field(default_factory=list)


# --------------------------------------------------------------------------- #
# Job bookkeeping
# --------------------------------------------------------------------------- #


class GenerationJob(_CamelModel):
    job_id: Optional[str] = None
    graph_id: str
    status: JobStatus = JobStatus.PENDING
    step: str = ""
    error: Optional[str] = None
    attempts: int = 0
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
