from __future__ import annotations

from typing import Optional

import redis.asyncio as redis
import structlog
from fastapi import Depends

from .codegen.artifact_store import ArtifactStore
from .codegen.backoff import BackoffPolicy
from .codegen.orchestrator import JobOrchestrator
from .codegen.remote_api import DisabledJobApi, HttpJobApi, RemoteJobApi
from .config import Settings, get_settings
from .logging_config import setup_logging
from .models.generation import GenerationConfig
from .persistence.redis_client import RedisJsonStore, create_redis_client
from .persistence.repository import (
    InMemoryTopologyRepository,
    RedisTopologyRepository,
    TopologyRepository,
)
from .sync.layout import GridLayout
from .workspace import Workspace

# Global singletons initialized at startup
_redis_client: redis.Redis | None = None
_repository: TopologyRepository | None = None
_remote_api: RemoteJobApi | None = None
_orchestrator: JobOrchestrator | None = None
_workspace: Workspace | None = None
_generation_enabled = False


async def init_resources(
    *,
    api: Optional[RemoteJobApi] = None,
    repository: Optional[TopologyRepository] = None,
) -> None:
    """
    Initialize shared resources:

    - structlog logging
    - Redis client and topology repository (in-memory when Redis is off)
    - remote generation API client, artifact store and job orchestrator
    - the editing workspace

    `api` and `repository` replace the configured ones (tests use this).
    """
    global _redis_client, _repository, _remote_api, _orchestrator, _workspace, _generation_enabled

    # Logging first so everything after can log nicely
    setup_logging()
    log = structlog.get_logger("startup")
    settings = get_settings()

    log.info("initializing_resources", env=settings.env)

    # Persistence
    if repository is not None:
        _repository = repository
        log.info("repository_injected", kind=type(repository).__name__)
    elif settings.redis_url:
        _redis_client = create_redis_client(settings.redis_url)
        _repository = RedisTopologyRepository(
            RedisJsonStore(_redis_client, prefix=settings.redis_key_prefix)
        )
        log.info("redis_initialized", redis_url=settings.redis_url)
    else:
        _redis_client = None
        _repository = InMemoryTopologyRepository()
        log.info("redis_disabled", repository="in_memory")

    # Remote generation API
    if api is not None:
        _remote_api = api
        _generation_enabled = True
    elif settings.codegen_api_url is not None:
        _remote_api = HttpJobApi(
            str(settings.codegen_api_url),
            token=settings.codegen_api_token,
            timeout=settings.codegen_request_timeout,
        )
        _generation_enabled = True
        log.info("codegen_api_initialized", base_url=str(settings.codegen_api_url))
    else:
        _remote_api = DisabledJobApi()
        _generation_enabled = False
        log.info("codegen_api_disabled")

    _orchestrator = JobOrchestrator(
        _remote_api,
        ArtifactStore(),
        BackoffPolicy.from_settings(settings),
        history_limit=settings.job_history_limit,
    )
    _workspace = Workspace(
        _repository,
        _orchestrator,
        layout=GridLayout.from_settings(settings),
        default_config=GenerationConfig(
            provider=settings.default_llm_provider,
            model=settings.default_llm_model,
        ),
    )
    log.info("workspace_initialized", graph_id=_workspace.graph_id)


async def close_resources() -> None:
    """
    Clean up global resources gracefully at shutdown.
    """
    global _redis_client, _orchestrator, _workspace
    log = structlog.get_logger("shutdown")

    if _orchestrator is not None:
        await _orchestrator.shutdown()
        log.info("orchestrator_stopped")
        _orchestrator = None

    if _workspace is not None:
        _workspace.close()
        _workspace = None

    if isinstance(_remote_api, HttpJobApi):
        await _remote_api.aclose()
        log.info("codegen_api_closed")

    if _redis_client is not None:
        await _redis_client.aclose()
        log.info("redis_closed")
        _redis_client = None


def get_settings_dep() -> Settings:
    """
    FastAPI dependency wrapper for Settings.
    """
    return get_settings()


def get_redis_client() -> redis.Redis | None:
    """
    Redis client, or None when Redis is disabled.
    """
    return _redis_client


def get_workspace() -> Workspace:
    """
    FastAPI dependency that returns the editing workspace.

    Raises RuntimeError if it was not initialized.
    """
    if _workspace is None:
        raise RuntimeError("Workspace not initialized. Did you call init_resources()?")
    return _workspace


def generation_enabled() -> bool:
    return _generation_enabled


def get_logger() -> structlog.BoundLogger:
    """
    FastAPI dependency returning a structlog logger.
    """
    return structlog.get_logger("service")


def get_context_logger(settings: Settings = Depends(get_settings_dep)) -> structlog.BoundLogger:
    """
    Logger bound with basic contextual info (env, app_name).
    """
    logger = structlog.get_logger("service")
    return logger.bind(env=settings.env, app=settings.app_name)
