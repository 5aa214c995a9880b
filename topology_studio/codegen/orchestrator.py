from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from ..domain_metrics import JOB_POLLS, JOB_SUBMISSIONS, POLL_DELAY
from ..errors import (
    EmptyTopologyError,
    JobFailedError,
    JobTimeoutError,
    MissingConfigurationError,
    ResultFetchError,
    SubmissionError,
)
from ..models.enums import JobStatus
from ..models.generation import GeneratedArtifact, GenerationConfig, GenerationJob, GenerationResult
from ..models.topology import Topology
from .artifact_store import ArtifactStore
from .backoff import BackoffPolicy
from .handle import JobHandle, JobState
from .remote_api import RemoteJobApi, describe_transport_error

logger = structlog.get_logger("codegen.orchestrator")

Sleep = Callable[[float], Awaitable[Any]]


class JobOrchestrator:
    """
    Drives generation jobs from submission to a terminal state.

    Flow per job (one asyncio task each):
      1. initiate on the remote API (failure -> FAILED, no job id)
      2. wait the backoff delay, poll status; repeat up to max_attempts
      3. on "completed", fetch the result, write one artifact per node,
         then report completion and the result
      4. "failed" -> JobFailedError; attempts exhausted -> JobTimeoutError

    A transport error while polling is reported through on_error and uses
    up one attempt; the loop keeps going. The handle state is checked after
    every await, so nothing is applied once a job was cancelled.
    """

    def __init__(
        self,
        api: RemoteJobApi,
        artifact_store: ArtifactStore,
        policy: BackoffPolicy | None = None,
        *,
        sleep: Sleep = asyncio.sleep,
        history_limit: int = 100,
    ):
        self._api = api
        self._store = artifact_store
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._active: Dict[str, JobHandle] = {}
        self._history: Deque[GenerationJob] = deque(maxlen=history_limit)
        self._jobs_completed = 0
        self._artifacts_generated = 0

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._store

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    def submit(
        self,
        snapshot: Topology,
        config: GenerationConfig | None,
        *,
        abort_in_flight: bool = False,
    ) -> JobHandle:
        """
        Start a job for a copy of `snapshot` and return its handle.

        Must be called from a running event loop. Raises EmptyTopologyError or
        MissingConfigurationError before anything is sent.
        """
        if not snapshot.nodes:
            JOB_SUBMISSIONS.labels(outcome="rejected").inc()
            raise EmptyTopologyError(snapshot.id)
        if config is None or not config.provider or not config.model:
            JOB_SUBMISSIONS.labels(outcome="rejected").inc()
            raise MissingConfigurationError("A provider and a model are required to generate code.")

        snapshot = snapshot.model_copy(deep=True)
        handle = JobHandle(snapshot.id, abort_in_flight=abort_in_flight)
        handle._set_state(JobState.SUBMITTING)
        handle._task = asyncio.get_running_loop().create_task(self._run(handle, snapshot, config))
        self._active[handle.id] = handle

        logger.info(
            "job_submitted",
            handle_id=handle.id,
            graph_id=snapshot.id,
            nodes=len(snapshot.nodes),
            provider=config.provider,
            model=config.model,
        )
        return handle

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #

    def get(self, handle_id: str) -> Optional[JobHandle]:
        return self._active.get(handle_id)

    def active_jobs(self) -> List[JobHandle]:
        return list(self._active.values())

    def acknowledge(self, handle: JobHandle) -> bool:
        """
        Move a finished job out of the active set into the history.
        Returns False for a job that is still running or unknown.
        """
        if not handle.is_terminal or self._active.pop(handle.id, None) is None:
            return False
        self._history.appendleft(handle.job.model_copy())
        return True

    def history(self) -> List[GenerationJob]:
        """Acknowledged jobs, newest first."""
        return list(self._history)

    def stats(self) -> Dict[str, int]:
        return {
            "total_jobs_completed": self._jobs_completed,
            "total_artifacts_generated": self._artifacts_generated,
            "active_jobs": sum(1 for h in self._active.values() if not h.is_terminal),
        }

    async def shutdown(self) -> None:
        """Cancel every unfinished job and wait for its task to wind down."""
        tasks = []
        for handle in self._active.values():
            handle.cancel()
            if handle._task is not None:
                tasks.append(handle._task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------ #
    # Job task
    # ------------------------------------------------------------------ #

    async def _run(self, handle: JobHandle, snapshot: Topology, config: GenerationConfig) -> None:
        log = logger.bind(handle_id=handle.id, graph_id=snapshot.id)

        try:
            job_id = await self._api.initiate(snapshot, config)
        except Exception as exc:
            if handle.is_terminal:
                return
            JOB_SUBMISSIONS.labels(outcome="failed").inc()
            log.warning("job_initiate_failed", error=str(exc))
            handle._finish(JobState.FAILED, error=SubmissionError(describe_transport_error(exc)))
            return
        if handle.is_terminal:
            log.info("late_response_ignored", stage="initiate")
            return

        JOB_SUBMISSIONS.labels(outcome="accepted").inc()
        handle.job.job_id = job_id
        handle._set_state(JobState.POLLING)
        handle._observe(JobStatus.PENDING)
        log = log.bind(job_id=job_id)

        for attempt in range(1, self._policy.max_attempts + 1):
            delay = self._policy.delay(attempt)
            POLL_DELAY.observe(delay)
            handle._emit_progress(attempt, delay)
            if not await self._wait(handle, delay):
                return

            handle.job.attempts = attempt
            try:
                report = await self._api.poll_status(job_id)
            except Exception as exc:
                if handle.is_terminal:
                    return
                JOB_POLLS.labels(status="transport_error").inc()
                log.warning("job_poll_failed", attempt=attempt, error=str(exc))
                handle._emit_error(describe_transport_error(exc))
                continue
            if handle.is_terminal:
                log.info("late_response_ignored", stage="poll", attempt=attempt)
                return

            JOB_POLLS.labels(status=report.status.value).inc()
            handle.job.step = report.step
            log.debug("job_polled", attempt=attempt, status=report.status.value, step=report.step)

            if report.status is JobStatus.COMPLETED:
                await self._complete(handle, job_id, log)
                return
            if report.status is JobStatus.FAILED:
                handle._finish(
                    JobState.FAILED,
                    error=JobFailedError(report.error or "Code generation failed."),
                )
                return
            if report.status is JobStatus.CANCELLED:
                handle._finish(JobState.CANCELLED)
                return
            handle._observe(report.status)

        handle._finish(JobState.FAILED, error=JobTimeoutError(self._policy.max_attempts))

    async def _wait(self, handle: JobHandle, delay: float) -> bool:
        """
        Sleep for `delay` unless the handle is cancelled first.
        Returns False if the job should stop.
        """
        sleeper = asyncio.ensure_future(self._sleep(delay))
        cancelled = asyncio.ensure_future(handle._cancel_requested.wait())
        try:
            await asyncio.wait({sleeper, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (sleeper, cancelled):
                if not fut.done():
                    fut.cancel()
        return not handle.is_terminal

    async def _complete(self, handle: JobHandle, job_id: str, log: Any) -> None:
        try:
            result = await self._api.fetch_result(job_id)
            artifacts = self._artifacts_from(handle.graph_id, job_id, result)
        except Exception as exc:
            if handle.is_terminal:
                return
            message = str(exc) if isinstance(exc, LookupError) and exc.args else describe_transport_error(exc)
            log.warning("job_result_fetch_failed", error=str(exc))
            handle._finish(JobState.FAILED, error=ResultFetchError(message))
            return
        if handle.is_terminal:
            log.info("late_response_ignored", stage="result")
            return

        self._store.replace_many(handle.graph_id, artifacts.values())
        self._jobs_completed += 1
        self._artifacts_generated += len(artifacts)
        handle._finish(JobState.COMPLETED, artifacts=artifacts)

    @staticmethod
    def _artifacts_from(
        graph_id: str,
        job_id: str,
        result: GenerationResult,
    ) -> Dict[str, GeneratedArtifact]:
        return {
            node.node_id: GeneratedArtifact(
                graph_id=graph_id,
                node_id=node.node_id,
                fragments=tuple(node.artifacts),
                file_name=node.file_name,
                path=node.path,
                job_id=job_id,
            )
            for node in result.nodes
        }
