from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..domain_metrics import JOB_OUTCOMES
from ..errors import JobError
from ..models.enums import JobStatus
from ..models.generation import GeneratedArtifact, GenerationJob

logger = structlog.get_logger("codegen.handle")

ProgressCallback = Callable[[int, JobStatus, float], None]
StatusCallback = Callable[[JobStatus], None]
ResultCallback = Callable[[Dict[str, GeneratedArtifact]], None]
ErrorCallback = Callable[[str], None]


class JobState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


_TERMINAL_STATUS = {
    JobState.COMPLETED: JobStatus.COMPLETED,
    JobState.FAILED: JobStatus.FAILED,
    JobState.CANCELLED: JobStatus.CANCELLED,
}


class JobHandle:
    """
    Caller-facing view of one generation job.

    Subscribers register callbacks and get back an unsubscribe function.
    Callbacks run on the event loop, in registration order; an exception in
    one is logged and does not affect the job or the other subscribers.
    """

    def __init__(self, graph_id: str, *, abort_in_flight: bool = False):
        self.id = uuid.uuid4().hex
        self.job = GenerationJob(graph_id=graph_id)
        self.state = JobState.IDLE
        self.error: Optional[JobError] = None
        self.artifacts: Dict[str, GeneratedArtifact] = {}
        self.abort_in_flight = abort_in_flight
        self._status_seen = False

        self._cancel_requested = asyncio.Event()
        self._done = asyncio.Event()
        self._task: Optional["asyncio.Task[None]"] = None

        self._progress: List[ProgressCallback] = []
        self._status: List[StatusCallback] = []
        self._result: List[ResultCallback] = []
        self._errors: List[ErrorCallback] = []

    def __repr__(self) -> str:
        return f"JobHandle(id={self.id!r}, job_id={self.job_id!r}, state={self.state.value})"

    @property
    def job_id(self) -> Optional[str]:
        return self.job.job_id

    @property
    def graph_id(self) -> str:
        return self.job.graph_id

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    def on_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """callback(attempt, last_status, delay) before every scheduled poll."""
        return _subscribe(self._progress, callback)

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        return _subscribe(self._status, callback)

    def on_result(self, callback: ResultCallback) -> Callable[[], None]:
        """callback(artifacts_by_node), at most once, after a completed job's result is stored."""
        return _subscribe(self._result, callback)

    def on_error(self, callback: ErrorCallback) -> Callable[[], None]:
        """callback(message) on failure and on every retried transport error."""
        return _subscribe(self._errors, callback)

    # ------------------------------------------------------------------ #
    # Control
    # ------------------------------------------------------------------ #

    def cancel(self) -> bool:
        """
        Stop tracking the job. Returns False if it had already finished.

        Responses that arrive afterwards are dropped. With abort_in_flight
        the pending transport call is cancelled too.
        """
        if self.is_terminal:
            return False
        self._finish(JobState.CANCELLED)
        self._cancel_requested.set()
        if self.abort_in_flight and self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    async def wait(self) -> JobState:
        """Wait until the job reaches a terminal state and return it."""
        await self._done.wait()
        return self.state

    # ------------------------------------------------------------------ #
    # Driven by the orchestrator
    # ------------------------------------------------------------------ #

    def _set_state(self, state: JobState) -> None:
        logger.debug("job_state", handle_id=self.id, state=state.value)
        self.state = state

    def _observe(self, status: JobStatus) -> None:
        """Record a reported status; subscribers only hear about transitions."""
        if self._status_seen and status is self.job.status:
            return
        self._status_seen = True
        self.job.status = status
        self._emit(self._status, status)

    def _emit_progress(self, attempt: int, delay: float) -> None:
        self._emit(self._progress, attempt, self.job.status, delay)

    def _emit_error(self, message: str) -> None:
        self._emit(self._errors, message)

    def _finish(
        self,
        state: JobState,
        *,
        error: Optional[JobError] = None,
        artifacts: Optional[Dict[str, GeneratedArtifact]] = None,
    ) -> None:
        self._set_state(state)
        self.job.status = _TERMINAL_STATUS[state]
        self.job.finished_at = datetime.now(timezone.utc)
        if error is not None:
            self.error = error
            self.job.error = str(error)
        JOB_OUTCOMES.labels(state=state.value).inc()
        logger.info(
            "job_finished",
            handle_id=self.id,
            job_id=self.job_id,
            graph_id=self.graph_id,
            state=state.value,
            attempts=self.job.attempts,
            error=self.job.error,
        )

        self._emit(self._status, self.job.status)
        if error is not None:
            self._emit(self._errors, str(error))
        if artifacts is not None:
            self.artifacts = artifacts
            self._emit(self._result, artifacts)
        self._done.set()

    def _emit(self, callbacks: List[Callable[..., None]], *args: Any) -> None:
        for callback in list(callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("job_callback_failed", handle_id=self.id, callback=repr(callback))


def _subscribe(callbacks: List[Any], callback: Any) -> Callable[[], None]:
    callbacks.append(callback)

    def unsubscribe() -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    return unsubscribe
