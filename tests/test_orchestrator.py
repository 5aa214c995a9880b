"""Tests for JobOrchestrator / JobHandle using a scripted remote API."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence, Union

import httpx
import pytest

from conftest import make_node, make_topology
from topology_studio.codegen import ArtifactStore, BackoffPolicy, JobOrchestrator, JobState
from topology_studio.codegen.remote_api import AUTH_FAILED_MESSAGE, NETWORK_ERROR_MESSAGE
from topology_studio.errors import (
    EmptyTopologyError,
    JobFailedError,
    JobTimeoutError,
    MissingConfigurationError,
    ResultFetchError,
    SubmissionError,
)
from topology_studio.models import (
    ArtifactFragment,
    GenerationConfig,
    GenerationResult,
    JobStatus,
    JobStatusReport,
    NodeResult,
)

Scripted = Union[JobStatusReport, Exception]


def report(status: str, **fields) -> JobStatusReport:
    return JobStatusReport(status=JobStatus(status), **fields)


def result_for(*node_ids: str, content: str = "kind: Deployment") -> GenerationResult:
    return GenerationResult(
        nodes=[
            NodeResult(
                node_id=nid,
                artifacts=[ArtifactFragment(name=f"{nid}.yaml", content=content, language="yaml")],
                file_name=f"{nid}.yaml",
                path=f"k8s/{nid}.yaml",
            )
            for nid in node_ids
        ]
    )


class FakeJobApi:
    """Plays back a list of poll responses (or exceptions)."""

    def __init__(
        self,
        statuses: Sequence[Scripted] = (),
        result: Optional[GenerationResult] = None,
        *,
        initiate_error: Optional[Exception] = None,
        fetch_error: Optional[Exception] = None,
    ):
        self.statuses: List[Scripted] = list(statuses)
        self.result = result or result_for("api")
        self.initiate_error = initiate_error
        self.fetch_error = fetch_error
        self.initiated: list = []
        self.polls = 0
        self.fetches = 0

    async def initiate(self, snapshot, config) -> str:
        self.initiated.append((snapshot, config))
        if self.initiate_error is not None:
            raise self.initiate_error
        return f"job-{len(self.initiated)}"

    async def poll_status(self, job_id: str) -> JobStatusReport:
        self.polls += 1
        item = self.statuses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_result(self, job_id: str) -> GenerationResult:
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.result


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Recorder:
    """Collects every callback a handle emits."""

    def __init__(self, handle) -> None:
        self.progress: list = []
        self.statuses: list = []
        self.results: list = []
        self.errors: list = []
        handle.on_progress(lambda *args: self.progress.append(args))
        handle.on_status_change(self.statuses.append)
        handle.on_result(self.results.append)
        handle.on_error(self.errors.append)


@pytest.fixture
def snapshot():
    return make_topology([make_node("api"), make_node("db")])


@pytest.fixture
def config() -> GenerationConfig:
    return GenerationConfig(provider="openai", model="gpt-4o")


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


def _orchestrator(api, sleep, *, store=None, **policy) -> JobOrchestrator:
    return JobOrchestrator(api, store if store is not None else ArtifactStore(), BackoffPolicy(**policy), sleep=sleep)


class TestBackoffPolicy:
    def test_delays_grow_and_cap(self) -> None:
        policy = BackoffPolicy(base_delay=30, multiplier=1.5, max_delay=100, max_attempts=5)
        assert list(policy.delays()) == [30, 45, 67.5, 100, 100]

    def test_rejects_shrinking_multiplier(self) -> None:
        with pytest.raises(ValueError):
            BackoffPolicy(multiplier=0.5)


class TestPreconditions:
    def test_empty_topology_rejected_without_network(self, config, sleep) -> None:
        api = FakeJobApi()
        orchestrator = _orchestrator(api, sleep)
        with pytest.raises(EmptyTopologyError):
            orchestrator.submit(make_topology(), config)
        assert api.initiated == []

    def test_missing_config_rejected(self, snapshot, sleep) -> None:
        api = FakeJobApi()
        with pytest.raises(MissingConfigurationError):
            _orchestrator(api, sleep).submit(snapshot, None)
        assert api.initiated == []


class TestPolling:
    @pytest.mark.asyncio
    async def test_running_then_completed(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("running")] * 3 + [report("completed")], result_for("api", "db"))
        store = ArtifactStore()
        orchestrator = _orchestrator(api, sleep, store=store, base_delay=30, multiplier=1.5, max_delay=60)

        handle = orchestrator.submit(snapshot, config)
        events = Recorder(handle)
        state = await handle.wait()

        assert state is JobState.COMPLETED
        assert api.polls == 4
        assert sleep.delays == [30, 45, 60, 60]
        assert [p[0] for p in events.progress] == [1, 2, 3, 4]
        assert events.statuses == [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPLETED]
        assert len(events.results) == 1
        assert sorted(events.results[0]) == ["api", "db"]
        assert store.count_for_graph("g1") == 2
        assert handle.job.job_id == "job-1"
        assert handle.job.attempts == 4

    @pytest.mark.asyncio
    async def test_step_is_tracked(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("pending"), report("running", step="rendering"), report("completed")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)
        assert await handle.wait() is JobState.COMPLETED
        assert handle.job.step == "rendering"

    @pytest.mark.asyncio
    async def test_server_failure(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("running"), report("failed", error="template error in node api")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)
        events = Recorder(handle)

        assert await handle.wait() is JobState.FAILED
        assert isinstance(handle.error, JobFailedError)
        assert events.errors == ["template error in node api"]
        assert events.statuses[-1] is JobStatus.FAILED
        assert events.results == []
        assert api.fetches == 0

    @pytest.mark.asyncio
    async def test_attempts_exhausted_is_timeout(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("running")] * 3)
        handle = _orchestrator(api, sleep, max_attempts=3).submit(snapshot, config)

        assert await handle.wait() is JobState.FAILED
        assert isinstance(handle.error, JobTimeoutError)
        assert not isinstance(handle.error, JobFailedError)
        assert api.polls == 3

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([httpx.ConnectError("connection refused"), report("completed")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)
        events = Recorder(handle)

        assert await handle.wait() is JobState.COMPLETED
        assert events.errors == [NETWORK_ERROR_MESSAGE]
        assert api.polls == 2

    @pytest.mark.asyncio
    async def test_submission_failure(self, snapshot, config, sleep) -> None:
        request = httpx.Request("POST", "https://codegen.test/api/v1/public/graph/codegen")
        response = httpx.Response(401, request=request)
        api = FakeJobApi(initiate_error=httpx.HTTPStatusError("unauthorized", request=request, response=response))

        handle = _orchestrator(api, sleep).submit(snapshot, config)

        assert await handle.wait() is JobState.FAILED
        assert isinstance(handle.error, SubmissionError)
        assert str(handle.error) == AUTH_FAILED_MESSAGE
        assert handle.job_id is None
        assert api.polls == 0

    @pytest.mark.asyncio
    async def test_result_fetch_failure_fails_job(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("completed")], fetch_error=httpx.ReadTimeout("slow"))
        store = ArtifactStore()
        handle = _orchestrator(api, sleep, store=store).submit(snapshot, config)
        events = Recorder(handle)

        assert await handle.wait() is JobState.FAILED
        assert isinstance(handle.error, ResultFetchError)
        assert JobStatus.COMPLETED not in events.statuses
        assert events.results == []
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_snapshot_is_copied(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("completed")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)
        snapshot.nodes.clear()
        await handle.wait()

        sent, _ = api.initiated[0]
        assert [n.id for n in sent.nodes] == ["api", "db"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_poll_resolves_drops_late_response(self, snapshot, config, sleep) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowApi(FakeJobApi):
            async def poll_status(self, job_id):
                started.set()
                await release.wait()
                return await super().poll_status(job_id)

        api = SlowApi([report("completed")])
        store = ArtifactStore()
        orchestrator = _orchestrator(api, sleep, store=store)
        handle = orchestrator.submit(snapshot, config)
        events = Recorder(handle)

        await started.wait()
        assert handle.cancel() is True
        release.set()
        await orchestrator.shutdown()

        assert handle.state is JobState.CANCELLED
        assert events.results == []
        assert JobStatus.COMPLETED not in events.statuses
        assert events.statuses[-1] is JobStatus.CANCELLED
        assert api.fetches == 0
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff_sleep(self, snapshot, config) -> None:
        sleeping = asyncio.Event()

        async def forever(delay: float) -> None:
            sleeping.set()
            await asyncio.Event().wait()

        api = FakeJobApi([report("completed")])
        orchestrator = JobOrchestrator(api, ArtifactStore(), BackoffPolicy(), sleep=forever)
        handle = orchestrator.submit(snapshot, config)

        await sleeping.wait()
        handle.cancel()
        assert await asyncio.wait_for(handle.wait(), timeout=1) is JobState.CANCELLED
        await asyncio.wait_for(orchestrator.shutdown(), timeout=1)
        assert api.polls == 0

    @pytest.mark.asyncio
    async def test_abort_in_flight_cancels_transport_call(self, snapshot, config, sleep) -> None:
        started = asyncio.Event()
        aborted = []

        class HangingApi(FakeJobApi):
            async def poll_status(self, job_id):
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    aborted.append(job_id)
                    raise

        orchestrator = _orchestrator(HangingApi(), sleep)
        handle = orchestrator.submit(snapshot, config, abort_in_flight=True)

        await started.wait()
        handle.cancel()
        await orchestrator.shutdown()

        assert aborted == ["job-1"]

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent_and_noop_when_finished(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("completed")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)
        await handle.wait()

        assert handle.cancel() is False
        assert handle.state is JobState.COMPLETED


class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_regeneration_replaces_artifact(self, snapshot, config, sleep) -> None:
        store = ArtifactStore()
        first = FakeJobApi([report("completed")], result_for("api", content="replicas: 1"))
        await _orchestrator(first, sleep, store=store).submit(snapshot, config).wait()

        second = FakeJobApi([report("completed")], result_for("api", content="replicas: 3"))
        await _orchestrator(second, sleep, store=store).submit(snapshot, config).wait()

        fragments = store.fragments("g1", "api")
        assert [f.content for f in fragments] == ["replicas: 3"]

    @pytest.mark.asyncio
    async def test_acknowledge_moves_to_history(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("completed"), report("running")])
        orchestrator = JobOrchestrator(
            api, ArtifactStore(), BackoffPolicy(max_attempts=1), sleep=sleep, history_limit=1
        )

        done = orchestrator.submit(snapshot, config)
        await done.wait()
        assert orchestrator.stats() == {
            "total_jobs_completed": 1,
            "total_artifacts_generated": 1,
            "active_jobs": 0,
        }
        assert orchestrator.acknowledge(done) is True
        assert orchestrator.active_jobs() == []

        timed_out = orchestrator.submit(snapshot, config)
        await timed_out.wait()
        orchestrator.acknowledge(timed_out)

        history = orchestrator.history()
        assert len(history) == 1
        assert history[0].status is JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_running_job_cannot_be_acknowledged(self, snapshot, config) -> None:
        sleeping = asyncio.Event()

        async def forever(delay: float) -> None:
            sleeping.set()
            await asyncio.Event().wait()

        orchestrator = JobOrchestrator(FakeJobApi(), ArtifactStore(), sleep=forever)
        handle = orchestrator.submit(snapshot, config)
        await sleeping.wait()

        assert orchestrator.acknowledge(handle) is False
        assert orchestrator.stats()["active_jobs"] == 1
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_job(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("completed")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)

        def explode(status):
            raise RuntimeError("subscriber bug")

        handle.on_status_change(explode)
        results = []
        handle.on_result(results.append)

        assert await handle.wait() is JobState.COMPLETED
        assert len(results) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, snapshot, config, sleep) -> None:
        api = FakeJobApi([report("completed")])
        handle = _orchestrator(api, sleep).submit(snapshot, config)
        statuses = []
        unsubscribe = handle.on_status_change(statuses.append)
        unsubscribe()

        await handle.wait()
        assert statuses == []
