"""HTTP surface tests: routes, error mapping and job lifecycle over the ASGI app."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from topology_studio.codegen import ArtifactStore, BackoffPolicy, JobOrchestrator, JobState
from topology_studio.dependencies import (
    close_resources,
    generation_enabled,
    get_workspace,
    init_resources,
)
from topology_studio.main import create_app
from topology_studio.models import (
    ArtifactFragment,
    GenerationConfig,
    GenerationResult,
    JobStatus,
    JobStatusReport,
    NodeResult,
)
from topology_studio.persistence import InMemoryTopologyRepository
from topology_studio.sync import GridLayout
from topology_studio.workspace import Workspace

PREFIX = "/api/workspace"

TOPOLOGY = {
    "id": "g1",
    "name": "Payments",
    "companyId": "acme",
    "userId": "u1",
    "nodes": [
        {"id": "api", "name": "API", "edges": [{"connectionType": "DEPENDS_ON", "targetNodeId": "db"}]},
        {"id": "db", "name": "DB", "nodeType": "DATABASE"},
    ],
}


class ScriptedApi:
    def __init__(self, status: JobStatus = JobStatus.COMPLETED) -> None:
        self.status = status

    async def initiate(self, snapshot, config) -> str:
        return "job-1"

    async def poll_status(self, job_id):
        return JobStatusReport(status=self.status)

    async def fetch_result(self, job_id):
        return GenerationResult(
            nodes=[NodeResult(node_id="api", artifacts=[ArtifactFragment(name="api.yaml", content="kind: Service")])]
        )


async def _instant(delay: float) -> None:
    return None


async def _forever(delay: float) -> None:
    await asyncio.Event().wait()


def _workspace(api, sleep=_instant) -> Workspace:
    orchestrator = JobOrchestrator(
        api,
        ArtifactStore(),
        BackoffPolicy(base_delay=1, max_delay=1, max_attempts=3),
        sleep=sleep,
    )
    return Workspace(
        InMemoryTopologyRepository(),
        orchestrator,
        layout=GridLayout(),
        default_config=GenerationConfig(provider="openai", model="gpt-4o-mini"),
    )


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def make_app():
    apps = []

    def factory(workspace: Workspace, *, enabled: bool = True):
        app = create_app()
        app.dependency_overrides[get_workspace] = lambda: workspace
        app.dependency_overrides[generation_enabled] = lambda: enabled
        apps.append(app)
        return app

    yield factory
    for app in apps:
        app.dependency_overrides.clear()


class TestSystem:
    @pytest.mark.asyncio
    async def test_health_and_version(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            health = await client.get("/api/health")
            version = await client.get("/api/version")

        assert health.json() == {"status": "ok"}
        assert version.json()["version"] == "0.1.0"
        assert "X-Request-ID" in health.headers

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            resp = await client.get("/api/health", headers={"X-Request-ID": "abc"})
        assert resp.headers["X-Request-ID"] == "abc"

    @pytest.mark.asyncio
    async def test_init_resources_with_injected_parts(self) -> None:
        await init_resources(api=ScriptedApi(), repository=InMemoryTopologyRepository())
        try:
            assert generation_enabled() is True
            async with _client(create_app()) as client:
                ready = await client.get("/api/ready")
                summary = await client.get(PREFIX)
            body = ready.json()
            assert (body["status"], body["redis"], body["codegen"]) == ("ok", "disabled", "enabled")
            assert body["consistent"] is True
            assert body["workspace"] == summary.json()["graph_id"]
            assert summary.json()["nodes"] == 0
        finally:
            await close_resources()

    @pytest.mark.asyncio
    async def test_metrics_sample_workspace(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            resp = await client.get("/api/metrics")

        assert resp.status_code == 200
        assert "topology_studio_workspace_nodes 2.0" in resp.text
        assert "topology_studio_reconciliations_total" in resp.text


class TestTopologyRoutes:
    @pytest.mark.asyncio
    async def test_put_topology_builds_canvas(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            put = await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            canvas = await client.get(f"{PREFIX}/canvas")
            summary = await client.get(PREFIX)

        assert put.status_code == 200
        assert put.json()["nodes"][0]["edges"][0]["targetNodeId"] == "db"
        assert [s["id"] for s in canvas.json()["shapes"]] == ["api", "db"]
        assert canvas.json()["connectors"][0]["startNodeId"] == "api"
        assert summary.json()["edges"] == 1

    @pytest.mark.asyncio
    async def test_dangling_edge_is_conflict(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        body = {"id": "g1", "nodes": [{"id": "a", "edges": [{"connectionType": "CONNECTS_TO", "targetNodeId": "x"}]}]}
        async with _client(app) as client:
            resp = await client.put(f"{PREFIX}/topology", json=body)

        assert resp.status_code == 409
        assert resp.json()["error"] == "DanglingEdgeError"

    @pytest.mark.asyncio
    async def test_open_missing_is_not_found(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            resp = await client.post(f"{PREFIX}/topology/open/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "TopologyNotFoundError"

    @pytest.mark.asyncio
    async def test_save_then_open(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            await client.post(f"{PREFIX}/topology/save")
            await client.post(f"{PREFIX}/topology/clear")
            opened = await client.post(f"{PREFIX}/topology/open/g1")

        assert [n["id"] for n in opened.json()["nodes"]] == ["api", "db"]

    @pytest.mark.asyncio
    async def test_list_and_delete_stored(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            await client.post(f"{PREFIX}/topology/save")
            listed = await client.get(f"{PREFIX}/topologies")
            deleted = await client.delete(f"{PREFIX}/topologies/g1")
            again = await client.delete(f"{PREFIX}/topologies/g1")

        assert listed.json() == ["g1"]
        assert deleted.status_code == 204
        assert again.status_code == 404

    @pytest.mark.asyncio
    async def test_checkpoint_restore(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            missing = await client.post(f"{PREFIX}/checkpoint/restore")
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            assert (await client.post(f"{PREFIX}/checkpoint")).status_code == 204
            await client.delete(f"{PREFIX}/canvas/shapes/db")
            restored = await client.post(f"{PREFIX}/checkpoint/restore")

        assert missing.status_code == 409
        assert [n["id"] for n in restored.json()["nodes"]] == ["api", "db"]

    @pytest.mark.asyncio
    async def test_add_node_and_edge(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            node = await client.post(f"{PREFIX}/topology/nodes", json={"id": "cache", "nodeType": "CACHE"})
            edge = await client.post(
                f"{PREFIX}/topology/nodes/api/edges",
                json={"connectionType": "CACHES", "targetNodeId": "cache"},
            )

        assert node.status_code == 201
        assert len(edge.json()["edges"]) == 2
        assert workspace.canvas.find_connector("api", "cache", "CACHES") is not None


class TestCanvasRoutes:
    @pytest.mark.asyncio
    async def test_add_shape_creates_node(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        async with _client(app) as client:
            resp = await client.post(f"{PREFIX}/canvas/shapes", json={"id": "svc", "label": "Orders"})

        assert resp.status_code == 201
        assert resp.json()["name"] == "Orders"
        assert workspace.topology.has_node("svc")

    @pytest.mark.asyncio
    async def test_patch_shape_accepts_camel_case(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            resp = await client.patch(f"{PREFIX}/canvas/shapes/db", json={"nodeType": "CACHE", "x": 5})

        assert resp.status_code == 200
        assert resp.json()["x"] == 5
        assert workspace.topology.get_node("db").node_type.value == "CACHE"

    @pytest.mark.asyncio
    async def test_patch_shape_errors(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            unknown_field = await client.patch(f"{PREFIX}/canvas/shapes/db", json={"shadow": True})
            bad_value = await client.patch(f"{PREFIX}/canvas/shapes/db", json={"x": "left"})
            unknown_shape = await client.patch(f"{PREFIX}/canvas/shapes/nope", json={"x": 1})

        assert unknown_field.status_code == 422
        assert bad_value.status_code == 422
        assert unknown_shape.status_code == 404

    @pytest.mark.asyncio
    async def test_connector_lifecycle(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        connector = {"id": "c1", "startNodeId": "db", "endNodeId": "api", "connectionType": "CONNECTS_TO"}
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            created = await client.post(f"{PREFIX}/canvas/connectors", json=connector)
            retyped = await client.patch(
                f"{PREFIX}/canvas/connectors/c1", json={"connectionType": "ROUTES_TO"}
            )
            removed = await client.delete(f"{PREFIX}/canvas/connectors/c1")
            again = await client.delete(f"{PREFIX}/canvas/connectors/c1")

        assert created.status_code == 201
        assert created.json() == {"connectionType": "CONNECTS_TO", "targetNodeId": "api"}
        assert retyped.json()["connectionType"] == "ROUTES_TO"
        assert removed.status_code == 204
        assert again.status_code == 404
        assert not workspace.topology.get_node("db").edges

    @pytest.mark.asyncio
    async def test_unresolved_connector_rejected(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            resp = await client.post(
                f"{PREFIX}/canvas/connectors",
                json={"id": "c1", "startNodeId": "api", "endNodeId": "ghost"},
            )
        assert resp.status_code == 409


class TestGenerationRoutes:
    @pytest.mark.asyncio
    async def test_disabled_generation(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()), enabled=False)
        async with _client(app) as client:
            resp = await client.post(f"{PREFIX}/generate", json={})
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_empty_topology_unprocessable(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            resp = await client.post(f"{PREFIX}/generate", json={})
        assert resp.status_code == 422
        assert resp.json()["error"] == "EmptyTopologyError"

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            resp = await client.post(f"{PREFIX}/generate", json={"provider": "acme-llm"})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_completed_job_and_artifacts(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            submitted = await client.post(f"{PREFIX}/generate", json={"provider": "Anthropic", "model": "sonnet"})
            assert submitted.status_code == 202
            handle_id = submitted.json()["handle_id"]
            assert submitted.json()["state"] == "submitting"

            await workspace.orchestrator.get(handle_id).wait()

            job = await client.get(f"{PREFIX}/jobs/{handle_id}")
            artifact = await client.get(f"{PREFIX}/artifacts/g1/api")
            missing = await client.get(f"{PREFIX}/artifacts/g1/db")
            stats = await client.get(f"{PREFIX}/jobs/stats")
            ack = await client.post(f"{PREFIX}/jobs/{handle_id}/acknowledge")
            history = await client.get(f"{PREFIX}/jobs/history")
            gone = await client.get(f"{PREFIX}/jobs/{handle_id}")
            cleared = await client.delete(f"{PREFIX}/artifacts/g1")

        assert job.json()["state"] == "completed"
        assert job.json()["artifact_nodes"] == ["api"]
        assert artifact.json()["fragments"][0]["content"] == "kind: Service"
        assert missing.status_code == 404
        assert stats.json() == {"total_jobs_completed": 1, "total_artifacts_generated": 1, "active_jobs": 0}
        assert ack.status_code == 204
        assert history.json()[0]["status"] == "completed"
        assert gone.status_code == 404
        assert cleared.json() == {"cleared": 1}

    @pytest.mark.asyncio
    async def test_clear_drops_artifacts(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            submitted = await client.post(f"{PREFIX}/generate", json={})
            await workspace.orchestrator.get(submitted.json()["handle_id"]).wait()
            before = await client.get(f"{PREFIX}/artifacts/g1/api")
            await client.post(f"{PREFIX}/topology/clear")
            after = await client.get(f"{PREFIX}/artifacts/g1/api")

        assert before.status_code == 200
        assert after.status_code == 404
        assert workspace.describe()["artifacts"] == 0

    @pytest.mark.asyncio
    async def test_delete_stored_drops_artifacts(self, make_app) -> None:
        workspace = _workspace(ScriptedApi())
        app = make_app(workspace)
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            await client.post(f"{PREFIX}/topology/save")
            submitted = await client.post(f"{PREFIX}/generate", json={})
            await workspace.orchestrator.get(submitted.json()["handle_id"]).wait()
            deleted = await client.delete(f"{PREFIX}/topologies/g1")
            artifact = await client.get(f"{PREFIX}/artifacts/g1/api")

        assert deleted.status_code == 204
        assert artifact.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, make_app) -> None:
        workspace = _workspace(ScriptedApi(JobStatus.RUNNING), sleep=_forever)
        app = make_app(workspace)
        async with _client(app) as client:
            await client.put(f"{PREFIX}/topology", json=TOPOLOGY)
            handle_id = (await client.post(f"{PREFIX}/generate", json={})).json()["handle_id"]
            listed = await client.get(f"{PREFIX}/jobs")
            early_ack = await client.post(f"{PREFIX}/jobs/{handle_id}/acknowledge")
            cancelled = await client.delete(f"{PREFIX}/jobs/{handle_id}")

        handle = workspace.orchestrator.get(handle_id)
        assert await handle.wait() is JobState.CANCELLED
        await workspace.orchestrator.shutdown()

        assert [j["handle_id"] for j in listed.json()] == [handle_id]
        assert early_ack.status_code == 409
        assert cancelled.json()["state"] == "cancelled"
        assert workspace.artifact_store.count_for_graph("g1") == 0

    @pytest.mark.asyncio
    async def test_unknown_job(self, make_app) -> None:
        app = make_app(_workspace(ScriptedApi()))
        async with _client(app) as client:
            resp = await client.delete(f"{PREFIX}/jobs/nope")
        assert resp.status_code == 404
