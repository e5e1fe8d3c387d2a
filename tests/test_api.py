"""HTTP bridge end-to-end, driven through httpx.ASGITransport.

The runtime is built up front with a fake fetch function and a tmp data
dir, and handed to create_app() so the lifespan does not build its own.
"""

from __future__ import annotations

import httpx
import pytest
from pydantic import SecretStr

from devops_flow.api import create_app
from devops_flow.config import AppSettings
from devops_flow.graph.model import NodeKind
from devops_flow.integrations.config import IntegrationRegistry
from devops_flow.integrations.errors import AuthError
from devops_flow.integrations.models import JenkinsJob, K8sNamespace
from devops_flow.runtime import build_runtime


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_SPECS = [
    {"id": "ci", "name": "Jenkins", "type": "jenkins", "base_url": "https://ci.example.com", "token": "s3cret"},
    {"id": "k8s-dev", "type": "kubernetes", "base_url": "https://k8s.example.com"},
]


async def _fake_fetch(kind: NodeKind, integration_id: str):
    if kind is NodeKind.JENKINS:
        return [JenkinsJob(name="build"), JenkinsJob(name="deploy")]
    if kind is NodeKind.KUBERNETES:
        raise AuthError("Unauthorized", status=401)
    return [K8sNamespace(name="default")]


def _runtime(tmp_path, api_key: str = ""):
    settings = AppSettings(data_dir=tmp_path, retry_delay=0, api_key=SecretStr(api_key))
    return build_runtime(
        settings,
        integrations=IntegrationRegistry.from_specs(_SPECS),
        fetch=_fake_fetch,
    )


def _client(runtime) -> httpx.AsyncClient:
    app = create_app(runtime)
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def _place(client: httpx.AsyncClient, kind: str, x: float = 100, y: float = 100) -> dict:
    r = await client.post(f"/palette/{kind}")
    assert r.status_code == 200
    r = await client.post("/events/pane-click", json={"x": x, "y": y})
    assert r.status_code == 200
    return r.json()["node"]


# ---------------------------------------------------------------------------
# Graph and events
# ---------------------------------------------------------------------------


class TestGraphEvents:
    @pytest.mark.asyncio
    async def test_health(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.get("/health")
        assert r.json() == {"status": "ok", "integrations": 2}

    @pytest.mark.asyncio
    async def test_palette_arm_then_pane_click_places_node(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.post("/palette/jenkins")
            state = r.json()
            assert state["pendingNodeType"] == "jenkins"
            assert state["cursor"] == "crosshair"
            assert state["placementHint"] == "Click on canvas to add Jenkins node"

            node = await _place(client, "gitlab", 40, 60)
            assert node["type"] == "gitlab"
            assert node["position"] == {"x": 40.0, "y": 60.0}
            assert node["data"] == {"label": "Gitlab", "integrationType": "gitlab"}

            graph = (await client.get("/graph")).json()
            assert graph["pendingNodeType"] is None
            assert graph["isDirty"] is True
            assert len(graph["nodes"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_palette_kind_is_404(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.post("/palette/terraform")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_escape_cancels_placement(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            await client.post("/palette/keycloak")
            r = await client.post("/events/key", json={"key": "Escape"})
            assert r.json()["consumed"] is True
            r = await client.post("/events/pane-click", json={"x": 1, "y": 1})
        assert r.json()["node"] is None
        assert r.json()["graph"]["nodes"] == []

    @pytest.mark.asyncio
    async def test_node_changes_connect_and_delete(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.post("/events/nodes", json={"changes": [
                {"type": "add", "item": {"id": "a", "type": "jenkins", "position": {"x": 0, "y": 0}, "data": {}}},
                {"type": "add", "item": {"id": "b", "type": "kubernetes", "position": {"x": 0, "y": 0}, "data": {}}},
                {"type": "add", "item": {"id": "a", "type": "gitlab", "position": {"x": 0, "y": 0}, "data": {}}},
            ]})
            assert r.json()["rejected"] == ["a"]

            r = await client.post("/events/connect", json={"source": "a", "target": "b"})
            assert [e["id"] for e in r.json()["edges"]] == ["edge-a-b"]

            r = await client.delete("/nodes/a")
            assert r.json()["edges"] == []
            assert [n["id"] for n in r.json()["nodes"]] == ["b"]

    @pytest.mark.asyncio
    async def test_bad_change_type_is_422(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.post("/events/nodes", json={"changes": [{"type": "explode"}]})
        assert r.status_code == 422

    @pytest.mark.asyncio
    async def test_view_actions(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.post("/view/zoom-in")
            assert r.json()["viewport"]["zoom"] == pytest.approx(1.2)
            r = await client.post("/view/spin")
        assert r.status_code == 404


# ---------------------------------------------------------------------------
# Node data and properties
# ---------------------------------------------------------------------------


class TestNodes:
    @pytest.mark.asyncio
    async def test_view_waits_for_listing(self, tmp_path):
        runtime = _runtime(tmp_path)
        async with _client(runtime) as client:
            node = await _place(client, "jenkins")
            r = await client.get(f"/nodes/{node['id']}/view")
            assert r.json()["status"] == "initial"

            await client.patch(f"/nodes/{node['id']}/properties", json={"integration_id": "ci"})
            r = await client.get(f"/nodes/{node['id']}/view", params={"wait": "true"})
        view = r.json()
        assert view["status"] == "success"
        assert [i["name"] for i in view["items"]] == ["build", "deploy"]

    @pytest.mark.asyncio
    async def test_auth_failure_shows_error(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            node = await _place(client, "kubernetes")
            await client.patch(f"/nodes/{node['id']}/properties", json={"integration_id": "k8s-dev"})
            r = await client.get(f"/nodes/{node['id']}/view", params={"wait": "true"})
        view = r.json()
        assert view["indicator"] == "error"
        assert view["error"]["status"] == 401

    @pytest.mark.asyncio
    async def test_properties_select_item(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            node = await _place(client, "jenkins")
            node_id = node["id"]
            await client.patch(f"/nodes/{node_id}/properties", json={"integration_id": "ci", "label": "CI"})
            await client.get(f"/nodes/{node_id}/view", params={"wait": "true"})

            r = await client.patch(f"/nodes/{node_id}/properties", json={"selected_item": "deploy"})
            payload = r.json()
            assert payload["form"]["selectedItem"] == "deploy"
            assert payload["form"]["label"] == "CI"
            assert [o["value"] for o in payload["itemOptions"]] == ["build", "deploy"]
            assert [i["id"] for i in payload["integrationChoices"]] == ["ci"]

            r = await client.patch(f"/nodes/{node_id}/properties", json={"selected_item": "nope"})
            assert r.status_code == 422

    @pytest.mark.asyncio
    async def test_properties_null_clears_and_omitted_keeps(self, tmp_path):
        runtime = _runtime(tmp_path)
        async with _client(runtime) as client:
            node = await _place(client, "jenkins")
            node_id = node["id"]
            await client.patch(f"/nodes/{node_id}/properties", json={
                "integration_id": "ci", "label": "CI", "description": "Main",
            })
            await client.get(f"/nodes/{node_id}/view", params={"wait": "true"})
            await client.patch(f"/nodes/{node_id}/properties", json={"selected_item": "build"})

            r = await client.patch(f"/nodes/{node_id}/properties", json={"label": "Builds"})
            assert r.json()["form"]["description"] == "Main"
            assert r.json()["form"]["selectedItem"] == "build"

            r = await client.patch(f"/nodes/{node_id}/properties", json={
                "description": None, "selected_item": None,
            })
        form = r.json()["form"]
        assert form["label"] == "Builds"
        assert form["description"] == ""
        assert form["selectedItem"] is None
        data = runtime.store.get_node(node_id).data
        assert "description" not in data
        assert "selectedJobName" not in data

    @pytest.mark.asyncio
    async def test_properties_unknown_node_404(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.get("/nodes/ghost/properties")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_refresh_requires_integration(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            node = await _place(client, "jenkins")
            r = await client.post(f"/nodes/{node['id']}/refresh")
            assert r.status_code == 409
            await client.patch(f"/nodes/{node['id']}/properties", json={"integration_id": "ci"})
            r = await client.post(f"/nodes/{node['id']}/refresh")
        assert r.status_code == 200
        assert r.json()["status"] == "success"

    @pytest.mark.asyncio
    async def test_integrations_listing_hides_secrets(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.get("/integrations")
        assert "s3cret" not in r.text
        assert [i["id"] for i in r.json()] == ["ci", "k8s-dev"]


# ---------------------------------------------------------------------------
# Saved graphs
# ---------------------------------------------------------------------------


class TestGraphs:
    @pytest.mark.asyncio
    async def test_save_list_new_open(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            await _place(client, "sonarqube")
            r = await client.post("/graphs/save", json={"name": "Quality"})
            saved = r.json()["saved"]
            assert saved["name"] == "Quality"
            assert r.json()["graph"]["isDirty"] is False

            r = await client.get("/graphs")
            assert [g["id"] for g in r.json()] == [saved["id"]]

            r = await client.post("/graphs/new")
            assert r.json()["nodes"] == []

            r = await client.post(f"/graphs/{saved['id']}/open")
            assert len(r.json()["nodes"]) == 1
            assert r.json()["currentFlowId"] == saved["id"]

    @pytest.mark.asyncio
    async def test_open_missing_is_404(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.post("/graphs/nope/open")
        assert r.status_code == 404
        assert r.json()["detail"] == "Flow not found: nope"

    @pytest.mark.asyncio
    async def test_delete_unsaved_is_409(self, tmp_path):
        async with _client(_runtime(tmp_path)) as client:
            r = await client.delete("/graphs/current")
        assert r.status_code == 409


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestApiKey:
    @pytest.mark.asyncio
    async def test_key_required_when_configured(self, tmp_path):
        async with _client(_runtime(tmp_path, api_key="k3y")) as client:
            assert (await client.get("/graph")).status_code == 401
            r = await client.get("/graph", headers={"Authorization": "Bearer wrong"})
            assert r.status_code == 401
            r = await client.get("/graph", headers={"Authorization": "Bearer k3y"})
            assert r.status_code == 200
