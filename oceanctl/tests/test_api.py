import pytest
from fastapi.testclient import TestClient

from oceanctl.api.deps import get_cluster_registry, get_lifecycle, get_runtime
from oceanctl.api.main import app
from oceanctl.modules.models import Cluster, Node, NodeStatus

HEADERS = {"X-API-Key": "ocean-secret"}


class RecordingLifecycle:
    def __init__(self):
        self.calls = []

    def install_cluster(self, cluster):
        self.calls.append(("install_cluster", cluster.name))


class FakeRuntime:
    def __init__(self, cluster):
        self.cluster = cluster

    def current_cluster(self, cluster_name=""):
        return self.cluster


@pytest.fixture
def lifecycle():
    return RecordingLifecycle()


@pytest.fixture
def client(settings, registry, lifecycle):
    live = Cluster(name="demo", nodes=[Node(name="node-2", status=NodeStatus.RUNNING)])
    app.dependency_overrides[get_cluster_registry] = lambda: registry
    app.dependency_overrides[get_lifecycle] = lambda: lifecycle
    app.dependency_overrides[get_runtime] = lambda: FakeRuntime(live)
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthz_is_open(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_requests_without_key_are_rejected(client):
    assert client.get("/clusters").status_code == 403
    assert client.get("/clusters", headers={"X-API-Key": "wrong"}).status_code == 403


def test_create_and_read_cluster(client):
    payload = {
        "name": "bare",
        "type": "local",
        "private_key": "KEY",
        "nodes": [{"name": "10.0.0.1"}, {"name": "10.0.0.2", "role": "master"}],
    }
    response = client.post("/clusters", json=payload, headers=HEADERS)
    assert response.status_code == 201
    assert response.json()["private_key"] == "***"

    assert client.post("/clusters", json=payload, headers=HEADERS).status_code == 409
    listing = client.get("/clusters", headers=HEADERS).json()
    assert listing == [{"name": "bare", "type": "local", "status": "unspecified", "nodes": 2}]
    detail = client.get("/clusters/bare", headers=HEADERS).json()
    assert [n["internal_ip"] for n in detail["nodes"]] == ["10.0.0.1", "10.0.0.2"]


def test_missing_cluster_is_404(client):
    response = client.get("/clusters/ghost", headers=HEADERS)
    assert response.status_code == 404
    assert "ghost" in response.json()["detail"]


def test_log_polling_by_offset(client, registry, cluster):
    cluster.logs = "line one\nline two\n"
    registry.save(cluster)

    first = client.get("/clusters/demo/logs", headers=HEADERS).json()
    assert first == {"logs": "line one\nline two\n", "offset": 18}
    second = client.get("/clusters/demo/logs", params={"offset": 9}, headers=HEADERS).json()
    assert second["logs"] == "line two\n"


def test_operations_run_in_the_background(client, registry, cluster, lifecycle):
    registry.save(cluster)

    response = client.post("/clusters/demo/install", headers=HEADERS)

    assert response.status_code == 202
    assert lifecycle.calls == [("install_cluster", "demo")]
    assert client.post("/clusters/demo/explode", headers=HEADERS).status_code == 404


def test_autoscaler_scaling_routes(client, registry, cluster):
    registry.save(cluster)
    group_id = cluster.node_groups[0].id

    response = client.post(
        "/autoscaler/demo/node-group-increase-size",
        json={"id": group_id, "delta": 2, "request_id": "r-1"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert len(response.json()["nodes"]) == 2

    target = client.post("/autoscaler/demo/node-group-target-size", json={"id": group_id}, headers=HEADERS)
    assert target.json() == {"target_size": 6}

    bad = client.post(
        "/autoscaler/demo/node-group-delete-nodes",
        json={"id": group_id, "nodes": ["ghost"]},
        headers=HEADERS,
    )
    assert bad.status_code == 400

    owner = client.post("/autoscaler/demo/node-group-for-node", json={"node_name": "node-1"}, headers=HEADERS)
    assert owner.json()["node_group"]["id"] == group_id


def test_autoscaler_unimplemented_calls_return_code_12(client, registry, cluster):
    registry.save(cluster)
    response = client.post(
        "/autoscaler/demo/pricing-node-price",
        json={"node_name": "node-1", "start_time": "2024-01-01T00:00:00", "end_time": "2024-01-01T01:00:00"},
        headers=HEADERS,
    )
    assert response.status_code == 501
    assert response.json()["code"] == 12


def test_autoscaler_refresh_uses_live_state(client, registry, cluster):
    cluster.get_node("node-2").status = NodeStatus.CREATING
    registry.save(cluster)
    assert client.post("/autoscaler/demo/refresh", headers=HEADERS).status_code == 200
    assert registry.get("demo").get_node("node-2").status == NodeStatus.RUNNING
