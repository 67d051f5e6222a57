from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from oceanctl.modules.errors import ClusterRuntimeError
from oceanctl.modules.models import NodeRole, NodeStatus
from oceanctl.modules.runtime import CONTROL_PLANE_LABEL, ClusterRuntime, node_status


def condition(kind, status):
    return SimpleNamespace(type=kind, status=status)


def k8s_node(name, ip, labels, ready="True"):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels),
        status=SimpleNamespace(
            addresses=[SimpleNamespace(type="Hostname", address=name), SimpleNamespace(type="InternalIP", address=ip)],
            conditions=[condition("MemoryPressure", "False"), condition("Ready", ready)],
            node_info=SimpleNamespace(kernel_version="5.15.0", container_runtime_version="containerd://1.7.2"),
        ),
    )


def test_node_status_follows_ready_condition():
    assert node_status([condition("Ready", "True")]) == NodeStatus.RUNNING
    assert node_status([condition("Ready", "Unknown")]) == NodeStatus.CREATING
    assert node_status(None) == NodeStatus.CREATING


def test_current_cluster_reads_nodes():
    api = MagicMock()
    api.list_node.return_value.items = [
        k8s_node("node-1", "10.0.0.1", {"cluster": "demo", CONTROL_PLANE_LABEL: ""}),
        k8s_node("node-2", "10.0.0.2", {"cluster": "demo"}, ready="False"),
    ]

    cluster = ClusterRuntime(api=api).current_cluster()

    assert cluster.name == "demo"
    master, worker = cluster.nodes
    assert (master.role, master.status, master.internal_ip) == (NodeRole.MASTER, NodeStatus.RUNNING, "10.0.0.1")
    assert (worker.role, worker.status) == (NodeRole.WORKER, NodeStatus.CREATING)
    assert master.kernel == "5.15.0"
    assert master.container == "containerd://1.7.2"


def test_current_cluster_needs_a_name():
    api = MagicMock()
    api.list_node.return_value.items = [k8s_node("node-1", "10.0.0.1", {})]
    with pytest.raises(ClusterRuntimeError):
        ClusterRuntime(api=api).current_cluster()
    assert ClusterRuntime(api=api).current_cluster("demo").name == "demo"


def test_api_errors_are_wrapped():
    api = MagicMock()
    api.list_node.side_effect = ApiException(status=403, reason="Forbidden")
    with pytest.raises(ClusterRuntimeError, match="Forbidden"):
        ClusterRuntime(api=api).current_cluster("demo")
