import pytest

from oceanctl.config import ResourceConfig, Settings, set_config
from oceanctl.modules.models import Cluster, ClusterType, Node, NodeGroup, NodeRole, NodeStatus
from oceanctl.registry import ClusterRegistry


@pytest.fixture
def settings(tmp_path):
    config = Settings(resource=ResourceConfig(workspace=str(tmp_path / "workspace")))
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def registry(settings):
    return ClusterRegistry(settings.resource.clusters_dir)


def make_cluster(name="demo", cluster_type=ClusterType.LOCAL, nodes=4):
    """A cluster with one master and ``nodes - 1`` workers, all running."""
    group = NodeGroup(name="amd64-cpu-4-mem-8", cpu=4, memory=8, min_size=1, max_size=10, target_size=nodes)
    cluster = Cluster(name=name, type=cluster_type, region="cn-hangzhou", private_key="KEY", node_groups=[group])
    for i in range(nodes):
        cluster.nodes.append(Node(
            name=f"node-{i + 1}",
            cluster_id=cluster.id,
            node_group_id=group.id,
            internal_ip=f"10.0.0.{i + 1}",
            role=NodeRole.MASTER if i == 0 else NodeRole.WORKER,
            status=NodeStatus.RUNNING,
        ))
    return cluster


@pytest.fixture
def cluster():
    return make_cluster()


@pytest.fixture
def cluster_factory():
    return make_cluster
