import pytest

from oceanctl.modules.errors import ClusterConflictError, ClusterNotFound, ValidationError
from oceanctl.modules.models import NodeStatus


def test_save_and_get_round_trip(registry, cluster):
    registry.save(cluster)
    assert cluster.version == 1

    loaded = registry.get("demo")
    assert loaded.version == 1
    assert [n.name for n in loaded.nodes] == ["node-1", "node-2", "node-3", "node-4"]
    assert registry.exists("demo")
    assert [c.name for c in registry.list()] == ["demo"]


def test_stale_save_conflicts(registry, cluster):
    registry.save(cluster)
    first = registry.get("demo")
    second = registry.get("demo")

    first.nodes[0].status = NodeStatus.DELETING
    registry.save(first)
    second.nodes[1].status = NodeStatus.DELETING
    with pytest.raises(ClusterConflictError):
        registry.save(second)
    assert second.version == 1
    assert registry.get("demo").nodes[1].status == NodeStatus.RUNNING


def test_save_after_delete_conflicts(registry, cluster):
    registry.save(cluster)
    registry.delete("demo")
    with pytest.raises(ClusterConflictError):
        registry.save(cluster)


def test_save_logs_does_not_bump_the_version(registry, cluster):
    registry.save(cluster)
    registry.save_logs("demo", "==> install cluster demo\n")

    loaded = registry.get("demo")
    assert loaded.logs == "==> install cluster demo\n"
    assert loaded.version == 1
    registry.save(cluster)


def test_missing_cluster(registry):
    with pytest.raises(ClusterNotFound):
        registry.get("ghost")
    with pytest.raises(ClusterNotFound):
        registry.delete("ghost")
    assert registry.list() == []


def test_invalid_names_are_rejected(registry):
    with pytest.raises(ValidationError):
        registry.get("../etc/passwd")
