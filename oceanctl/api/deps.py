"""Shared request dependencies."""
from oceanctl.config import get_config
from oceanctl.modules.lifecycle import ClusterLifecycle
from oceanctl.modules.runtime import ClusterRuntime
from oceanctl.registry import ClusterRegistry, get_registry


def get_cluster_registry() -> ClusterRegistry:
    return get_registry(get_config())


def get_lifecycle() -> ClusterLifecycle:
    settings = get_config()
    return ClusterLifecycle(settings, get_registry(settings))


def get_runtime() -> ClusterRuntime:
    return ClusterRuntime()
