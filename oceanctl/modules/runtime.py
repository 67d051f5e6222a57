"""Reads the live cluster from the Kubernetes API."""
import logging
from typing import Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .errors import ClusterRuntimeError
from .models import Cluster, Node, NodeRole, NodeStatus

logger = logging.getLogger("oceanctl.runtime")

CONTROL_PLANE_LABEL = "node-role.kubernetes.io/control-plane"
CLUSTER_LABEL = "cluster"


def node_status(conditions) -> NodeStatus:
    """Ready nodes are running; anything else is still coming up."""
    for condition in conditions or []:
        if condition.type == "Ready":
            return NodeStatus.RUNNING if condition.status == "True" else NodeStatus.CREATING
    return NodeStatus.CREATING


class ClusterRuntime:
    """Live view of the cluster this process is managing."""

    def __init__(self, kubeconfig: Optional[str] = None, api: Optional[client.CoreV1Api] = None):
        self.kubeconfig = kubeconfig
        self._api = api

    @property
    def api(self) -> client.CoreV1Api:
        if self._api is None:
            try:
                config.load_incluster_config()
            except ConfigException:
                config.load_kube_config(config_file=self.kubeconfig)
            self._api = client.CoreV1Api()
        return self._api

    def current_cluster(self, cluster_name: str = "") -> Cluster:
        """Build a Cluster holding the nodes the API server reports.

        The cluster name comes from the ``cluster`` node label when
        ``cluster_name`` is not given.
        """
        try:
            items = self.api.list_node().items
        except ApiException as e:
            raise ClusterRuntimeError(f"failed to list nodes: {e.reason}") from e

        nodes = []
        for item in items:
            labels = item.metadata.labels or {}
            if not cluster_name:
                cluster_name = labels.get(CLUSTER_LABEL, "")
            internal_ip = ""
            for address in (item.status.addresses or []):
                if address.type == "InternalIP":
                    internal_ip = address.address
                    break
            nodes.append(Node(
                name=item.metadata.name,
                internal_ip=internal_ip,
                role=NodeRole.MASTER if CONTROL_PLANE_LABEL in labels else NodeRole.WORKER,
                status=node_status(item.status.conditions),
                kernel=getattr(item.status.node_info, "kernel_version", "") or "",
                container=getattr(item.status.node_info, "container_runtime_version", "") or "",
            ))
        if not cluster_name:
            raise ClusterRuntimeError("cannot tell which cluster the live nodes belong to")
        logger.debug(f"Live cluster {cluster_name} reports {len(nodes)} node(s)")
        return Cluster(name=cluster_name, nodes=nodes)
