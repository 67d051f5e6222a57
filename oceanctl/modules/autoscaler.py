"""
Node-group sizing adapter for the cluster autoscaler.

Every method maps to one call of the external gRPC cloud-provider protocol
the autoscaler speaks. Scaling calls only edit the stored aggregate: new
nodes are appended as ``creating`` and removed nodes are dropped, and the
reconciliation loop (``ClusterLifecycle.handler_nodes``) does the actual
provisioning later.
"""
import hashlib
import logging
import secrets
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import NotImplementedByProvider, ValidationError
from .models import (
    Cluster,
    Node,
    NodeGPUSpec,
    NodeGroup,
    NodeRole,
    NodeStatus,
    generate_node_labels,
)
from .providers.catalog import ProviderTables

logger = logging.getLogger("oceanctl.autoscaler")

GPU_LABEL = "ocean.io/gpu-spec"


def _generated_name(cluster: Cluster, request_id: Optional[str], index: int) -> str:
    if request_id:
        digest = hashlib.sha1(f"{request_id}/{index}".encode()).hexdigest()[:10]
        return f"{cluster.name}-{digest}"
    return f"{cluster.name}-{secrets.token_hex(5)}"


class AutoscalerAdapter:
    """Autoscaler protocol over the cluster registry."""

    def __init__(self, repository, runtime, cluster_name: str, tables: Optional[ProviderTables] = None):
        self.repository = repository
        self.runtime = runtime
        self.cluster_name = cluster_name
        self.tables = tables or ProviderTables()
        self._lock = threading.Lock()

    def _cluster(self) -> Cluster:
        return self.repository.get(self.cluster_name)

    @staticmethod
    def _group(cluster: Cluster, group_id: str) -> NodeGroup:
        group = cluster.get_node_group(group_id)
        if group is None:
            raise ValidationError(f"node group {group_id} not found in cluster {cluster.name}")
        return group

    def current_cluster(self) -> Cluster:
        """Latest reconciled state of the live cluster."""
        return self.runtime.current_cluster(self.cluster_name)

    def node_groups(self) -> List[NodeGroup]:
        return list(self._cluster().node_groups)

    def node_group_for_node(self, node_name: str) -> Optional[NodeGroup]:
        """Group of ``node_name``; None means the autoscaler should ignore it."""
        cluster = self._cluster()
        node = cluster.get_node(node_name)
        if node is None:
            return None
        return cluster.get_node_group(node.node_group_id)

    def _price(self, price_per_hour: float, start: datetime, end: datetime) -> float:
        hours = max((end - start).total_seconds(), 0) / 3600
        return round(price_per_hour * hours, 6)

    def pricing_node_price(self, node_name: str, start: datetime, end: datetime) -> float:
        group = self.node_group_for_node(node_name)
        if group is None or not group.node_price:
            raise NotImplementedByProvider(f"no node price known for {node_name}")
        return self._price(group.node_price, start, end)

    def pricing_pod_price(self, node_name: str, start: datetime, end: datetime) -> float:
        group = self.node_group_for_node(node_name)
        if group is None or not group.pod_price:
            raise NotImplementedByProvider(f"no pod price known for pods on {node_name}")
        return self._price(group.pod_price, start, end)

    def gpu_label(self) -> str:
        return GPU_LABEL

    def get_available_gpu_types(self) -> Dict[str, str]:
        return {
            spec.value: self.tables.gpu_model(spec)
            for spec in NodeGPUSpec if spec != NodeGPUSpec.UNSPECIFIED
        }

    def cleanup(self) -> None:
        """Nothing is held open between loops."""
        pass

    def refresh(self) -> Cluster:
        """Promote creating nodes the live cluster reports Ready, then save.

        Stored statuses never move backwards here. A running node that is
        NotReady stays running and is only logged, and deleting nodes are
        left to the reconciliation loop.
        """
        live = self.current_cluster()
        with self._lock:
            cluster = self.repository.get(live.name)
            promoted = 0
            for node in cluster.nodes:
                live_node = live.get_node(node.name)
                if live_node is None:
                    continue
                if node.status == NodeStatus.CREATING and live_node.status == NodeStatus.RUNNING:
                    node.status = NodeStatus.RUNNING
                    promoted += 1
                elif node.status == NodeStatus.RUNNING and live_node.status != NodeStatus.RUNNING:
                    logger.warning(f"Node {node.name} of cluster {cluster.name} is not ready")
            self.repository.save(cluster)
        logger.info(f"Refreshed cluster {cluster.name}: {promoted} node(s) became ready")
        return cluster

    def node_group_target_size(self, group_id: str) -> int:
        return self._group(self._cluster(), group_id).target_size

    def node_group_increase_size(self, group_id: str, delta: int, request_id: Optional[str] = None) -> List[Node]:
        """Append ``delta`` creating workers to the group and save.

        With a ``request_id`` the generated names are derived from it, so a
        retried request finds its nodes already present and adds nothing.
        """
        if delta <= 0:
            raise ValidationError(f"size increase must be positive, got {delta}")
        with self._lock:
            cluster = self._cluster()
            group = self._group(cluster, group_id)
            names = [_generated_name(cluster, request_id, i) for i in range(delta)]
            missing = [name for name in names if cluster.get_node(name) is None]
            if not missing:
                logger.info(f"Increase request {request_id} for group {group.name} already applied")
                return [cluster.get_node(name) for name in names]

            current = len(cluster.nodes_in_group(group.id))
            if group.max_size and current + len(missing) > group.max_size:
                raise ValidationError(
                    f"node group {group.name} would grow to {current + len(missing)} nodes, max is {group.max_size}"
                )
            labels = generate_node_labels(cluster, group)
            for name in missing:
                cluster.nodes.append(Node(
                    name=name,
                    cluster_id=cluster.id,
                    node_group_id=group.id,
                    role=NodeRole.WORKER,
                    status=NodeStatus.CREATING,
                    system_disk=group.system_disk,
                    data_disk=group.data_disk,
                    labels=labels,
                ))
            group.target_size = max(group.target_size, current) + len(missing)
            self.repository.save(cluster)
        logger.info(f"Node group {group.name} increased by {len(missing)}")
        return [cluster.get_node(name) for name in names]

    def node_group_delete_nodes(self, group_id: str, node_names: List[str]) -> None:
        """Remove the named nodes from the group and shrink its target."""
        with self._lock:
            cluster = self._cluster()
            group = self._group(cluster, group_id)
            members = {n.name: n for n in cluster.nodes_in_group(group.id)}
            strangers = [name for name in node_names if name not in members]
            if strangers:
                raise ValidationError(
                    f"node(s) {', '.join(strangers)} do not belong to node group {group.name}"
                )
            removed = {members[name].id for name in node_names}
            cluster.nodes = [n for n in cluster.nodes if n.id not in removed]
            group.target_size = max(group.target_size - len(removed), 0)
            self.repository.save(cluster)
        logger.info(f"Deleted {len(removed)} node(s) from group {group.name}")

    def node_group_decrease_target_size(self, group_id: str, delta: int) -> int:
        """Lower the target without touching existing nodes."""
        if delta >= 0:
            raise ValidationError(f"size decrease must be negative, got {delta}")
        with self._lock:
            cluster = self._cluster()
            group = self._group(cluster, group_id)
            existing = len(cluster.nodes_in_group(group.id))
            target = group.target_size + delta
            if target < existing:
                raise ValidationError(
                    f"node group {group.name} target {target} would be below its {existing} existing node(s)"
                )
            group.target_size = target
            self.repository.save(cluster)
        return target

    def node_group_nodes(self, group_id: str) -> List[Node]:
        cluster = self._cluster()
        return cluster.nodes_in_group(self._group(cluster, group_id).id)

    def node_group_template_node_info(self, group_id: str) -> Node:
        """Preview of a node the group would add; never saved."""
        cluster = self._cluster()
        group = self._group(cluster, group_id)
        return Node(
            name=_generated_name(cluster, None, 0),
            cluster_id=cluster.id,
            node_group_id=group.id,
            role=NodeRole.WORKER,
            status=NodeStatus.CREATING,
            system_disk=group.system_disk,
            data_disk=group.data_disk,
            labels=generate_node_labels(cluster, group),
        )

    def node_group_get_options(self, group_id: str, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        raise NotImplementedByProvider("per node group autoscaling options are not supported")
