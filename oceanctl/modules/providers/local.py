"""Bare-metal provider: hosts already exist, only discovery is needed."""
import logging
import threading
from typing import Dict, List, Optional

from ..errors import ValidationError
from ..models import Cluster, Node, NodeGroup, encode_node_group, node_group_name
from ..playbook import PlaybookKind, PlaybookRunner, parse_probe_output, servers_for_nodes
from .base import Provider, Sink

logger = logging.getLogger("oceanctl.providers.local")

PROBE_FORKS = 10


def _int(value: str) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


class LocalProvider(Provider):
    """Hosts declared by address, described by the system probe."""

    name = "local"

    def __init__(self, settings, tables=None, playbooks: Optional[PlaybookRunner] = None):
        super().__init__(settings, tables)
        self.playbooks = playbooks or PlaybookRunner(settings)

    def validate(self, cluster: Cluster) -> None:
        if not cluster.nodes:
            raise ValidationError(f"cluster {cluster.name} declares no hosts")
        for node in cluster.nodes:
            if not node.address:
                raise ValidationError(f"host {node.name} has no address")

    def start(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        logger.debug(f"Nothing to provision for local cluster {cluster.name}")

    def stop(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        logger.debug(f"Nothing to release for local cluster {cluster.name}")

    def get(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        """Probe every declared host and regroup the cluster by hardware shape.

        Hosts that fail the probe are logged and left out. Groups end up
        sized to their member count.
        """
        self.validate(cluster)
        result = self.playbooks.run(
            cluster,
            PlaybookKind.SYSTEM_PROBE,
            servers_for_nodes(cluster.nodes),
            stream=stream,
            cancel=cancel,
            fatal=False,
            forks=PROBE_FORKS,
        )
        facts = parse_probe_output(result)
        for host in result.failed_hosts:
            logger.error(f"Host {host} failed system discovery and is skipped")

        groups: Dict[str, NodeGroup] = {encode_node_group(g): g for g in cluster.node_groups}
        nodes: List[Node] = []
        for declared in cluster.nodes:
            info = facts.get(declared.name)
            if info is None:
                if declared.name not in result.failed_hosts:
                    logger.error(f"Host {declared.name} returned no system information")
                continue
            nodes.append(self._discovered_node(cluster, declared, info, groups))

        for group in groups.values():
            size = len([n for n in nodes if n.node_group_id == group.id])
            group.min_size = group.max_size = group.target_size = size
        cluster.node_groups = [g for g in groups.values() if g.target_size > 0]
        cluster.nodes = nodes
        logger.info(
            f"Discovered {len(nodes)} host(s) in {len(cluster.node_groups)} node group(s) "
            f"for cluster {cluster.name}"
        )

    def _discovered_node(self, cluster: Cluster, declared: Node, info: Dict[str, str],
                         groups: Dict[str, NodeGroup]) -> Node:
        shape = NodeGroup(
            os=info.get('os', ''),
            arch=self.tables.to_arch(info.get('arch', '')),
            cpu=_int(info.get('cpu')),
            memory=_int(info.get('mem')),
            gpu=_int(info.get('gpu')),
            gpu_spec=self.tables.to_gpu_spec(info.get('gpu_info', '')),
        )
        key = encode_node_group(shape)
        group = groups.get(key)
        if group is None:
            shape.name = node_group_name(shape)
            shape.system_disk = _int(info.get('disk'))
            groups[key] = group = shape

        ip = info.get('ip') or declared.address
        return Node(
            name=declared.address or ip,
            id=declared.id,
            cluster_id=cluster.id,
            node_group_id=group.id,
            internal_ip=ip,
            external_ip=declared.external_ip,
            user='root',
            ssh_port=declared.ssh_port,
            role=declared.role,
            status=declared.status,
            instance_id=info.get('id', ''),
            system_disk=_int(info.get('disk')),
            labels=declared.labels,
            kernel=info.get('kernel', ''),
        )
