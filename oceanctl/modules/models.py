"""Data models for the cluster aggregate.

The Cluster is the aggregate root: it owns its NodeGroups and Nodes and is
always read and written as a whole. NodeGroups are identified by the
canonical encoding of their hardware shape, see `encode_node_group`.
"""

import json
import uuid
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote


class ClusterType(str, Enum):
    """Provider backing a cluster."""
    LOCAL = 'local'
    ALICLOUD = 'alicloud'
    AWS = 'aws'
    GOOGLE = 'google'

    @property
    def is_cloud(self) -> bool:
        return self is not ClusterType.LOCAL


class ClusterStatus(str, Enum):
    UNSPECIFIED = 'unspecified'
    STARTING = 'starting'
    RUNNING = 'running'
    STOPPING = 'stopping'
    STOPPED = 'stopped'
    DELETED = 'deleted'


class NodeRole(str, Enum):
    """Node roles in the cluster."""
    MASTER = 'master'
    WORKER = 'worker'
    EDGE = 'edge'


class NodeStatus(str, Enum):
    """Node lifecycle: unspecified -> creating -> running -> deleting -> (removed)."""
    UNSPECIFIED = 'unspecified'
    CREATING = 'creating'
    RUNNING = 'running'
    DELETING = 'deleting'

    @property
    def actionable(self) -> bool:
        return self in (NodeStatus.CREATING, NodeStatus.DELETING)


class NodeGroupType(str, Enum):
    NORMAL = 'normal'
    HIGH_COMPUTATION = 'high_computation'
    GPU_ACCELERATED = 'gpu_accelerated'
    HIGH_MEMORY = 'high_memory'
    LARGE_HARD_DISK = 'large_hard_disk'


class NodeArch(str, Enum):
    UNSPECIFIED = 'unspecified'
    AMD64 = 'amd64'
    ARM64 = 'arm64'


class NodeGPUSpec(str, Enum):
    UNSPECIFIED = 'unspecified'
    NVIDIA_A10 = 'nvidia-a10'
    NVIDIA_V100 = 'nvidia-v100'
    NVIDIA_T4 = 'nvidia-t4'
    NVIDIA_P100 = 'nvidia-p100'
    NVIDIA_P4 = 'nvidia-p4'


# Capacity floor for master candidates during bare-metal discovery
MASTER_MIN_CPU = 4
MASTER_MIN_MEMORY = 8
MAX_MASTERS = 3
MAX_WORKERS = 3

LABEL_KEYS = ('cluster', 'cluster_type', 'region', 'nodegroup', 'nodegroup_type')


def new_id() -> str:
    return str(uuid.uuid4())


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _load(cls, data: Dict[str, Any], enums: Dict[str, type]):
    """Build a dataclass from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    for name, enum_cls in enums.items():
        if kwargs.get(name) is not None:
            kwargs[name] = enum_cls(kwargs[name])
    return cls(**kwargs)


@dataclass
class NodeGroup:
    """A class of homogeneous machines sharing one hardware shape."""
    id: str = field(default_factory=new_id)
    name: str = ''
    type: NodeGroupType = NodeGroupType.NORMAL
    os: str = ''
    arch: NodeArch = NodeArch.AMD64
    cpu: int = 0
    memory: int = 0
    gpu: int = 0
    gpu_spec: NodeGPUSpec = NodeGPUSpec.UNSPECIFIED
    system_disk: int = 0
    data_disk: int = 0
    internet_max_bandwidth_out: int = 0
    min_size: int = 0
    max_size: int = 0
    target_size: int = 0
    instance_type: str = ''
    image: str = ''
    node_price: float = 0.0
    pod_price: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enum_value(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NodeGroup':
        return _load(cls, data, {
            'type': NodeGroupType,
            'arch': NodeArch,
            'gpu_spec': NodeGPUSpec,
        })


@dataclass
class Node:
    """A machine that belongs to exactly one Cluster and one NodeGroup."""
    name: str
    id: str = field(default_factory=new_id)
    cluster_id: str = ''
    node_group_id: str = ''
    internal_ip: str = ''
    external_ip: str = ''
    user: str = 'root'
    ssh_port: int = 22
    role: NodeRole = NodeRole.WORKER
    status: NodeStatus = NodeStatus.UNSPECIFIED
    instance_id: str = ''
    subnet_id: str = ''
    zone: str = ''
    system_disk: int = 0
    data_disk: int = 0
    labels: str = ''
    kernel: str = ''
    container: str = ''

    @property
    def address(self) -> str:
        """Address used to open a session to this node."""
        return self.external_ip or self.internal_ip

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enum_value(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Node':
        return _load(cls, data, {'role': NodeRole, 'status': NodeStatus})


@dataclass
class BostionHost:
    """Cloud-only jump host reaching the private cluster network."""
    instance_id: str = ''
    hostname: str = ''
    external_ip: str = ''
    internal_ip: str = ''
    user: str = 'root'
    ssh_port: int = 22
    arch: NodeArch = NodeArch.AMD64
    cpu: int = 2
    memory: int = 4

    def to_dict(self) -> Dict[str, Any]:
        return {k: _enum_value(v) for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BostionHost':
        return _load(cls, data, {'arch': NodeArch})


@dataclass
class Cluster:
    """Aggregate root for one logical deployment."""
    name: str
    type: ClusterType = ClusterType.LOCAL
    id: str = field(default_factory=new_id)
    region: str = ''
    status: ClusterStatus = ClusterStatus.UNSPECIFIED
    vpc_id: str = ''
    security_group_ids: List[str] = field(default_factory=list)
    load_balancer_id: str = ''
    load_balancer_address: str = ''
    access_id: str = ''
    access_key: str = ''
    public_key: str = ''
    private_key: str = ''
    kubernetes_version: str = 'v1.30.2'
    image_repo: str = ''
    bostion_host: Optional[BostionHost] = None
    logs: str = ''
    nodes: List[Node] = field(default_factory=list)
    node_groups: List[NodeGroup] = field(default_factory=list)
    version: int = 0

    def get_node_group(self, group_id: str) -> Optional[NodeGroup]:
        for group in self.node_groups:
            if group.id == group_id:
                return group
        return None

    def get_node(self, name: str) -> Optional[Node]:
        for node in self.nodes:
            if node.name == name:
                return node
        return None

    def nodes_in_group(self, group_id: str) -> List[Node]:
        return [n for n in self.nodes if n.node_group_id == group_id]

    def masters(self) -> List[Node]:
        return [n for n in self.nodes if n.role == NodeRole.MASTER]

    def first_master(self) -> Optional[Node]:
        masters = self.masters()
        return masters[0] if masters else None

    def nodes_with_status(self, status: NodeStatus) -> List[Node]:
        return [n for n in self.nodes if n.status == status]

    def append_log(self, text: str) -> None:
        self.logs += text

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: _enum_value(getattr(self, f.name)) for f in fields(self)}
        data['bostion_host'] = self.bostion_host.to_dict() if self.bostion_host else None
        data['nodes'] = [n.to_dict() for n in self.nodes]
        data['node_groups'] = [g.to_dict() for g in self.node_groups]
        data['security_group_ids'] = list(self.security_group_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Cluster':
        data = dict(data)
        bostion = data.pop('bostion_host', None)
        nodes = data.pop('nodes', None) or []
        groups = data.pop('node_groups', None) or []
        cluster = _load(cls, data, {'type': ClusterType, 'status': ClusterStatus})
        cluster.bostion_host = BostionHost.from_dict(bostion) if bostion else None
        cluster.nodes = [Node.from_dict(n) for n in nodes]
        cluster.node_groups = [NodeGroup.from_dict(g) for g in groups]
        return cluster


def _shape(group: NodeGroup) -> List[Any]:
    return [
        group.cpu,
        group.memory,
        group.gpu,
        _enum_value(group.gpu_spec),
        group.os,
        _enum_value(group.arch),
    ]


def encode_node_group(group: NodeGroup) -> str:
    """Return the canonical identity key of a group's hardware shape.

    Each field is percent-encoded before joining, so a separator inside the
    OS string cannot make two different shapes produce the same key.
    """
    return '|'.join(quote(str(v), safe='') for v in _shape(group))


def decode_node_group(key: str) -> NodeGroup:
    """Rebuild a NodeGroup carrying only the shape encoded in ``key``."""
    parts = [unquote(p) for p in key.split('|')]
    if len(parts) != 6:
        raise ValueError(f"Invalid node group key: {key!r}")
    cpu, memory, gpu, gpu_spec, os_name, arch = parts
    group = NodeGroup(
        os=os_name,
        arch=NodeArch(arch),
        cpu=int(cpu),
        memory=int(memory),
        gpu=int(gpu),
        gpu_spec=NodeGPUSpec(gpu_spec),
    )
    group.name = node_group_name(group)
    return group


def node_group_name(group: NodeGroup) -> str:
    name = f"{_enum_value(group.arch)}-cpu-{group.cpu}-mem-{group.memory}"
    if group.gpu:
        name += f"-gpu-{group.gpu}-{_enum_value(group.gpu_spec)}"
    return name


def generate_node_labels(cluster: Cluster, group: NodeGroup) -> str:
    """Serialize the labels a node of ``group`` receives."""
    labels = {
        'cluster': cluster.name,
        'cluster_type': _enum_value(cluster.type),
        'region': cluster.region,
        'nodegroup': group.name,
        'nodegroup_type': _enum_value(group.type),
    }
    return json.dumps(labels, sort_keys=True)


def parse_node_labels(labels: str) -> Dict[str, str]:
    if not labels:
        return {}
    data = json.loads(labels)
    if not isinstance(data, dict):
        raise ValueError("Node labels must be a JSON object")
    return {str(k): str(v) for k, v in data.items()}


def assign_roles(cluster: Cluster) -> None:
    """Classify discovered hosts into masters, workers and surplus.

    Hosts are visited from the largest to the smallest shape. Hosts meeting
    the master capacity floor become masters until the master cap is
    reached, the rest become workers until the worker cap is reached, and
    anything left is marked unspecified so it is never scheduled.
    """
    def capacity(node: Node):
        group = cluster.get_node_group(node.node_group_id)
        if group is None:
            raise ValueError(f"Node {node.name} has no node group")
        return group

    ordered = sorted(
        cluster.nodes,
        key=lambda n: (capacity(n).cpu, capacity(n).memory),
        reverse=True,
    )
    masters = workers = 0
    for node in ordered:
        group = capacity(node)
        if group.cpu >= MASTER_MIN_CPU and group.memory >= MASTER_MIN_MEMORY and masters < MAX_MASTERS:
            node.role = NodeRole.MASTER
            node.status = NodeStatus.CREATING
            masters += 1
            continue
        if workers >= MAX_WORKERS:
            node.status = NodeStatus.UNSPECIFIED
            continue
        node.role = NodeRole.WORKER
        node.status = NodeStatus.CREATING
        workers += 1
