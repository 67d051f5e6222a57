"""Instance-type resolution and provider translation tables."""

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..errors import InstanceTypeNotFound
from ..models import NodeArch, NodeGPUSpec, NodeGroupType


@dataclass(frozen=True)
class InstanceTypeSpec:
    """One provider catalog entry, normalised."""
    name: str
    cpu: int
    memory: float
    gpu: int = 0
    gpu_spec: str = ''
    arch: str = NodeArch.AMD64.value


def sort_instance_types(candidates: Iterable[InstanceTypeSpec]) -> List[InstanceTypeSpec]:
    """Order by CPU, then memory, then GPU count, all ascending."""
    return sorted(candidates, key=lambda c: (c.cpu, c.memory, c.gpu))


def resolve_instance_type(
    candidates: Iterable[InstanceTypeSpec],
    cpu: int,
    memory: float,
    gpu: int = 0,
) -> InstanceTypeSpec:
    """Return the smallest entry satisfying the (cpu, memory, gpu) floor.

    Entries reporting zero memory are ignored. A zero GPU request accepts
    any entry.

    Raises:
        InstanceTypeNotFound: If no entry satisfies the floor
    """
    for candidate in sort_instance_types(candidates):
        if candidate.memory == 0:
            continue
        if candidate.cpu >= cpu and candidate.memory >= memory and (gpu == 0 or candidate.gpu >= gpu):
            return candidate
    raise InstanceTypeNotFound(
        f"no available instance type found for cpu>={cpu}, memory>={memory}GiB, gpu>={gpu}"
    )


def subnet_index(node_index: int, node_count: int, subnet_count: int) -> int:
    """Pick the subnet for the ``node_index``-th node.

    With no more nodes than subnets nodes are spread round-robin; otherwise
    consecutive runs of ``node_count // subnet_count`` nodes share a subnet.
    """
    if subnet_count <= 0:
        raise ValueError("at least one subnet is required")
    if node_count <= subnet_count:
        return node_index % subnet_count
    interval = node_count // subnet_count
    return (node_index // interval) % subnet_count


class ProviderTables:
    """Translation tables between provider strings and model enums.

    Each provisioner owns its own instance; nothing here is shared state.
    """

    def __init__(
        self,
        families: Optional[Dict[NodeGroupType, str]] = None,
        arch: Optional[Dict[str, NodeArch]] = None,
        gpu_specs: Optional[Dict[NodeGPUSpec, str]] = None,
    ):
        self.families = dict(families or {})
        self.arch = dict(arch or {
            'x86_64': NodeArch.AMD64,
            'amd64': NodeArch.AMD64,
            'aarch64': NodeArch.ARM64,
            'arm64': NodeArch.ARM64,
        })
        self.gpu_specs = dict(gpu_specs or {
            NodeGPUSpec.NVIDIA_A10: 'NVIDIA A10',
            NodeGPUSpec.NVIDIA_V100: 'NVIDIA V100',
            NodeGPUSpec.NVIDIA_T4: 'NVIDIA T4',
            NodeGPUSpec.NVIDIA_P100: 'NVIDIA P100',
            NodeGPUSpec.NVIDIA_P4: 'NVIDIA P4',
        })

    def family(self, group_type: NodeGroupType) -> str:
        try:
            return self.families[group_type]
        except KeyError:
            return self.families[NodeGroupType.NORMAL]

    def to_arch(self, value: str) -> NodeArch:
        return self.arch.get((value or '').strip().lower(), NodeArch.UNSPECIFIED)

    def to_gpu_spec(self, value: str) -> NodeGPUSpec:
        """Match a GPU model string such as ``Tesla V100-SXM2-16GB``."""
        text = (value or '').strip().lower()
        if not text:
            return NodeGPUSpec.UNSPECIFIED
        for spec in NodeGPUSpec:
            if spec.value == text:
                return spec
        for spec, model in self.gpu_specs.items():
            token = model.split()[-1].lower()
            if re.search(rf'(^|[^a-z0-9]){re.escape(token)}($|[^a-z0-9])', text):
                return spec
        return NodeGPUSpec.UNSPECIFIED

    def gpu_model(self, spec: NodeGPUSpec) -> str:
        return self.gpu_specs.get(spec, '')


ALICLOUD_FAMILIES = {
    NodeGroupType.NORMAL: 'ecs.g6',
    NodeGroupType.HIGH_COMPUTATION: 'ecs.c6',
    NodeGroupType.GPU_ACCELERATED: 'ecs.gn6i',
    NodeGroupType.HIGH_MEMORY: 'ecs.r6',
    NodeGroupType.LARGE_HARD_DISK: 'ecs.g6',
}

AWS_FAMILIES = {
    NodeGroupType.NORMAL: 'm5',
    NodeGroupType.HIGH_COMPUTATION: 'c5',
    NodeGroupType.GPU_ACCELERATED: 'g4dn',
    NodeGroupType.HIGH_MEMORY: 'r5',
    NodeGroupType.LARGE_HARD_DISK: 'd3',
}
