"""AliCloud provisioning with pulumi_alicloud.

The inline program is split into function-based modules, each returning a
dict of the resources it created, so every piece can be built and checked
on its own.
"""
import logging
from typing import Any, Callable, Dict, List

import pulumi
import pulumi_alicloud as alicloud

from ..errors import ProviderError
from ..models import Cluster, Node, NodeArch, NodeGroup, NodeRole, NodeStatus, parse_node_labels
from .base import CloudProvider
from .catalog import ALICLOUD_FAMILIES, InstanceTypeSpec, ProviderTables, resolve_instance_type, subnet_index

logger = logging.getLogger("oceanctl.providers.alicloud")

DEFAULT_VPC_CIDR = "192.168.0.0/16"
IMAGE_NAME_REGEX = "^ubuntu_22_04"
MAX_ZONES = 3
LISTENER_PORTS = (22, 80, 443, 6443)


def provisioned_nodes(cluster: Cluster) -> List[Node]:
    """Nodes that should own a machine.

    Deleting nodes keep theirs until the node has been reset and dropped
    from the aggregate.
    """
    return [
        n for n in cluster.nodes
        if n.status in (NodeStatus.CREATING, NodeStatus.RUNNING, NodeStatus.DELETING)
    ]


def bostion_node(nodes: List[Node]) -> Node:
    for node in nodes:
        if node.role == NodeRole.MASTER:
            return node
    raise ProviderError("no master node found to host the bostion address")


def create_network_resources(cluster: Cluster) -> Dict[str, Any]:
    """VPC (new or existing) and one vswitch per zone."""
    zones = [z.id for z in alicloud.get_zones(available_resource_creation="VSwitch").zones][:MAX_ZONES]
    if not zones:
        raise ProviderError(f"no zone in region {cluster.region} can host a vswitch")

    if cluster.vpc_id:
        vpc = alicloud.vpc.Network.get(f"{cluster.name}-vpc", cluster.vpc_id)
    else:
        vpc = alicloud.vpc.Network(
            f"{cluster.name}-vpc",
            vpc_name=f"{cluster.name}-vpc",
            cidr_block=DEFAULT_VPC_CIDR,
        )

    vswitches = []
    for i, zone in enumerate(zones):
        vswitches.append(alicloud.vpc.Switch(
            f"{cluster.name}-vswitch-{zone}",
            vswitch_name=f"{cluster.name}-vswitch-{zone}",
            vpc_id=vpc.id,
            cidr_block=f"192.168.{i}.0/24",
            zone_id=zone,
        ))
    return {"vpc": vpc, "zones": zones, "vswitches": vswitches}


def create_security_resources(cluster: Cluster, vpc) -> Dict[str, Any]:
    """Security group allowing SSH and the key pair for node access."""
    if cluster.security_group_ids:
        security_group_ids = list(cluster.security_group_ids)
    else:
        security_group = alicloud.ecs.SecurityGroup(
            f"{cluster.name}-sg",
            security_group_name=f"{cluster.name}-sg",
            vpc_id=vpc.id,
        )
        alicloud.ecs.SecurityGroupRule(
            f"{cluster.name}-sg-ssh",
            type="ingress",
            ip_protocol="tcp",
            nic_type="intranet",
            policy="accept",
            port_range="22/22",
            priority=1,
            security_group_id=security_group.id,
            cidr_ip="0.0.0.0/0",
        )
        security_group_ids = [security_group.id]

    key_pair = alicloud.ecs.EcsKeyPair(
        f"{cluster.name}-key",
        key_pair_name=f"{cluster.name}-key",
        public_key=cluster.public_key,
    )
    return {"security_group_ids": security_group_ids, "key_pair": key_pair}


def instance_catalog(zone: str, family: str) -> List[InstanceTypeSpec]:
    result = alicloud.ecs.get_instance_types(
        availability_zone=zone,
        instance_type_family=family,
        network_type="Vpc",
    )
    catalog = []
    for item in result.instance_types:
        gpu = getattr(item, "gpu", None)
        amount = getattr(gpu, "amount", "") if gpu else ""
        catalog.append(InstanceTypeSpec(
            name=item.id,
            cpu=int(item.cpu_core_count or 0),
            memory=float(item.memory_size or 0),
            gpu=int(amount) if str(amount).isdigit() else 0,
            gpu_spec=getattr(gpu, "category", "") if gpu else "",
        ))
    return catalog


def resolve_group(group: NodeGroup, zone: str, tables: ProviderTables) -> Dict[str, str]:
    """Instance type and image for a node group."""
    if group.instance_type:
        instance_type = group.instance_type
    else:
        instance_type = resolve_instance_type(
            instance_catalog(zone, tables.family(group.type)),
            group.cpu,
            group.memory,
            group.gpu,
        ).name
    if group.image:
        image = group.image
    else:
        architecture = "arm64" if group.arch == NodeArch.ARM64 else "x86_64"
        images = alicloud.ecs.get_images(
            name_regex=IMAGE_NAME_REGEX,
            owners="system",
            architecture=architecture,
            most_recent=True,
        ).images
        if not images:
            raise ProviderError(f"no ubuntu 22.04 image available for {architecture}")
        image = images[0].id
    return {"instance_type": instance_type, "image": image}


def create_instances(
    cluster: Cluster,
    nodes: List[Node],
    network: Dict[str, Any],
    security: Dict[str, Any],
    tables: ProviderTables,
) -> Dict[str, Any]:
    """One ECS instance per node; nodes with an instance id are read, not created."""
    group_specs: Dict[str, Dict[str, str]] = {}
    instances = {}
    zones = network["zones"]
    vswitches = network["vswitches"]
    for index, node in enumerate(nodes):
        group = cluster.get_node_group(node.node_group_id)
        if group is None:
            raise ProviderError(f"node {node.name} has no node group")
        if group.id not in group_specs:
            group_specs[group.id] = resolve_group(group, zones[0], tables)
            pulumi.export(f"cloud-nodegroup-instance-type-{group.name}", group_specs[group.id]["instance_type"])
            pulumi.export(f"cloud-nodegroup-image-{group.name}", group_specs[group.id]["image"])

        if node.instance_id:
            instances[node.name] = alicloud.ecs.Instance.get(f"{cluster.name}-{node.name}", node.instance_id)
            continue

        slot = subnet_index(index, len(nodes), len(vswitches))
        vswitch_id = node.subnet_id or vswitches[slot].id
        tags = parse_node_labels(node.labels)
        tags["node"] = node.name
        data_disks = None
        if node.data_disk or group.data_disk:
            data_disks = [alicloud.ecs.InstanceDataDiskArgs(
                category="cloud_essd",
                size=node.data_disk or group.data_disk,
            )]
        instances[node.name] = alicloud.ecs.Instance(
            f"{cluster.name}-{node.name}",
            instance_name=node.name,
            host_name=node.name,
            instance_type=group_specs[group.id]["instance_type"],
            image_id=group_specs[group.id]["image"],
            vswitch_id=vswitch_id,
            security_groups=security["security_group_ids"],
            key_name=security["key_pair"].key_pair_name,
            system_disk_category="cloud_essd",
            system_disk_size=node.system_disk or group.system_disk or 40,
            data_disks=data_disks,
            internet_max_bandwidth_out=0,
            tags=tags,
        )
        pulumi.export(f"node-{node.name}-zone", zones[slot])
        pulumi.export(f"node-{node.name}-subnet-id", vswitch_id)
    return instances


def create_bostion_address(cluster: Cluster, instance) -> Any:
    """Elastic IP bound to the bostion host."""
    eip = alicloud.ecs.EipAddress(
        f"{cluster.name}-bostion-eip",
        address_name=f"{cluster.name}-bostion-eip",
        bandwidth="100",
        internet_charge_type="PayByTraffic",
    )
    alicloud.ecs.EipAssociation(
        f"{cluster.name}-bostion-eip-association",
        allocation_id=eip.id,
        instance_id=instance.id,
    )
    return eip


def create_load_balancer(cluster: Cluster, masters: List[Any]) -> Any:
    """Internet SLB forwarding SSH, 80, 443 and 6443 to the masters."""
    lb = alicloud.slb.ApplicationLoadBalancer(
        f"{cluster.name}-slb",
        load_balancer_name=f"{cluster.name}-slb",
        address_type="internet",
        load_balancer_spec="slb.s1.small",
        payment_type="PayAsYouGo",
    )
    for port in LISTENER_PORTS:
        alicloud.slb.Listener(
            f"{cluster.name}-slb-listener-{port}",
            load_balancer_id=lb.id,
            frontend_port=port,
            backend_port=port,
            protocol="tcp",
            bandwidth=-1,
        )
    if masters:
        alicloud.slb.BackendServer(
            f"{cluster.name}-slb-backends",
            load_balancer_id=lb.id,
            backend_servers=[
                alicloud.slb.BackendServerBackendServerArgs(server_id=m.id, weight=100)
                for m in masters
            ],
        )
    return lb


def build_alicloud_cluster(cluster: Cluster, tables: ProviderTables) -> Dict[str, Any]:
    """Create every resource of ``cluster`` and export the named outputs."""
    nodes = provisioned_nodes(cluster)
    bostion = bostion_node(nodes)

    network = create_network_resources(cluster)
    security = create_security_resources(cluster, network["vpc"])
    instances = create_instances(cluster, nodes, network, security, tables)
    eip = create_bostion_address(cluster, instances[bostion.name])
    masters = [instances[n.name] for n in nodes if n.role == NodeRole.MASTER]
    lb = create_load_balancer(cluster, masters)

    for node in nodes:
        instance = instances[node.name]
        pulumi.export(f"node-{node.name}-id", instance.id)
        pulumi.export(f"node-{node.name}-user", "root")
        pulumi.export(f"node-{node.name}-internal-ip", instance.private_ip)
        if node.name == bostion.name:
            pulumi.export(f"node-{node.name}-public-ip", eip.ip_address)
    pulumi.export("bostion-host-instance-id", instances[bostion.name].id)
    pulumi.export("vpc-id", network["vpc"].id)
    pulumi.export("security-group-ids", security["security_group_ids"])
    pulumi.export("load-balancer-id", lb.id)
    pulumi.export("load-balancer-address", lb.address)
    return {
        "network": network,
        "security": security,
        "instances": instances,
        "bostion_eip": eip,
        "load_balancer": lb,
    }


class AliCloudProvider(CloudProvider):
    """AliCloud ECS / VPC / SLB provisioner."""

    name = "alicloud"

    def __init__(self, settings, tables=None):
        super().__init__(settings, tables or ProviderTables(families=ALICLOUD_FAMILIES))
        self.plugins = [("alicloud", settings.pulumi.alicloud_plugin_version)]

    def credentials_env(self, cluster: Cluster) -> Dict[str, str]:
        return {
            "ALICLOUD_ACCESS_KEY": cluster.access_id,
            "ALICLOUD_SECRET_KEY": cluster.access_key,
            "ALICLOUD_REGION": cluster.region,
        }

    def stack_config(self, cluster: Cluster) -> Dict[str, str]:
        return {"alicloud:region": cluster.region}

    def program(self, cluster: Cluster) -> Callable[[], None]:
        def run() -> None:
            build_alicloud_cluster(cluster, self.tables)
        return run
