"""AWS provisioning with pulumi_aws."""
import logging
from typing import Any, Callable, Dict, List

import pulumi
import pulumi_aws as aws

from ..errors import ProviderError
from ..models import Cluster, Node, NodeArch, NodeGroup, NodeRole, parse_node_labels
from .alicloud import bostion_node, provisioned_nodes
from .base import CloudProvider
from .catalog import AWS_FAMILIES, InstanceTypeSpec, ProviderTables, resolve_instance_type, subnet_index

logger = logging.getLogger("oceanctl.providers.aws")

DEFAULT_VPC_CIDR = "10.0.0.0/16"
UBUNTU_OWNER = "099720109477"
MAX_ZONES = 3
LISTENER_PORTS = (22, 80, 443, 6443)


def _tags(cluster: Cluster, name: str) -> Dict[str, str]:
    return {"Name": name, "cluster": cluster.name}


def create_vpc_resources(cluster: Cluster) -> Dict[str, Any]:
    """VPC, public subnets per zone, internet gateway and routing."""
    zones = aws.get_availability_zones(state="available").names[:MAX_ZONES]
    if not zones:
        raise ProviderError(f"no availability zone available in region {cluster.region}")

    if cluster.vpc_id:
        vpc = aws.ec2.Vpc.get(f"{cluster.name}-vpc", cluster.vpc_id)
    else:
        vpc = aws.ec2.Vpc(
            f"{cluster.name}-vpc",
            cidr_block=DEFAULT_VPC_CIDR,
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags=_tags(cluster, f"{cluster.name}-vpc"),
        )

    igw = aws.ec2.InternetGateway(
        f"{cluster.name}-igw",
        vpc_id=vpc.id,
        tags=_tags(cluster, f"{cluster.name}-igw"),
    )
    route_table = aws.ec2.RouteTable(
        f"{cluster.name}-public-rt",
        vpc_id=vpc.id,
        routes=[aws.ec2.RouteTableRouteArgs(cidr_block="0.0.0.0/0", gateway_id=igw.id)],
        tags=_tags(cluster, f"{cluster.name}-public-rt"),
    )

    subnets = []
    for i, zone in enumerate(zones):
        subnet = aws.ec2.Subnet(
            f"{cluster.name}-subnet-{zone}",
            vpc_id=vpc.id,
            cidr_block=f"10.0.{i}.0/24",
            availability_zone=zone,
            tags=_tags(cluster, f"{cluster.name}-subnet-{zone}"),
        )
        aws.ec2.RouteTableAssociation(
            f"{cluster.name}-subnet-{zone}-rta",
            subnet_id=subnet.id,
            route_table_id=route_table.id,
        )
        subnets.append(subnet)
    return {"vpc": vpc, "zones": zones, "subnets": subnets}


def create_security_resources(cluster: Cluster, vpc) -> Dict[str, Any]:
    if cluster.security_group_ids:
        security_group_ids = list(cluster.security_group_ids)
    else:
        security_group = aws.ec2.SecurityGroup(
            f"{cluster.name}-sg",
            vpc_id=vpc.id,
            description=f"{cluster.name} node access",
            ingress=[
                aws.ec2.SecurityGroupIngressArgs(
                    protocol="tcp", from_port=22, to_port=22, cidr_blocks=["0.0.0.0/0"],
                ),
                aws.ec2.SecurityGroupIngressArgs(
                    protocol="-1", from_port=0, to_port=0, self=True,
                ),
            ],
            egress=[
                aws.ec2.SecurityGroupEgressArgs(
                    protocol="-1", from_port=0, to_port=0, cidr_blocks=["0.0.0.0/0"],
                ),
            ],
            tags=_tags(cluster, f"{cluster.name}-sg"),
        )
        security_group_ids = [security_group.id]

    key_pair = aws.ec2.KeyPair(
        f"{cluster.name}-key",
        key_name=f"{cluster.name}-key",
        public_key=cluster.public_key,
    )
    return {"security_group_ids": security_group_ids, "key_pair": key_pair}


def instance_catalog(family: str) -> List[InstanceTypeSpec]:
    names = aws.ec2.get_instance_types(
        filters=[aws.ec2.GetInstanceTypesFilterArgs(name="instance-type", values=[f"{family}.*"])],
    ).instance_types
    catalog = []
    for name in names:
        info = aws.ec2.get_instance_type(instance_type=name)
        gpus = info.gpuses or []
        catalog.append(InstanceTypeSpec(
            name=name,
            cpu=int(info.default_vcpus or 0),
            memory=float(info.memory_size or 0) / 1024,
            gpu=sum(int(g.count or 0) for g in gpus),
            gpu_spec=gpus[0].name if gpus else "",
        ))
    return catalog


def resolve_group(group: NodeGroup, tables: ProviderTables) -> Dict[str, str]:
    if group.instance_type:
        instance_type = group.instance_type
    else:
        instance_type = resolve_instance_type(
            instance_catalog(tables.family(group.type)),
            group.cpu,
            group.memory,
            group.gpu,
        ).name
    if group.image:
        image = group.image
    else:
        arch = "arm64" if group.arch == NodeArch.ARM64 else "amd64"
        ami = aws.ec2.get_ami(
            most_recent=True,
            owners=[UBUNTU_OWNER],
            filters=[aws.ec2.GetAmiFilterArgs(
                name="name",
                values=[f"ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-{arch}-server-*"],
            )],
        )
        image = ami.id
    return {"instance_type": instance_type, "image": image}


def create_instances(
    cluster: Cluster,
    nodes: List[Node],
    network: Dict[str, Any],
    security: Dict[str, Any],
    tables: ProviderTables,
) -> Dict[str, Any]:
    group_specs: Dict[str, Dict[str, str]] = {}
    instances = {}
    subnets = network["subnets"]
    zones = network["zones"]
    for index, node in enumerate(nodes):
        group = cluster.get_node_group(node.node_group_id)
        if group is None:
            raise ProviderError(f"node {node.name} has no node group")
        if group.id not in group_specs:
            group_specs[group.id] = resolve_group(group, tables)
            pulumi.export(f"cloud-nodegroup-instance-type-{group.name}", group_specs[group.id]["instance_type"])
            pulumi.export(f"cloud-nodegroup-image-{group.name}", group_specs[group.id]["image"])

        if node.instance_id:
            instances[node.name] = aws.ec2.Instance.get(f"{cluster.name}-{node.name}", node.instance_id)
            continue

        slot = subnet_index(index, len(nodes), len(subnets))
        subnet_id = node.subnet_id or subnets[slot].id
        tags = parse_node_labels(node.labels)
        tags.update(_tags(cluster, node.name))
        ebs = []
        if node.data_disk or group.data_disk:
            ebs.append(aws.ec2.InstanceEbsBlockDeviceArgs(
                device_name="/dev/sdf",
                volume_size=node.data_disk or group.data_disk,
                volume_type="gp3",
                delete_on_termination=True,
            ))
        instances[node.name] = aws.ec2.Instance(
            f"{cluster.name}-{node.name}",
            ami=group_specs[group.id]["image"],
            instance_type=group_specs[group.id]["instance_type"],
            subnet_id=subnet_id,
            vpc_security_group_ids=security["security_group_ids"],
            key_name=security["key_pair"].key_name,
            root_block_device=aws.ec2.InstanceRootBlockDeviceArgs(
                volume_size=node.system_disk or group.system_disk or 40,
                volume_type="gp3",
            ),
            ebs_block_devices=ebs or None,
            tags=tags,
        )
        pulumi.export(f"node-{node.name}-zone", zones[slot])
        pulumi.export(f"node-{node.name}-subnet-id", subnet_id)
    return instances


def create_load_balancer(cluster: Cluster, network: Dict[str, Any], masters: List[Any]) -> Any:
    """Network load balancer forwarding SSH, 80, 443 and 6443 to the masters."""
    lb = aws.lb.LoadBalancer(
        f"{cluster.name}-nlb",
        load_balancer_type="network",
        internal=False,
        subnets=[s.id for s in network["subnets"]],
        tags=_tags(cluster, f"{cluster.name}-nlb"),
    )
    for port in LISTENER_PORTS:
        target_group = aws.lb.TargetGroup(
            f"{cluster.name}-tg-{port}",
            port=port,
            protocol="TCP",
            target_type="instance",
            vpc_id=network["vpc"].id,
        )
        aws.lb.Listener(
            f"{cluster.name}-listener-{port}",
            load_balancer_arn=lb.arn,
            port=port,
            protocol="TCP",
            default_actions=[aws.lb.ListenerDefaultActionArgs(
                type="forward",
                target_group_arn=target_group.arn,
            )],
        )
        for i, master in enumerate(masters):
            aws.lb.TargetGroupAttachment(
                f"{cluster.name}-tg-{port}-master-{i}",
                target_group_arn=target_group.arn,
                target_id=master.id,
                port=port,
            )
    return lb


def build_aws_cluster(cluster: Cluster, tables: ProviderTables) -> Dict[str, Any]:
    """Create every resource of ``cluster`` and export the named outputs."""
    nodes = provisioned_nodes(cluster)
    bostion = bostion_node(nodes)

    network = create_vpc_resources(cluster)
    security = create_security_resources(cluster, network["vpc"])
    instances = create_instances(cluster, nodes, network, security, tables)
    eip = aws.ec2.Eip(
        f"{cluster.name}-bostion-eip",
        instance=instances[bostion.name].id,
        domain="vpc",
        tags=_tags(cluster, f"{cluster.name}-bostion-eip"),
    )
    masters = [instances[n.name] for n in nodes if n.role == NodeRole.MASTER]
    lb = create_load_balancer(cluster, network, masters)

    for node in nodes:
        instance = instances[node.name]
        pulumi.export(f"node-{node.name}-id", instance.id)
        pulumi.export(f"node-{node.name}-user", "ubuntu")
        pulumi.export(f"node-{node.name}-internal-ip", instance.private_ip)
        if node.name == bostion.name:
            pulumi.export(f"node-{node.name}-public-ip", eip.public_ip)
    pulumi.export("bostion-host-instance-id", instances[bostion.name].id)
    pulumi.export("vpc-id", network["vpc"].id)
    pulumi.export("security-group-ids", security["security_group_ids"])
    pulumi.export("load-balancer-id", lb.arn)
    pulumi.export("load-balancer-address", lb.dns_name)
    return {
        "network": network,
        "security": security,
        "instances": instances,
        "bostion_eip": eip,
        "load_balancer": lb,
    }


class AWSProvider(CloudProvider):
    """AWS EC2 / VPC / NLB provisioner."""

    name = "aws"

    def __init__(self, settings, tables=None):
        super().__init__(settings, tables or ProviderTables(families=AWS_FAMILIES))
        self.plugins = [("aws", settings.pulumi.aws_plugin_version)]

    def credentials_env(self, cluster: Cluster) -> Dict[str, str]:
        return {
            "AWS_ACCESS_KEY_ID": cluster.access_id,
            "AWS_SECRET_ACCESS_KEY": cluster.access_key,
            "AWS_DEFAULT_REGION": cluster.region,
        }

    def stack_config(self, cluster: Cluster) -> Dict[str, str]:
        return {"aws:region": cluster.region}

    def program(self, cluster: Cluster) -> Callable[[], None]:
        def run() -> None:
            build_aws_cluster(cluster, self.tables)
        return run
