import json
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from pulumi import automation as auto

from oceanctl.modules.errors import ConfigurationError, ProviderError, ValidationError
from oceanctl.modules.models import (
    BostionHost,
    Cluster,
    ClusterType,
    Node,
    NodeArch,
    NodeGPUSpec,
    NodeGroup,
    NodeRole,
    NodeStatus,
)
from oceanctl.modules.playbook import PlaybookResult
from oceanctl.modules.providers import apply_outputs, get_provider
from oceanctl.modules.providers.alicloud import AliCloudProvider, build_alicloud_cluster
from oceanctl.modules.providers.aws import AWSProvider, build_aws_cluster, instance_catalog
from oceanctl.modules.providers.base import PulumiStack, StackLocks, stack_lock
from oceanctl.modules.providers.catalog import ALICLOUD_FAMILIES, AWS_FAMILIES, ProviderTables, resolve_instance_type
from oceanctl.modules.providers.gcp import GoogleProvider
from oceanctl.modules.providers.local import LocalProvider


def cloud_cluster(cluster_type=ClusterType.ALICLOUD):
    group = NodeGroup(name="amd64-cpu-4-mem-8", cpu=4, memory=8, system_disk=100)
    cluster = Cluster(
        name="sky",
        type=cluster_type,
        region="cn-hangzhou",
        access_id="id",
        access_key="key",
        public_key="ssh-rsa AAAA",
        node_groups=[group],
    )
    for i in range(2):
        cluster.nodes.append(Node(
            name=f"master-{i}", node_group_id=group.id, role=NodeRole.MASTER, status=NodeStatus.CREATING,
        ))
    cluster.nodes.append(Node(name="spare", node_group_id=group.id, status=NodeStatus.UNSPECIFIED))
    return cluster


class FakeCommandError(auto.CommandError):
    def __init__(self, message):
        Exception.__init__(self, message)

    def __str__(self):
        return self.args[0]


def exports(pulumi_mock):
    return {c.args[0]: c.args[1] for c in pulumi_mock.export.call_args_list}


def test_apply_outputs_folds_nodes_groups_and_bostion():
    cluster = cloud_cluster()
    outputs = {
        "node-master-0-id": "i-1",
        "node-master-0-internal-ip": "192.168.0.10",
        "node-master-0-public-ip": "47.0.0.1",
        "node-master-0-user": "root",
        "node-master-0-zone": "cn-hangzhou-a",
        "node-master-0-subnet-id": "vsw-1",
        "node-master-1-id": "i-2",
        "node-master-1-internal-ip": "192.168.1.10",
        "cloud-nodegroup-instance-type-amd64-cpu-4-mem-8": "ecs.g6.xlarge",
        "cloud-nodegroup-image-amd64-cpu-4-mem-8": "ubuntu_22_04",
        "vpc-id": "vpc-1",
        "security-group-ids": ["sg-1"],
        "load-balancer-id": "lb-1",
        "load-balancer-address": "47.0.0.100",
        "bostion-host-instance-id": "i-1",
    }

    apply_outputs(cluster, outputs)

    master = cluster.get_node("master-0")
    assert (master.instance_id, master.internal_ip, master.external_ip) == ("i-1", "192.168.0.10", "47.0.0.1")
    assert (master.zone, master.subnet_id) == ("cn-hangzhou-a", "vsw-1")
    assert cluster.get_node("master-1").external_ip == ""
    assert cluster.node_groups[0].instance_type == "ecs.g6.xlarge"
    assert cluster.node_groups[0].image == "ubuntu_22_04"
    assert cluster.vpc_id == "vpc-1"
    assert cluster.security_group_ids == ["sg-1"]
    assert cluster.load_balancer_address == "47.0.0.100"
    assert cluster.bostion_host.hostname == "master-0"
    assert cluster.bostion_host.external_ip == "47.0.0.1"


def test_apply_outputs_splits_comma_joined_security_groups():
    cluster = cloud_cluster()
    apply_outputs(cluster, {"security-group-ids": "sg-1,sg-2"})
    assert cluster.security_group_ids == ["sg-1", "sg-2"]


@patch("oceanctl.modules.providers.alicloud.pulumi")
@patch("oceanctl.modules.providers.alicloud.alicloud")
def test_alicloud_program_builds_one_instance_per_provisioned_node(mock_alicloud, mock_pulumi):
    mock_alicloud.get_zones.return_value.zones = [SimpleNamespace(id="cn-hangzhou-a"), SimpleNamespace(id="cn-hangzhou-b")]
    mock_alicloud.ecs.get_instance_types.return_value.instance_types = [
        SimpleNamespace(id="ecs.g6.2xlarge", cpu_core_count=8, memory_size=32, gpu=None),
        SimpleNamespace(id="ecs.g6.xlarge", cpu_core_count=4, memory_size=16, gpu=None),
        SimpleNamespace(id="ecs.g6.large", cpu_core_count=2, memory_size=8, gpu=None),
    ]
    mock_alicloud.ecs.get_images.return_value.images = [SimpleNamespace(id="ubuntu_22_04_x64")]
    cluster = cloud_cluster()

    resources = build_alicloud_cluster(cluster, ProviderTables(families=ALICLOUD_FAMILIES))

    assert set(resources["instances"]) == {"master-0", "master-1"}
    assert mock_alicloud.ecs.Instance.call_count == 2
    for call in mock_alicloud.ecs.Instance.call_args_list:
        assert call.kwargs["instance_type"] == "ecs.g6.xlarge"
        assert call.kwargs["image_id"] == "ubuntu_22_04_x64"
    assert mock_alicloud.vpc.Switch.call_count == 2
    assert mock_alicloud.slb.Listener.call_count == 4
    exported = exports(mock_pulumi)
    assert exported["cloud-nodegroup-instance-type-amd64-cpu-4-mem-8"] == "ecs.g6.xlarge"
    assert exported["node-master-0-zone"] == "cn-hangzhou-a"
    assert exported["node-master-1-zone"] == "cn-hangzhou-b"
    assert "node-master-0-public-ip" in exported
    assert "node-master-1-public-ip" not in exported
    assert "load-balancer-address" in exported


@patch("oceanctl.modules.providers.alicloud.pulumi")
@patch("oceanctl.modules.providers.alicloud.alicloud")
def test_alicloud_program_reads_existing_resources(mock_alicloud, mock_pulumi):
    mock_alicloud.get_zones.return_value.zones = [SimpleNamespace(id="cn-hangzhou-a")]
    cluster = cloud_cluster()
    cluster.vpc_id = "vpc-existing"
    cluster.security_group_ids = ["sg-existing"]
    cluster.node_groups[0].instance_type = "ecs.g6.xlarge"
    cluster.node_groups[0].image = "img-1"
    cluster.nodes[0].instance_id = "i-existing"

    build_alicloud_cluster(cluster, ProviderTables(families=ALICLOUD_FAMILIES))

    mock_alicloud.vpc.Network.get.assert_called_once_with("sky-vpc", "vpc-existing")
    mock_alicloud.vpc.Network.assert_not_called()
    mock_alicloud.ecs.SecurityGroup.assert_not_called()
    mock_alicloud.ecs.Instance.get.assert_called_once_with("sky-master-0", "i-existing")
    assert mock_alicloud.ecs.Instance.call_count == 1
    mock_alicloud.ecs.get_instance_types.assert_not_called()


@patch("oceanctl.modules.providers.alicloud.pulumi")
@patch("oceanctl.modules.providers.alicloud.alicloud")
def test_alicloud_program_fails_without_matching_instance_type(mock_alicloud, mock_pulumi):
    mock_alicloud.get_zones.return_value.zones = [SimpleNamespace(id="cn-hangzhou-a")]
    mock_alicloud.ecs.get_instance_types.return_value.instance_types = [
        SimpleNamespace(id="ecs.g6.large", cpu_core_count=2, memory_size=8, gpu=None),
    ]
    with pytest.raises(ProviderError, match="no available instance type"):
        build_alicloud_cluster(cloud_cluster(), ProviderTables(families=ALICLOUD_FAMILIES))


@patch("oceanctl.modules.providers.aws.pulumi")
@patch("oceanctl.modules.providers.aws.aws")
def test_aws_program_resolves_types_from_catalog(mock_aws, mock_pulumi):
    mock_aws.get_availability_zones.return_value.names = ["us-east-1a", "us-east-1b", "us-east-1c", "us-east-1d"]
    mock_aws.ec2.get_instance_types.return_value.instance_types = ["m5.large", "m5.xlarge"]
    specs = {
        "m5.large": SimpleNamespace(default_vcpus=2, memory_size=8192, gpuses=None),
        "m5.xlarge": SimpleNamespace(default_vcpus=4, memory_size=16384, gpuses=None),
    }
    mock_aws.ec2.get_instance_type.side_effect = lambda instance_type: specs[instance_type]
    mock_aws.ec2.get_ami.return_value.id = "ami-123"
    cluster = cloud_cluster(ClusterType.AWS)

    build_aws_cluster(cluster, ProviderTables(families=AWS_FAMILIES))

    assert mock_aws.ec2.Subnet.call_count == 3
    assert mock_aws.ec2.Instance.call_count == 2
    assert mock_aws.ec2.Instance.call_args.kwargs["instance_type"] == "m5.xlarge"
    assert mock_aws.ec2.Instance.call_args.kwargs["ami"] == "ami-123"
    assert mock_aws.lb.Listener.call_count == 4
    assert mock_aws.lb.TargetGroupAttachment.call_count == 8
    exported = exports(mock_pulumi)
    assert exported["node-master-0-user"] == "ubuntu"
    assert exported["cloud-nodegroup-image-amd64-cpu-4-mem-8"] == "ami-123"


@patch("oceanctl.modules.providers.aws.aws")
def test_aws_catalog_keeps_every_family_entry(mock_aws):
    names = [f"m5.size{i:02d}" for i in range(30)]
    mock_aws.ec2.get_instance_types.return_value.instance_types = list(reversed(names))

    def describe(instance_type):
        fits = instance_type == "m5.size29"
        return SimpleNamespace(default_vcpus=4 if fits else 1, memory_size=16384 if fits else 1024, gpuses=None)

    mock_aws.ec2.get_instance_type.side_effect = describe

    catalog = instance_catalog("m5")

    assert len(catalog) == 30
    assert resolve_instance_type(catalog, 4, 8).name == "m5.size29"


def test_cloud_provider_validates_credentials_eagerly(settings):
    cluster = cloud_cluster()
    cluster.access_key = ""
    with patch("oceanctl.modules.providers.base.auto.create_or_select_stack") as select:
        with pytest.raises(ConfigurationError, match="access key"):
            AliCloudProvider(settings).start(cluster)
    select.assert_not_called()


def test_cloud_provider_credentials_and_stack_names(settings):
    cluster = cloud_cluster(ClusterType.AWS)
    provider = AWSProvider(settings)
    assert provider.credentials_env(cluster) == {
        "AWS_ACCESS_KEY_ID": "id",
        "AWS_SECRET_ACCESS_KEY": "key",
        "AWS_DEFAULT_REGION": "cn-hangzhou",
    }
    assert provider.project_name() == "ocean-aws-project"
    assert provider.stack_name(cluster) == "sky-aws-stack"
    assert AliCloudProvider(settings).credentials_env(cluster)["ALICLOUD_REGION"] == "cn-hangzhou"


def test_provider_start_runs_up_and_folds_outputs(settings, tmp_path):
    settings.pulumi.home = str(tmp_path / "pulumi")
    cluster = cloud_cluster()
    stack = MagicMock()
    stack.up.return_value.outputs = {
        "vpc-id": auto.OutputValue(value="vpc-9", secret=False),
        "load-balancer-address": auto.OutputValue(value="47.0.0.9", secret=False),
    }
    lines = []
    with patch("oceanctl.modules.providers.base.auto.create_or_select_stack", return_value=stack) as select:
        AliCloudProvider(settings).start(cluster, stream=lines.append)

    assert select.call_args.kwargs["stack_name"] == "sky-alicloud-stack"
    stack.workspace.install_plugin.assert_called_once_with("alicloud", settings.pulumi.alicloud_plugin_version)
    stack.set_config.assert_called_once()
    assert cluster.vpc_id == "vpc-9"
    assert cluster.load_balancer_address == "47.0.0.9"
    on_output = stack.up.call_args.kwargs["on_output"]
    on_output("Updating")
    assert lines == ["Updating\n"]


def test_pulumi_failure_is_provider_error(settings, tmp_path):
    settings.pulumi.home = str(tmp_path / "pulumi")
    stack = MagicMock()
    stack.destroy.side_effect = FakeCommandError("quota exceeded")
    with patch("oceanctl.modules.providers.base.auto.create_or_select_stack", return_value=stack):
        pulumi_stack = PulumiStack(settings, "p", "s", program=lambda: None, env_vars={}, plugins=[])
        with pytest.raises(ProviderError, match="stack s destroy failed"):
            pulumi_stack.destroy()


def test_provider_honours_cancel_before_touching_the_stack(settings, tmp_path):
    settings.pulumi.home = str(tmp_path / "pulumi")
    cancel = threading.Event()
    cancel.set()
    stack = MagicMock()
    with patch("oceanctl.modules.providers.base.auto.create_or_select_stack", return_value=stack):
        with pytest.raises(ProviderError, match="cancelled"):
            AliCloudProvider(settings).stop(cloud_cluster(), cancel=cancel)
    stack.destroy.assert_not_called()


def test_stack_locks_are_per_stack():
    locks = StackLocks()
    assert locks.get("aws", "a") is locks.get("aws", "a")
    assert locks.get("aws", "a") is not locks.get("aws", "b")
    assert locks.get("aws", "a") is not locks.get("alicloud", "a")
    with locks.hold("aws", "a"):
        assert locks.get("aws", "a").locked()
    assert not locks.get("aws", "a").locked()
    assert stack_lock("aws", "shared") is stack_lock("aws", "shared")


def test_get_provider_dispatches_on_type(settings):
    assert isinstance(get_provider(Cluster(name="a", type=ClusterType.LOCAL), settings), LocalProvider)
    assert isinstance(get_provider(Cluster(name="a", type=ClusterType.ALICLOUD), settings), AliCloudProvider)
    assert isinstance(get_provider(Cluster(name="a", type=ClusterType.AWS), settings), AWSProvider)
    google = get_provider(Cluster(name="a", type=ClusterType.GOOGLE), settings)
    assert isinstance(google, GoogleProvider)
    with pytest.raises(ProviderError, match="not supported"):
        google.start(Cluster(name="a", type=ClusterType.GOOGLE))


class FakeProbe:
    def __init__(self, facts, failed=()):
        self.facts = facts
        self.failed = list(failed)
        self.calls = []

    def run(self, cluster, kind, servers, **kwargs):
        self.calls.append((kind, [s.hostname for s in servers], kwargs))
        return PlaybookResult(
            status="failed" if self.failed else "successful",
            rc=2 if self.failed else 0,
            host_results={h: {"stdout": json.dumps(f)} for h, f in self.facts.items()},
            failed_hosts=self.failed,
        )


def _facts(cpu, mem, arch="x86_64", gpu=0, gpu_info="", ip=None):
    return {"id": "m", "os": "ubuntu-22.04", "arch": arch, "cpu": cpu, "mem": mem,
            "gpu": gpu, "gpu_info": gpu_info, "disk": 100, "ip": ip or ""}


def test_local_discovery_groups_hosts_by_shape(settings):
    cluster = Cluster(name="bare", nodes=[Node(name=f"10.0.0.{i}", internal_ip=f"10.0.0.{i}") for i in range(1, 5)])
    probe = FakeProbe({
        "10.0.0.1": _facts(4, 8),
        "10.0.0.2": _facts(4, 8),
        "10.0.0.3": _facts(8, 32, arch="aarch64"),
        "10.0.0.4": _facts(8, 32, gpu=1, gpu_info="Tesla T4"),
    })

    LocalProvider(settings, playbooks=probe).get(cluster)

    assert probe.calls[0][2]["fatal"] is False
    assert probe.calls[0][2]["forks"] == 10
    assert len(cluster.node_groups) == 3
    small = cluster.get_node_group(cluster.get_node("10.0.0.1").node_group_id)
    assert cluster.get_node("10.0.0.2").node_group_id == small.id
    assert (small.min_size, small.max_size, small.target_size) == (2, 2, 2)
    arm = cluster.get_node_group(cluster.get_node("10.0.0.3").node_group_id)
    assert arm.arch is NodeArch.ARM64
    gpu = cluster.get_node_group(cluster.get_node("10.0.0.4").node_group_id)
    assert gpu.gpu == 1 and gpu.gpu_spec is NodeGPUSpec.NVIDIA_T4
    assert all(n.user == "root" for n in cluster.nodes)


def test_local_discovery_omits_failed_hosts(settings):
    cluster = Cluster(name="bare", nodes=[Node(name=f"10.0.0.{i}", internal_ip=f"10.0.0.{i}") for i in range(1, 4)])
    probe = FakeProbe({"10.0.0.1": _facts(4, 8), "10.0.0.3": _facts(4, 8)}, failed=["10.0.0.2"])

    LocalProvider(settings, playbooks=probe).get(cluster)

    assert [n.name for n in cluster.nodes] == ["10.0.0.1", "10.0.0.3"]
    assert cluster.node_groups[0].target_size == 2


def test_local_discovery_requires_hosts(settings):
    with pytest.raises(ValidationError):
        LocalProvider(settings, playbooks=FakeProbe({})).get(Cluster(name="bare"))


def test_local_start_and_stop_are_noops(settings):
    probe = FakeProbe({})
    provider = LocalProvider(settings, playbooks=probe)
    cluster = Cluster(name="bare", bostion_host=BostionHost())
    provider.start(cluster)
    provider.stop(cluster)
    assert probe.calls == []
