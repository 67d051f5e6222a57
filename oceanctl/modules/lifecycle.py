"""
Cluster lifecycle orchestration.

ClusterLifecycle drives a Cluster aggregate through discovery, provisioning,
installation, node changes and teardown by composing the provider, the
playbook runner and the SSH gateway. Every operation streams its progress
into ``cluster.logs`` and persists the logs periodically while it runs.
"""
import logging
import os
import shlex
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from .configuration import image_repository, render_cluster_config, render_install_manifest
from .errors import LifecycleError, NodeOperationError, OceanError, ValidationError
from .logstream import LogStream
from .models import (
    MAX_MASTERS,
    BostionHost,
    Cluster,
    ClusterStatus,
    Node,
    NodeArch,
    NodeGroup,
    NodeGroupType,
    NodeRole,
    NodeStatus,
    assign_roles,
    generate_node_labels,
    node_group_name,
)
from .playbook import PlaybookKind, PlaybookRunner, server_for_bostion, servers_for_nodes
from .providers import get_provider
from .providers.catalog import ProviderTables
from .ssh import RemoteBash, RemoteHost, get_ssh_pool

logger = logging.getLogger("oceanctl.lifecycle")

# Default shape of the first node group of a cloud cluster
DEFAULT_GROUP_CPU = 4
DEFAULT_GROUP_MEMORY = 8
DEFAULT_GROUP_DISK = 100
DEFAULT_GROUP_BANDWIDTH = 100
DEFAULT_GROUP_MIN_SIZE = 2
DEFAULT_GROUP_TARGET_SIZE = 5
DEFAULT_GROUP_MAX_SIZE = 10
DEFAULT_GROUP_OS = "ubuntu-22.04"

NODE_INIT_SCRIPT = "nodeinit.sh"
COMPONENT_SCRIPT = "component.sh"
INSTALL_MANIFEST = "ocean-install.yaml"


class ClusterLifecycle:
    """Runs lifecycle operations against one cluster at a time."""

    def __init__(
        self,
        config,
        repository,
        playbooks: Optional[PlaybookRunner] = None,
        provider_factory: Optional[Callable] = None,
        ssh_factory: Optional[Callable[[RemoteHost], RemoteBash]] = None,
    ):
        self.config = config
        self.repository = repository
        self.playbooks = playbooks or PlaybookRunner(config)
        self.provider_factory = provider_factory or get_provider
        self.ssh_factory = ssh_factory or self._pooled_session
        self.tables = ProviderTables()

    # Plumbing

    def _pooled_session(self, host: RemoteHost) -> RemoteBash:
        return get_ssh_pool().get_connection(
            host,
            timeout=self.config.ssh.command_timeout,
            connect_timeout=self.config.ssh.connect_timeout,
        )

    def _session(self, cluster: Cluster, address: str, user: str, port: int, name: str) -> RemoteBash:
        if not address:
            raise ValidationError(f"node {name} has no address")
        return self.ssh_factory(RemoteHost(
            host=address,
            user=user or self.config.ssh.user,
            port=port or self.config.ssh.port,
            private_key=cluster.private_key or None,
            name=name,
        ))

    def _node_session(self, cluster: Cluster, node: Node) -> RemoteBash:
        return self._session(cluster, node.address, node.user, node.ssh_port, node.name)

    def _provider(self, cluster: Cluster):
        return self.provider_factory(cluster, self.config)

    def _flush_logs(self, cluster: Cluster) -> None:
        self.repository.save_logs(cluster.name, cluster.logs)

    def _save(self, cluster: Cluster) -> None:
        self.repository.save(cluster)

    @staticmethod
    def _check_cancel(cluster: Cluster, operation: str, cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise LifecycleError(f"{operation} of cluster {cluster.name} was cancelled")

    @contextmanager
    def _operation(self, cluster: Cluster, operation: str, cancel: Optional[threading.Event]) -> Iterator[LogStream]:
        stream = LogStream(
            sink=cluster.append_log,
            flush=lambda: self._flush_logs(cluster),
            cancel=cancel,
            name=f"{cluster.name}-{operation}",
        )
        logger.info(f"Starting {operation} for cluster {cluster.name}")
        stream.emit(f"==> {operation} cluster {cluster.name}\n")
        try:
            yield stream
        except Exception as e:
            logger.error(f"{operation} failed for cluster {cluster.name}: {e}")
            stream.emit(f"{operation} failed: {e}\n")
            raise
        finally:
            stream.close()
        logger.info(f"Finished {operation} for cluster {cluster.name}")

    # Discovery and provisioning

    def generate_initial_cluster(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        """Fill in node groups, nodes and roles for a freshly declared cluster.

        Local clusters are discovered by probing the declared hosts; cloud
        clusters get a default node group sized to its minimum.
        """
        with self._operation(cluster, "generate", cancel) as stream:
            if cluster.type.is_cloud:
                self._generate_cloud_cluster(cluster)
            else:
                if not cluster.nodes:
                    raise ValidationError(f"local cluster {cluster.name} requires at least one declared host")
                self._check_cancel(cluster, "generate", cancel)
                self._provider(cluster).get(cluster, stream, cancel)
                assign_roles(cluster)
                for node in cluster.nodes:
                    group = cluster.get_node_group(node.node_group_id)
                    node.labels = generate_node_labels(cluster, group)
            self._save(cluster)
        return cluster

    def _generate_cloud_cluster(self, cluster: Cluster) -> None:
        group = NodeGroup(
            type=NodeGroupType.NORMAL,
            os=DEFAULT_GROUP_OS,
            arch=NodeArch.AMD64,
            cpu=DEFAULT_GROUP_CPU,
            memory=DEFAULT_GROUP_MEMORY,
            system_disk=DEFAULT_GROUP_DISK,
            internet_max_bandwidth_out=DEFAULT_GROUP_BANDWIDTH,
            min_size=DEFAULT_GROUP_MIN_SIZE,
            max_size=DEFAULT_GROUP_MAX_SIZE,
            target_size=DEFAULT_GROUP_TARGET_SIZE,
        )
        group.name = node_group_name(group)
        cluster.node_groups = [group]
        labels = generate_node_labels(cluster, group)
        nodes = []
        for i in range(group.min_size):
            role = NodeRole.MASTER if i < MAX_MASTERS else NodeRole.WORKER
            nodes.append(Node(
                name=f"{role.value}-{i}",
                cluster_id=cluster.id,
                node_group_id=group.id,
                role=role,
                status=NodeStatus.CREATING,
                system_disk=group.system_disk,
                labels=labels,
            ))
        cluster.nodes = nodes
        cluster.bostion_host = BostionHost(arch=NodeArch.AMD64, cpu=2, memory=4)

    def provision(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        """Create or converge the provider resources of ``cluster``."""
        with self._operation(cluster, "provision", cancel) as stream:
            cluster.status = ClusterStatus.STARTING
            self._provider(cluster).start(cluster, stream, cancel)
            self._save(cluster)
        return cluster

    def delete_servers(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        with self._operation(cluster, "delete servers", cancel) as stream:
            cluster.status = ClusterStatus.STOPPING
            self._provider(cluster).stop(cluster, stream, cancel)
            if cluster.type.is_cloud:
                for node in cluster.nodes:
                    node.instance_id = ""
                    node.internal_ip = node.external_ip = ""
                cluster.load_balancer_id = cluster.load_balancer_address = ""
                cluster.bostion_host = None
            cluster.status = ClusterStatus.DELETED
            self._save(cluster)
        return cluster

    def import_cluster(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        """Reconcile the aggregate from what the provider reports."""
        with self._operation(cluster, "import", cancel) as stream:
            self._provider(cluster).get(cluster, stream, cancel)
            self._save(cluster)
        return cluster

    def migrate_to_bostion_host(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> None:
        """Copy the resource package and local database onto the bastion."""
        server = server_for_bostion(cluster)
        paths = {
            "database": self.config.resource.database_file,
            "pulumi workspace": str(Path(self.config.resource.workspace) / "pulumi"),
            "pulumi state": str(Path(self.config.pulumi.home) / "state"),
            "resource package": self.config.resource.package,
        }
        with self._operation(cluster, "migrate", cancel) as stream:
            self.playbooks.run(
                cluster,
                PlaybookKind.MIGRATE,
                [server],
                stream=stream,
                cancel=cancel,
                playbook_args={"paths": paths},
            )

    # Installation

    def _remote_resource(self, home: str) -> str:
        return f"{home}/{self.config.resource.remote_dir}"

    def _migrate_resources(self, session: RemoteBash, home: str) -> None:
        """Unpack the resource package on a node unless it is already there."""
        resource = self._remote_resource(home)
        stdout, _ = session.run(f"ls -A {shlex.quote(resource)} 2>/dev/null || true")
        if stdout.strip():
            logger.debug(f"Resources already staged on {session.host.label}")
            return
        package = self.config.resource.package
        if not os.path.exists(package):
            raise LifecycleError(f"resource package {package} not found")
        remote_package = f"/tmp/{Path(package).name}"
        session.put(package, remote_package)
        session.run("tar", "-C", home, "-zxvf", remote_package)

    def _stage_node(self, cluster: Cluster, node: Node, stream: LogStream,
                    cancel: Optional[threading.Event]) -> None:
        """Resources, node init and components on one node."""
        self._check_cancel(cluster, "resource staging", cancel)
        session = self._node_session(cluster, node)
        home = session.home()
        self._migrate_resources(session, home)
        shell = f"{home}/{self.config.resource.shell_dir}"
        session.run_with_logging(f"bash {shell}/{NODE_INIT_SCRIPT}", node.name, sink=stream)
        self._check_cancel(cluster, "resource staging", cancel)
        session.run_with_logging(
            f"bash {shell}/{COMPONENT_SCRIPT}",
            self._remote_resource(home),
            image_repository(cluster, self.config),
            cluster.kubernetes_version or self.config.resource.kubernetes_version,
            sink=stream,
        )

    def _stage_nodes(self, cluster: Cluster, nodes: List[Node], stream: LogStream,
                     cancel: Optional[threading.Event]) -> None:
        """Stage every node concurrently; the first failure aborts the batch."""
        workers = max(1, min(self.config.ssh.max_workers, len(nodes)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(self._stage_node, cluster, n, stream, cancel): n for n in nodes}
            for future in as_completed(futures):
                node = futures[future]
                try:
                    future.result()
                except OceanError as e:
                    for pending in futures:
                        pending.cancel()
                    raise NodeOperationError(node.name, "resource staging", e) from e

    def install_cluster(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        """Bootstrap the nodes waiting for installation and initialise the cluster."""
        control_plane = cluster.first_master()
        if control_plane is None:
            raise ValidationError("no master node found")
        if not cluster.private_key:
            raise ValidationError(f"cluster {cluster.name} has no private key for node access")
        nodes = cluster.nodes_with_status(NodeStatus.CREATING)
        if not nodes:
            raise LifecycleError(f"cluster {cluster.name} has no node waiting for installation")

        with self._operation(cluster, "install", cancel) as stream:
            servers = servers_for_nodes(nodes)
            self.playbooks.run(cluster, PlaybookKind.SERVER_INIT, servers, stream=stream, cancel=cancel)
            self._stage_nodes(cluster, nodes, stream, cancel)
            self._check_cancel(cluster, "install", cancel)

            cluster_config = render_cluster_config(cluster, control_plane, self.config)
            self.playbooks.run(
                cluster,
                PlaybookKind.CLUSTER_INSTALL,
                servers,
                extravars={
                    "action": "init",
                    "control_plane": control_plane.name,
                    "cluster_config": cluster_config,
                },
                stream=stream,
                cancel=cancel,
            )
            for node in nodes:
                node.status = NodeStatus.RUNNING
            cluster.status = ClusterStatus.RUNNING
            self._save(cluster)

            self._apply_services(cluster, stream)
        return cluster

    def _access_session(self, cluster: Cluster) -> RemoteBash:
        """Session services are applied through.

        Cloud clusters are reached on the load-balancer address, never on a
        node's private IP; local clusters on the first master.
        """
        master = cluster.first_master()
        if master is None:
            raise ValidationError("no master node found")
        if cluster.type.is_cloud:
            if not cluster.load_balancer_address:
                raise ValidationError(f"cluster {cluster.name} has no load balancer address")
            return self._session(cluster, cluster.load_balancer_address, master.user, master.ssh_port, master.name)
        return self._node_session(cluster, master)

    def _apply_services(self, cluster: Cluster, stream: LogStream) -> None:
        session = self._access_session(cluster)
        home = session.home()
        stdout, _ = session.run("uname -m")
        arch = self.tables.to_arch(stdout)
        version = cluster.kubernetes_version or self.config.resource.kubernetes_version
        kubectl = f"{self._remote_resource(home)}/{arch.value}/kubernetes/{version}/kubectl"
        session.run("sudo install -m 755", kubectl, "/usr/local/bin/kubectl")
        manifest = f"{home}/{INSTALL_MANIFEST}"
        session.put_text(render_install_manifest(cluster), manifest)
        session.run_with_logging("kubectl apply -f", manifest, sink=stream)

    def apply_services(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> None:
        """Install kubectl and apply the in-cluster services manifest."""
        with self._operation(cluster, "apply services", cancel) as stream:
            self._check_cancel(cluster, "apply services", cancel)
            self._apply_services(cluster, stream)

    # Node changes

    def _join_node(self, cluster: Cluster, node: Node, control_plane: Node, stream: LogStream,
                   cancel: Optional[threading.Event]) -> None:
        servers = servers_for_nodes([node])
        self.playbooks.run(cluster, PlaybookKind.SERVER_INIT, servers, stream=stream, cancel=cancel)
        self._stage_node(cluster, node, stream, cancel)
        self.playbooks.run(
            cluster,
            PlaybookKind.CLUSTER_INSTALL,
            servers,
            extravars={
                "action": "join",
                "control_plane": control_plane.name,
                "cluster_config": render_cluster_config(cluster, control_plane, self.config),
            },
            limit=node.name,
            stream=stream,
            cancel=cancel,
        )
        node.status = NodeStatus.RUNNING

    def _remove_node(self, cluster: Cluster, node: Node, control_plane: Node, stream: LogStream,
                     cancel: Optional[threading.Event]) -> None:
        node.status = NodeStatus.DELETING
        self.playbooks.run(
            cluster,
            PlaybookKind.REMOVE_NODE,
            servers_for_nodes([control_plane, node]),
            extravars={"node_name": node.name, "control_plane": control_plane.name},
            envvars={"node": node.name},
            stream=stream,
            cancel=cancel,
        )
        cluster.nodes.remove(node)

    def _control_plane(self, cluster: Cluster, excluded: List[Node]) -> Node:
        names = {n.name for n in excluded}
        for node in cluster.masters():
            if node.name not in names and node.status == NodeStatus.RUNNING:
                return node
        raise ValidationError(f"cluster {cluster.name} has no running master outside the changed nodes")

    def _run_node_batch(self, cluster: Cluster, operation: str, batch, stream: LogStream,
                        cancel: Optional[threading.Event]) -> None:
        """Apply (node, action) pairs in order, stopping at the first failure."""
        try:
            for node, action in batch:
                self._check_cancel(cluster, operation, cancel)
                try:
                    action(node)
                except OceanError as e:
                    raise NodeOperationError(node.name, operation, e) from e
                stream.emit(f"{operation}: node {node.name} done\n")
        finally:
            self._save(cluster)

    def add_nodes(self, cluster: Cluster, nodes: List[Node], cancel: Optional[threading.Event] = None) -> Cluster:
        """Join ``nodes`` one at a time."""
        for node in nodes:
            if cluster.get_node(node.name) is None:
                node.cluster_id = cluster.id
                node.status = NodeStatus.CREATING
                cluster.nodes.append(node)
        control_plane = self._control_plane(cluster, nodes)
        with self._operation(cluster, "add nodes", cancel) as stream:
            if cluster.type.is_cloud:
                self._provider(cluster).start(cluster, stream, cancel)
            self._run_node_batch(
                cluster, "add node",
                [(n, lambda n: self._join_node(cluster, n, control_plane, stream, cancel)) for n in nodes],
                stream, cancel,
            )
        return cluster

    def remove_nodes(self, cluster: Cluster, nodes: List[Node], cancel: Optional[threading.Event] = None) -> Cluster:
        """Drain, reset and drop ``nodes`` one at a time, then release their machines."""
        members = []
        for node in nodes:
            member = cluster.get_node(node.name)
            if member is None:
                raise NodeOperationError(
                    node.name, "remove node", ValidationError(f"node {node.name} is not part of cluster {cluster.name}")
                )
            members.append(member)
        nodes = members
        control_plane = self._control_plane(cluster, nodes)
        with self._operation(cluster, "remove nodes", cancel) as stream:
            self._run_node_batch(
                cluster, "remove node",
                [(n, lambda n: self._remove_node(cluster, n, control_plane, stream, cancel)) for n in nodes],
                stream, cancel,
            )
            if cluster.type.is_cloud:
                self._provider(cluster).start(cluster, stream, cancel)
                self._save(cluster)
        return cluster

    def handler_nodes(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        """Act on every node marked creating or deleting, in declaration order."""
        pending = [n for n in cluster.nodes if n.status.actionable]
        if not pending:
            logger.info(f"No pending node changes for cluster {cluster.name}")
            return cluster
        control_plane = self._control_plane(cluster, pending)
        with self._operation(cluster, "handle nodes", cancel) as stream:
            if cluster.type.is_cloud and any(n.status == NodeStatus.CREATING for n in pending):
                self._provider(cluster).start(cluster, stream, cancel)

            def handle(node: Node) -> None:
                if node.status == NodeStatus.CREATING:
                    self._join_node(cluster, node, control_plane, stream, cancel)
                else:
                    self._remove_node(cluster, node, control_plane, stream, cancel)

            self._run_node_batch(cluster, "handle node", [(n, handle) for n in pending], stream, cancel)
            if cluster.type.is_cloud and any(n.status == NodeStatus.DELETING for n in pending):
                self._provider(cluster).start(cluster, stream, cancel)
                self._save(cluster)
        return cluster

    # Teardown

    def _reset_node(self, cluster: Cluster, node: Node, stream: LogStream,
                    cancel: Optional[threading.Event]) -> None:
        self.playbooks.run(cluster, PlaybookKind.RESET, servers_for_nodes([node]), stream=stream, cancel=cancel)
        node.status = NodeStatus.CREATING

    def uninstall_cluster(self, cluster: Cluster, cancel: Optional[threading.Event] = None) -> Cluster:
        """Reset every installed node in order; the first failure aborts."""
        nodes = [n for n in cluster.nodes if n.status != NodeStatus.UNSPECIFIED]
        with self._operation(cluster, "uninstall", cancel) as stream:
            cluster.status = ClusterStatus.STOPPING
            self._run_node_batch(
                cluster, "uninstall",
                [(n, lambda n: self._reset_node(cluster, n, stream, cancel)) for n in nodes],
                stream, cancel,
            )
            cluster.status = ClusterStatus.STOPPED
            self._save(cluster)
        return cluster
