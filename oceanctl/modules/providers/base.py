"""
Provider capability interface and the shared Pulumi stack handling.
"""
import logging
import os
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pulumi import automation as auto

from ..errors import ConfigurationError, ProviderError
from ..models import BostionHost, Cluster
from .catalog import ProviderTables

logger = logging.getLogger("oceanctl.providers")

Sink = Optional[Callable[[str], None]]


class StackLocks:
    """One lock per (provider, stack) so runs never share a state file."""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, provider: str, stack: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault((provider, stack), threading.Lock())

    @contextmanager
    def hold(self, provider: str, stack: str) -> Iterator[None]:
        lock = self.get(provider, stack)
        if not lock.acquire(blocking=False):
            logger.info(f"Waiting for stack {provider}/{stack} held by another run")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()


stack_locks = StackLocks()


def stack_lock(provider: str, stack: str) -> threading.Lock:
    return stack_locks.get(provider, stack)


def _node_key(name: str, field_name: str) -> str:
    return f"node-{name}-{field_name}"


def apply_outputs(cluster: Cluster, outputs: Dict[str, Any]) -> None:
    """Fold a provider output map back into the aggregate."""
    for node in cluster.nodes:
        node.instance_id = str(outputs.get(_node_key(node.name, 'id'), node.instance_id) or '')
        node.internal_ip = str(outputs.get(_node_key(node.name, 'internal-ip'), node.internal_ip) or '')
        node.external_ip = str(outputs.get(_node_key(node.name, 'public-ip'), node.external_ip) or '')
        node.user = str(outputs.get(_node_key(node.name, 'user'), node.user) or node.user)
        node.zone = str(outputs.get(_node_key(node.name, 'zone'), node.zone) or '')
        node.subnet_id = str(outputs.get(_node_key(node.name, 'subnet-id'), node.subnet_id) or '')

    for group in cluster.node_groups:
        instance_type = outputs.get(f"cloud-nodegroup-instance-type-{group.name}")
        if instance_type:
            group.instance_type = str(instance_type)
        image = outputs.get(f"cloud-nodegroup-image-{group.name}")
        if image:
            group.image = str(image)

    if outputs.get('vpc-id'):
        cluster.vpc_id = str(outputs['vpc-id'])
    security_groups = outputs.get('security-group-ids')
    if security_groups:
        if isinstance(security_groups, str):
            security_groups = [s for s in security_groups.split(',') if s]
        cluster.security_group_ids = [str(s) for s in security_groups]
    if outputs.get('load-balancer-id'):
        cluster.load_balancer_id = str(outputs['load-balancer-id'])
    if outputs.get('load-balancer-address'):
        cluster.load_balancer_address = str(outputs['load-balancer-address'])

    bostion_id = outputs.get('bostion-host-instance-id')
    if bostion_id:
        if cluster.bostion_host is None:
            cluster.bostion_host = BostionHost()
        bostion = cluster.bostion_host
        bostion.instance_id = str(bostion_id)
        for node in cluster.nodes:
            if node.instance_id == bostion.instance_id:
                bostion.hostname = node.name
                bostion.external_ip = node.external_ip
                bostion.internal_ip = node.internal_ip
                bostion.user = node.user
                bostion.ssh_port = node.ssh_port
                break


class Provider(ABC):
    """Capability interface every provisioner variant implements."""

    name: str = ''

    def __init__(self, settings, tables: Optional[ProviderTables] = None):
        self.settings = settings
        self.tables = tables or ProviderTables()

    def validate(self, cluster: Cluster) -> None:
        """Check the cluster can be handled before any remote call."""
        pass

    @abstractmethod
    def start(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        """Converge provider resources to the declared cluster."""

    @abstractmethod
    def stop(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        """Tear down the cluster's provider resources."""

    @abstractmethod
    def get(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        """Reconcile the declared cluster from provider-observed state."""


class PulumiStack:
    """Inline-program stack on a local file backend."""

    def __init__(
        self,
        settings,
        project_name: str,
        stack_name: str,
        program: Callable[[], None],
        env_vars: Dict[str, str],
        plugins: List[Tuple[str, str]],
        config: Optional[Dict[str, str]] = None,
    ):
        self.settings = settings
        self.project_name = project_name
        self.stack_name = stack_name
        self.program = program
        self.env_vars = env_vars
        self.plugins = plugins
        self.config = config or {}

    @property
    def work_dir(self) -> Path:
        return Path(self.settings.resource.workspace) / "pulumi" / self.project_name

    def _select(self) -> auto.Stack:
        state_dir = Path(self.settings.pulumi.home) / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        env = dict(self.env_vars)
        env["PULUMI_CONFIG_PASSPHRASE"] = self.settings.pulumi.passphrase or os.getenv("PULUMI_CONFIG_PASSPHRASE", "")
        stack = auto.create_or_select_stack(
            stack_name=self.stack_name,
            project_name=self.project_name,
            program=self.program,
            opts=auto.LocalWorkspaceOptions(
                work_dir=str(self.work_dir),
                pulumi_home=self.settings.pulumi.home,
                env_vars=env,
                secrets_provider="passphrase",
                project_settings=auto.ProjectSettings(
                    name=self.project_name,
                    runtime="python",
                    backend=auto.ProjectBackend(url=f"file://{state_dir}"),
                ),
            ),
        )
        for plugin, version in self.plugins:
            stack.workspace.install_plugin(plugin, version)
        for key, value in self.config.items():
            stack.set_config(key, auto.ConfigValue(value=value))
        return stack

    @staticmethod
    def _output_sink(stream: Sink) -> Callable[[str], None]:
        def on_output(line: str) -> None:
            if stream:
                stream(line if line.endswith("\n") else line + "\n")
        return on_output

    @staticmethod
    def _values(outputs: Dict[str, Any]) -> Dict[str, Any]:
        return {k: getattr(v, "value", v) for k, v in outputs.items()}

    def up(self, stream: Sink = None) -> Dict[str, Any]:
        try:
            stack = self._select()
            result = stack.up(on_output=self._output_sink(stream))
        except auto.CommandError as e:
            raise ProviderError(f"stack {self.stack_name} update failed: {e}") from e
        return self._values(result.outputs)

    def destroy(self, stream: Sink = None) -> None:
        try:
            stack = self._select()
            stack.destroy(on_output=self._output_sink(stream))
        except auto.CommandError as e:
            raise ProviderError(f"stack {self.stack_name} destroy failed: {e}") from e

    def refresh(self, stream: Sink = None) -> Dict[str, Any]:
        try:
            stack = self._select()
            stack.refresh(on_output=self._output_sink(stream))
            return self._values(stack.outputs())
        except auto.CommandError as e:
            raise ProviderError(f"stack {self.stack_name} refresh failed: {e}") from e


class CloudProvider(Provider):
    """Shared flow of the infrastructure-as-code backed providers."""

    plugins: List[Tuple[str, str]] = []

    def project_name(self) -> str:
        return f"ocean-{self.name}-project"

    def stack_name(self, cluster: Cluster) -> str:
        return f"{cluster.name}-{self.name}-stack"

    def validate(self, cluster: Cluster) -> None:
        missing = [
            label for label, value in (
                ("access id", cluster.access_id),
                ("access key", cluster.access_key),
                ("region", cluster.region),
            ) if not value
        ]
        if missing:
            raise ConfigurationError(
                f"cluster {cluster.name} on {self.name} is missing {', '.join(missing)}"
            )
        if not cluster.public_key:
            raise ConfigurationError(f"cluster {cluster.name} has no public key for node access")

    @abstractmethod
    def credentials_env(self, cluster: Cluster) -> Dict[str, str]:
        """Provider-SDK environment for this cluster's credentials."""

    def stack_config(self, cluster: Cluster) -> Dict[str, str]:
        return {}

    @abstractmethod
    def program(self, cluster: Cluster) -> Callable[[], None]:
        """Inline Pulumi program building the cluster's resources."""

    def _stack(self, cluster: Cluster) -> PulumiStack:
        return PulumiStack(
            self.settings,
            project_name=self.project_name(),
            stack_name=self.stack_name(cluster),
            program=self.program(cluster),
            env_vars=self.credentials_env(cluster),
            plugins=self.plugins,
            config=self.stack_config(cluster),
        )

    def _check_cancel(self, cluster: Cluster, cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise ProviderError(f"provisioning of cluster {cluster.name} was cancelled")

    def start(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        self.validate(cluster)
        stack = self._stack(cluster)
        with stack_locks.hold(self.name, stack.stack_name):
            self._check_cancel(cluster, cancel)
            logger.info(f"Converging {self.name} resources for cluster {cluster.name}")
            outputs = stack.up(stream)
        apply_outputs(cluster, outputs)

    def stop(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        self.validate(cluster)
        stack = self._stack(cluster)
        with stack_locks.hold(self.name, stack.stack_name):
            self._check_cancel(cluster, cancel)
            logger.info(f"Destroying {self.name} resources for cluster {cluster.name}")
            stack.destroy(stream)

    def get(self, cluster: Cluster, stream: Sink = None, cancel: Optional[threading.Event] = None) -> None:
        self.validate(cluster)
        stack = self._stack(cluster)
        with stack_locks.hold(self.name, stack.stack_name):
            self._check_cancel(cluster, cancel)
            outputs = stack.refresh(stream)
        apply_outputs(cluster, outputs)
