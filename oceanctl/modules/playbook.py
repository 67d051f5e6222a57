"""Playbook orchestration with ansible-runner.

Each run gets its own private data directory holding the rendered
playbook, an inventory grouping hosts by role and the cluster's private key.
The engine is invoked once for the whole host set; every event's output is
forwarded into the operation's log stream.
"""

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import ansible_runner
import yaml
from ansible_runner.exceptions import AnsibleRunnerException

from .errors import PlaybookError, ValidationError
from .models import Cluster, Node, NodeRole

logger = logging.getLogger("oceanctl.playbook")

PROBE_TASK = "collect system information"
REMOTE_RESOURCE = "{{ ansible_env.HOME }}/resource"
REMOTE_SHELL = REMOTE_RESOURCE + "/shell"

ROLE_GROUPS = {
    NodeRole.MASTER.value: ["kube_control_plane", "etcd"],
    NodeRole.WORKER.value: ["kube_node"],
    NodeRole.EDGE.value: ["kube_node"],
    "bostion": ["bostion"],
}


class PlaybookKind(str, Enum):
    """Purposes a playbook run can serve."""
    SYSTEM_PROBE = 'system_probe'
    SERVER_INIT = 'server_init'
    MIGRATE = 'migrate'
    CLUSTER_INSTALL = 'cluster_install'
    REMOVE_NODE = 'remove_node'
    RESET = 'reset'


@dataclass
class Server:
    """One inventory entry."""
    id: str
    ip: str
    user: str
    role: str
    name: str = ''
    port: int = 22

    @property
    def hostname(self) -> str:
        return self.name or self.ip


@dataclass
class PlaybookResult:
    status: str
    rc: int
    host_results: Dict[str, Any] = field(default_factory=dict)
    failed_hosts: List[str] = field(default_factory=list)

    @property
    def successful(self) -> bool:
        return self.status == 'successful'


def servers_for_nodes(nodes: Iterable[Node]) -> List[Server]:
    return [
        Server(id=n.id, ip=n.address, user=n.user, role=n.role.value, name=n.name, port=n.ssh_port)
        for n in nodes
    ]


def server_for_bostion(cluster: Cluster) -> Server:
    """Inventory entry for the bastion host, reached as its own login user."""
    bostion = cluster.bostion_host
    if bostion is None:
        raise ValidationError("bostion host is not defined")
    if not bostion.user:
        raise ValidationError("bostion host username is empty")
    if not bostion.external_ip:
        raise ValidationError("bostion host external ip is empty")
    return Server(
        id=bostion.instance_id,
        ip=bostion.external_ip,
        user=bostion.user,
        role='bostion',
        name='bostion',
        port=bostion.ssh_port or 22,
    )


def build_inventory(
    servers: List[Server],
    key_file: Optional[str] = None,
    ssh_common_args: str = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null",
) -> Dict[str, Any]:
    """Build an inventory with hosts grouped by role."""
    hosts: Dict[str, Dict[str, Any]] = {}
    children: Dict[str, Dict[str, Any]] = {}
    for server in servers:
        if not server.ip:
            raise ValidationError(f"server {server.hostname} has no address")
        hosts[server.hostname] = {
            "ansible_host": server.ip,
            "ansible_user": server.user,
            "ansible_port": server.port,
            "node_id": server.id,
            "node_role": server.role,
        }
        for group in ROLE_GROUPS.get(server.role, [server.role]):
            children.setdefault(group, {"hosts": {}})["hosts"][server.hostname] = {}

    all_vars: Dict[str, Any] = {"ansible_ssh_common_args": ssh_common_args}
    if key_file:
        all_vars["ansible_ssh_private_key_file"] = key_file
    return {"all": {"hosts": hosts, "children": children, "vars": all_vars}}


def system_probe_playbook() -> List[Dict[str, Any]]:
    script = r"""
set -e
os_name=$(. /etc/os-release && echo "${ID}-${VERSION_ID}")
arch=$(uname -m)
cpu=$(nproc)
mem=$(awk '/MemTotal/ {printf "%d", ($2/1048576)+0.5}' /proc/meminfo)
gpu=0
gpu_info=""
if command -v nvidia-smi >/dev/null 2>&1; then
  gpu=$(nvidia-smi -L | wc -l)
  gpu_info=$(nvidia-smi --query-gpu=name --format=csv,noheader | head -n1)
fi
disk=$(df -BG --output=size / | tail -1 | tr -dc '0-9')
ip=$(hostname -I | awk '{print $1}')
id=$(cat /etc/machine-id 2>/dev/null || hostname)
kernel=$(uname -r)
printf '{"id":"%s","os":"%s","arch":"%s","cpu":"%s","mem":"%s","gpu":"%s","gpu_info":"%s","disk":"%s","ip":"%s","kernel":"%s"}' \
  "$id" "$os_name" "$arch" "$cpu" "$mem" "$gpu" "$gpu_info" "$disk" "$ip" "$kernel"
"""
    return [{
        "name": "system probe",
        "hosts": "all",
        "gather_facts": False,
        "tasks": [{
            "name": PROBE_TASK,
            "shell": script,
            "args": {"executable": "/bin/bash"},
            "changed_when": False,
        }],
    }]


def server_init_playbook() -> List[Dict[str, Any]]:
    return [{
        "name": "server init",
        "hosts": "all",
        "become": True,
        "tasks": [
            {"name": "disable swap", "shell": "swapoff -a && sed -ri '/\\sswap\\s/s/^#?/#/' /etc/fstab"},
            {
                "name": "load kernel modules",
                "community.general.modprobe": {"name": "{{ item }}", "state": "present"},
                "loop": ["overlay", "br_netfilter"],
            },
            {
                "name": "persist kernel modules",
                "copy": {"dest": "/etc/modules-load.d/k8s.conf", "content": "overlay\nbr_netfilter\n"},
            },
            {
                "name": "set kernel parameters",
                "ansible.posix.sysctl": {
                    "name": "{{ item }}",
                    "value": "1",
                    "sysctl_file": "/etc/sysctl.d/99-kubernetes.conf",
                    "reload": True,
                },
                "loop": [
                    "net.bridge.bridge-nf-call-iptables",
                    "net.bridge.bridge-nf-call-ip6tables",
                    "net.ipv4.ip_forward",
                ],
            },
            {"name": "enable time sync", "shell": "timedatectl set-ntp true", "ignore_errors": True},
        ],
    }]


def migrate_playbook(paths: Dict[str, str]) -> List[Dict[str, Any]]:
    """Synchronize each local path onto the same path on the bastion."""
    tasks = []
    for name, path in paths.items():
        tasks.append({
            "name": f"create {name} parent directory",
            "file": {"path": os.path.dirname(path.rstrip("/")) or "/", "state": "directory", "mode": "0755"},
        })
        tasks.append({
            "name": f"synchronize {name}",
            "ansible.posix.synchronize": {"src": path, "dest": path, "mode": "push", "archive": True},
        })
    return [{"name": "migrate to bostion host", "hosts": "bostion", "become": True, "tasks": tasks}]


def cluster_install_playbook() -> List[Dict[str, Any]]:
    """Installer invocation for init and join.

    ``action`` is ``init`` or ``join``; ``control_plane`` names the host the
    cluster is initialised on. Tasks run host-by-host in order, so the init
    task completes before any join starts.
    """
    config = "{{ ansible_env.HOME }}/cluster-config.yaml"
    return [{
        "name": "cluster install",
        "hosts": "all",
        "become": True,
        "tasks": [
            {
                "name": "write cluster configuration",
                "copy": {"dest": config, "content": "{{ cluster_config }}", "mode": "0600"},
            },
            {
                "name": "initialise control plane",
                "shell": f"bash {REMOTE_SHELL}/clusterinstall.sh init {config}",
                "when": "action == 'init' and inventory_hostname == control_plane",
            },
            {
                "name": "join control plane",
                "shell": f"bash {REMOTE_SHELL}/clusterinstall.sh join {config} controller",
                "when": "inventory_hostname != control_plane and 'kube_control_plane' in group_names",
            },
            {
                "name": "join worker",
                "shell": f"bash {REMOTE_SHELL}/clusterinstall.sh join {config}",
                "when": "'kube_node' in group_names",
            },
        ],
    }]


def _reset_tasks() -> List[Dict[str, Any]]:
    return [
        {"name": "kubeadm reset", "shell": "kubeadm reset --force"},
        {"name": "remove configuration", "shell": "rm -rf $HOME/.kube /etc/kubernetes /etc/cni"},
    ]


def remove_node_playbook() -> List[Dict[str, Any]]:
    node = "{{ node_name }}"
    return [
        {
            "name": "drain node",
            "hosts": "{{ control_plane }}",
            "become": True,
            "gather_facts": False,
            "tasks": [
                {
                    "name": "drain",
                    "shell": f"kubectl drain {node} --ignore-daemonsets --delete-emptydir-data --force --timeout=300s",
                    "ignore_errors": True,
                },
                {"name": "delete node", "shell": f"kubectl delete node {node} --ignore-not-found"},
            ],
        },
        {
            "name": "reset node",
            "hosts": node,
            "become": True,
            "gather_facts": False,
            "tasks": _reset_tasks(),
        },
    ]


def reset_playbook() -> List[Dict[str, Any]]:
    return [{
        "name": "reset nodes",
        "hosts": "all",
        "become": True,
        "gather_facts": False,
        "tasks": _reset_tasks() + [
            {
                "name": "stop and disable {{ item }}",
                "systemd": {"name": "{{ item }}", "state": "stopped", "enabled": False},
                "loop": ["containerd", "kubelet"],
                "ignore_errors": True,
            },
            {"name": "remove runtime state", "shell": "rm -rf /var/lib/containerd /var/lib/kubelet"},
        ],
    }]


PLAYBOOK_BUILDERS: Dict[PlaybookKind, Callable[..., List[Dict[str, Any]]]] = {
    PlaybookKind.SYSTEM_PROBE: system_probe_playbook,
    PlaybookKind.SERVER_INIT: server_init_playbook,
    PlaybookKind.MIGRATE: migrate_playbook,
    PlaybookKind.CLUSTER_INSTALL: cluster_install_playbook,
    PlaybookKind.REMOVE_NODE: remove_node_playbook,
    PlaybookKind.RESET: reset_playbook,
}


def runtime_settings(ansible_config, run_dir: Path) -> Dict[str, str]:
    """Environment carrying the engine runtime settings for one run."""
    return {
        "ANSIBLE_HOST_KEY_CHECKING": "False",
        "ANSIBLE_FORKS": str(ansible_config.forks),
        "ANSIBLE_TIMEOUT": str(ansible_config.connection_timeout),
        "ANSIBLE_GATHERING": "smart",
        "ANSIBLE_CACHE_PLUGIN": ansible_config.fact_caching,
        "ANSIBLE_CACHE_PLUGIN_CONNECTION": str(run_dir.parent / "facts"),
        "ANSIBLE_CACHE_PLUGIN_TIMEOUT": str(ansible_config.fact_caching_timeout),
        "ANSIBLE_RETRY_FILES_ENABLED": "False",
        "ANSIBLE_FORCE_COLOR": "False",
    }


class PlaybookRunner:
    """Runs one playbook kind against a host set."""

    def __init__(self, settings, runs_dir: Optional[Path] = None):
        self.settings = settings
        self.runs_dir = Path(runs_dir or settings.resource.runs_dir)

    def run(
        self,
        cluster: Cluster,
        kind: PlaybookKind,
        servers: List[Server],
        extravars: Optional[Dict[str, Any]] = None,
        envvars: Optional[Dict[str, str]] = None,
        limit: Optional[str] = None,
        stream: Optional[Callable[[str], None]] = None,
        cancel: Optional[threading.Event] = None,
        fatal: bool = True,
        playbook_args: Optional[Dict[str, Any]] = None,
        forks: Optional[int] = None,
    ) -> PlaybookResult:
        """Run ``kind`` once across ``servers``.

        Args:
            cluster: Cluster whose private key authenticates the sessions
            kind: Which playbook to run
            servers: Inventory entries
            extravars: Extra variables for the playbook
            envvars: Extra environment for the engine process
            limit: Restrict the run to a host pattern
            stream: Sink receiving the engine output
            cancel: Event aborting the run when set
            fatal: Raise PlaybookError unless the run is successful
            playbook_args: Keyword arguments for the playbook builder
            forks: Upper bound on concurrent hosts for this run

        Returns:
            PlaybookResult with per-host task results and failed hosts

        Raises:
            PlaybookError: If the run fails and ``fatal`` is set
            ValidationError: If there is nothing to run against
        """
        if not servers:
            raise ValidationError(f"no servers to run {kind.value} against")

        run_dir = self.runs_dir / cluster.name / f"{kind.value}-{int(time.time())}-{uuid.uuid4().hex[:8]}"
        project_dir = run_dir / "project"
        project_dir.mkdir(parents=True, exist_ok=True)

        playbook = PLAYBOOK_BUILDERS[kind](**(playbook_args or {}))
        playbook_file = project_dir / f"{kind.value}.yml"
        with open(playbook_file, "w") as f:
            yaml.safe_dump(playbook, f, default_flow_style=False, sort_keys=False)

        key_file = None
        if cluster.private_key:
            key_file = run_dir / "id_cluster"
            key_file.write_text(cluster.private_key if cluster.private_key.endswith("\n") else cluster.private_key + "\n")
            os.chmod(key_file, 0o600)

        inventory = build_inventory(servers, str(key_file) if key_file else None)
        forks = min(forks, self.settings.ansible.forks) if forks else self.settings.ansible.forks
        env = runtime_settings(self.settings.ansible, run_dir)
        env["ANSIBLE_FORKS"] = str(forks)
        env.update(envvars or {})

        host_results: Dict[str, Any] = {}
        failed_hosts: List[str] = []

        def event_handler(event: Dict[str, Any]) -> bool:
            text = event.get("stdout")
            if text and stream:
                stream(text + "\n")
            data = event.get("event_data") or {}
            host = data.get("host")
            if event.get("event") == "runner_on_ok" and host:
                host_results[host] = (data.get("res") or {})
            elif event.get("event") in ("runner_on_failed", "runner_on_unreachable") and host:
                if not data.get("ignore_errors") and host not in failed_hosts:
                    failed_hosts.append(host)
            return True

        cancel = cancel or threading.Event()
        logger.info(f"Running playbook {kind.value} on {len(servers)} host(s) for cluster {cluster.name}")
        try:
            runner = ansible_runner.run(
                private_data_dir=str(run_dir),
                playbook=playbook_file.name,
                inventory=inventory,
                extravars=extravars or {},
                envvars=env,
                limit=limit,
                forks=forks,
                timeout=self.settings.ansible.timeout,
                binary=self.settings.ansible.binary,
                event_handler=event_handler,
                cancel_callback=cancel.is_set,
                quiet=True,
            )
        except (AnsibleRunnerException, OSError) as e:
            raise PlaybookError(kind.value, f"engine error for cluster {cluster.name}: {e}") from e
        finally:
            if key_file is not None and key_file.exists():
                key_file.unlink()

        result = PlaybookResult(
            status=runner.status,
            rc=runner.rc,
            host_results=host_results,
            failed_hosts=failed_hosts,
        )
        if not result.successful:
            message = f"status {runner.status} (rc={runner.rc})"
            if failed_hosts:
                message += f", failed hosts: {', '.join(failed_hosts)}"
            if fatal:
                raise PlaybookError(kind.value, message, status=runner.status, rc=runner.rc)
            logger.warning(f"Playbook {kind.value} finished with {message}")
        return result


def parse_probe_output(result: PlaybookResult) -> Dict[str, Dict[str, str]]:
    """Decode per-host JSON printed by the system probe."""
    facts: Dict[str, Dict[str, str]] = {}
    for host, res in result.host_results.items():
        stdout = (res or {}).get("stdout", "")
        if not stdout:
            continue
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            logger.error(f"Host {host} returned invalid system information")
            continue
        facts[host] = {k: str(v) for k, v in data.items()}
    return facts
