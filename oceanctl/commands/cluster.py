"""``oceanctl cluster`` commands."""
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict

import typer
import yaml
from jsonschema import ValidationError as SchemaValidationError
from jsonschema import validate

from oceanctl.config import get_config, redact
from oceanctl.modules.errors import OceanError
from oceanctl.modules.lifecycle import ClusterLifecycle
from oceanctl.modules.models import Cluster, ClusterType, Node
from oceanctl.registry import get_registry

logger = logging.getLogger("oceanctl.commands.cluster")

app = typer.Typer(help="Manage cluster lifecycles")

NODE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "internal_ip": {"type": "string"},
        "external_ip": {"type": "string"},
        "user": {"type": "string"},
        "ssh_port": {"type": "integer", "minimum": 1, "maximum": 65535},
        "role": {"type": "string", "enum": ["master", "worker", "edge"]},
    },
    "required": ["name"],
}

CLUSTER_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "pattern": "^[A-Za-z0-9][A-Za-z0-9_.-]*$"},
        "type": {"type": "string", "enum": [t.value for t in ClusterType]},
        "region": {"type": "string"},
        "kubernetes_version": {"type": "string"},
        "image_repo": {"type": "string"},
        "access_id": {"type": "string"},
        "access_key": {"type": "string"},
        "public_key_file": {"type": "string"},
        "private_key_file": {"type": "string"},
        "nodes": {"type": "array", "items": NODE_SCHEMA},
    },
    "required": ["name", "type"],
}


def load_cluster_file(path: Path) -> Cluster:
    """Read and validate a cluster declaration."""
    with open(path) as f:
        data: Dict[str, Any] = yaml.safe_load(f) or {}
    try:
        validate(instance=data, schema=CLUSTER_SCHEMA)
    except SchemaValidationError as ve:
        raise typer.BadParameter(f"{path}: {ve.message}")

    cluster = Cluster(
        name=data["name"],
        type=ClusterType(data["type"]),
        region=data.get("region", ""),
        image_repo=data.get("image_repo", ""),
        access_id=data.get("access_id", ""),
        access_key=data.get("access_key", ""),
    )
    if data.get("kubernetes_version"):
        cluster.kubernetes_version = data["kubernetes_version"]
    for key in ("public_key", "private_key"):
        key_file = data.get(f"{key}_file")
        if key_file:
            setattr(cluster, key, Path(key_file).expanduser().read_text())
    for item in data.get("nodes", []):
        node = Node.from_dict(item)
        node.cluster_id = cluster.id
        if not node.address:
            node.internal_ip = node.name
        cluster.nodes.append(node)
    return cluster


def _services():
    settings = get_config()
    registry = get_registry(settings)
    return registry, ClusterLifecycle(settings, registry)


def _run(action: Callable[[], Any]) -> Any:
    try:
        return action()
    except OceanError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def _operation(name: str, method: str) -> None:
    registry, lifecycle = _services()

    def action():
        cluster = registry.get(name)
        getattr(lifecycle, method)(cluster)
        return cluster

    cluster = _run(action)
    typer.echo(f"Cluster {cluster.name}: {method.replace('_', ' ')} finished ({cluster.status.value})")


@app.command("generate")
def generate_cluster(
    file: Path = typer.Option(..., "--file", "-f", exists=True, readable=True, help="Cluster YAML declaration"),
):
    """Create a cluster from a declaration and discover or lay out its nodes."""
    registry, lifecycle = _services()
    cluster = load_cluster_file(file)
    if registry.exists(cluster.name):
        typer.echo(f"Error: cluster {cluster.name} already exists", err=True)
        raise typer.Exit(code=1)
    _run(lambda: lifecycle.generate_initial_cluster(cluster))
    for node in cluster.nodes:
        typer.echo(f"  {node.name:<24} {node.role.value:<8} {node.status.value}")
    typer.echo(f"Cluster {cluster.name} generated with {len(cluster.nodes)} node(s)")


@app.command("provision")
def provision_cluster(name: str = typer.Argument(..., help="Cluster name")):
    """Create the cluster's machines with its provider."""
    _operation(name, "provision")


@app.command("migrate")
def migrate_cluster(name: str = typer.Argument(..., help="Cluster name")):
    """Copy the workspace onto the bostion host."""
    _operation(name, "migrate_to_bostion_host")


@app.command("install")
def install_cluster(name: str = typer.Argument(..., help="Cluster name")):
    """Install Kubernetes on the nodes waiting for it."""
    _operation(name, "install_cluster")


@app.command("handle-nodes")
def handle_nodes(name: str = typer.Argument(..., help="Cluster name")):
    """Join creating nodes and remove deleting nodes."""
    _operation(name, "handler_nodes")


@app.command("uninstall")
def uninstall_cluster(
    name: str = typer.Argument(..., help="Cluster name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Reset Kubernetes on every node."""
    if not yes:
        typer.confirm(f"Uninstall Kubernetes from every node of {name}?", abort=True)
    _operation(name, "uninstall_cluster")


@app.command("destroy")
def destroy_cluster(
    name: str = typer.Argument(..., help="Cluster name"),
    purge: bool = typer.Option(False, help="Also remove the cluster from the registry"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Release the cluster's provider resources."""
    if not yes:
        typer.confirm(f"Destroy the machines of {name}?", abort=True)
    _operation(name, "delete_servers")
    if purge:
        registry, _ = _services()
        _run(lambda: registry.delete(name))
        typer.echo(f"Cluster {name} removed from the registry")


@app.command("show")
def show_cluster(name: str = typer.Argument(..., help="Cluster name")):
    """Print the stored cluster with credentials masked."""
    registry, _ = _services()
    cluster = _run(lambda: registry.get(name))
    data = redact(cluster.to_dict())
    data.pop("logs", None)
    typer.echo(json.dumps(data, indent=2))


@app.command("logs")
def cluster_logs(name: str = typer.Argument(..., help="Cluster name")):
    """Print the accumulated operation logs."""
    registry, _ = _services()
    cluster = _run(lambda: registry.get(name))
    typer.echo(cluster.logs, nl=False)
