from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from oceanctl.api.deps import get_cluster_registry, get_lifecycle
from oceanctl.config import redact
from oceanctl.modules.models import Cluster, ClusterType, Node, NodeRole
from oceanctl.registry import ClusterRegistry

router = APIRouter(prefix="/clusters", tags=["clusters"])

OPERATIONS = {
    "generate": "generate_initial_cluster",
    "provision": "provision",
    "import": "import_cluster",
    "migrate": "migrate_to_bostion_host",
    "install": "install_cluster",
    "apply-services": "apply_services",
    "handle-nodes": "handler_nodes",
    "uninstall": "uninstall_cluster",
    "destroy": "delete_servers",
}


class NodeRequest(BaseModel):
    name: str
    internal_ip: str = ""
    external_ip: str = ""
    user: str = "root"
    ssh_port: int = 22
    role: NodeRole = NodeRole.WORKER


class ClusterRequest(BaseModel):
    name: str
    type: ClusterType = ClusterType.LOCAL
    region: str = ""
    kubernetes_version: Optional[str] = None
    image_repo: str = ""
    access_id: str = ""
    access_key: str = ""
    public_key: str = ""
    private_key: str = ""
    nodes: List[NodeRequest] = []


def _view(cluster: Cluster) -> dict:
    data = redact(cluster.to_dict())
    data.pop("logs", None)
    return data


@router.get("")
def list_clusters(registry: ClusterRegistry = Depends(get_cluster_registry)):
    return [
        {"name": c.name, "type": c.type.value, "status": c.status.value, "nodes": len(c.nodes)}
        for c in registry.list()
    ]


@router.post("", status_code=201)
def create_cluster(req: ClusterRequest, registry: ClusterRegistry = Depends(get_cluster_registry)):
    if registry.exists(req.name):
        raise HTTPException(status_code=409, detail=f"cluster {req.name} already exists")
    cluster = Cluster(
        name=req.name,
        type=req.type,
        region=req.region,
        image_repo=req.image_repo,
        access_id=req.access_id,
        access_key=req.access_key,
        public_key=req.public_key,
        private_key=req.private_key,
    )
    if req.kubernetes_version:
        cluster.kubernetes_version = req.kubernetes_version
    for item in req.nodes:
        cluster.nodes.append(Node(
            name=item.name,
            cluster_id=cluster.id,
            internal_ip=item.internal_ip or item.name,
            external_ip=item.external_ip,
            user=item.user,
            ssh_port=item.ssh_port,
            role=item.role,
        ))
    registry.save(cluster)
    return _view(cluster)


@router.get("/{name}")
def get_cluster(name: str, registry: ClusterRegistry = Depends(get_cluster_registry)):
    return _view(registry.get(name))


@router.delete("/{name}", status_code=204)
def delete_cluster(name: str, registry: ClusterRegistry = Depends(get_cluster_registry)):
    registry.delete(name)


@router.get("/{name}/logs")
def poll_logs(name: str, offset: int = 0, registry: ClusterRegistry = Depends(get_cluster_registry)):
    """Log text appended since ``offset``; pass the returned offset back on the next poll."""
    logs = registry.get(name).logs
    offset = min(max(offset, 0), len(logs))
    return {"logs": logs[offset:], "offset": len(logs)}


@router.post("/{name}/{operation}", status_code=202)
def run_operation(
    name: str,
    operation: str,
    background_tasks: BackgroundTasks,
    registry: ClusterRegistry = Depends(get_cluster_registry),
    lifecycle=Depends(get_lifecycle),
):
    method = OPERATIONS.get(operation)
    if method is None:
        raise HTTPException(status_code=404, detail=f"unknown operation {operation}")
    cluster = registry.get(name)
    background_tasks.add_task(getattr(lifecycle, method), cluster)
    return {"cluster": name, "operation": operation, "status": "accepted"}
