from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from oceanctl.api.deps import get_cluster_registry, get_runtime
from oceanctl.modules.autoscaler import AutoscalerAdapter
from oceanctl.modules.models import Node, NodeGroup

router = APIRouter(prefix="/autoscaler/{cluster}", tags=["autoscaler"])


def get_adapter(cluster: str, registry=Depends(get_cluster_registry), runtime=Depends(get_runtime)) -> AutoscalerAdapter:
    return AutoscalerAdapter(registry, runtime, cluster)


class NodeRequest(BaseModel):
    node_name: str


class PriceRequest(BaseModel):
    node_name: str
    start_time: datetime
    end_time: datetime


class GroupRequest(BaseModel):
    id: str


class IncreaseRequest(BaseModel):
    id: str
    delta: int
    request_id: Optional[str] = None


class DecreaseRequest(BaseModel):
    id: str
    delta: int


class DeleteNodesRequest(BaseModel):
    id: str
    nodes: List[str]


class OptionsRequest(BaseModel):
    id: str
    defaults: Dict[str, Any] = {}


def _group(group: Optional[NodeGroup]) -> Dict[str, Any]:
    if group is None:
        return {"id": "", "min_size": 0, "max_size": 0}
    return {"id": group.id, "name": group.name, "min_size": group.min_size, "max_size": group.max_size}


def _nodes(nodes: List[Node]) -> List[Dict[str, Any]]:
    return [n.to_dict() for n in nodes]


@router.post("/node-groups")
def node_groups(adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"node_groups": [_group(g) for g in adapter.node_groups()]}


@router.post("/node-group-for-node")
def node_group_for_node(req: NodeRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"node_group": _group(adapter.node_group_for_node(req.node_name))}


@router.post("/pricing-node-price")
def pricing_node_price(req: PriceRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"price": adapter.pricing_node_price(req.node_name, req.start_time, req.end_time)}


@router.post("/pricing-pod-price")
def pricing_pod_price(req: PriceRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"price": adapter.pricing_pod_price(req.node_name, req.start_time, req.end_time)}


@router.post("/gpu-label")
def gpu_label(adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"label": adapter.gpu_label()}


@router.post("/available-gpu-types")
def available_gpu_types(adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"gpu_types": adapter.get_available_gpu_types()}


@router.post("/cleanup")
def cleanup(adapter: AutoscalerAdapter = Depends(get_adapter)):
    adapter.cleanup()
    return {}


@router.post("/refresh")
def refresh(adapter: AutoscalerAdapter = Depends(get_adapter)):
    adapter.refresh()
    return {}


@router.post("/node-group-target-size")
def node_group_target_size(req: GroupRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"target_size": adapter.node_group_target_size(req.id)}


@router.post("/node-group-increase-size")
def node_group_increase_size(req: IncreaseRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"nodes": _nodes(adapter.node_group_increase_size(req.id, req.delta, req.request_id))}


@router.post("/node-group-delete-nodes")
def node_group_delete_nodes(req: DeleteNodesRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    adapter.node_group_delete_nodes(req.id, req.nodes)
    return {}


@router.post("/node-group-decrease-target-size")
def node_group_decrease_target_size(req: DecreaseRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"target_size": adapter.node_group_decrease_target_size(req.id, req.delta)}


@router.post("/node-group-nodes")
def node_group_nodes(req: GroupRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"instances": [{"id": n.instance_id or n.id, "name": n.name, "status": n.status.value}
                          for n in adapter.node_group_nodes(req.id)]}


@router.post("/node-group-template-node-info")
def node_group_template_node_info(req: GroupRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"node": adapter.node_group_template_node_info(req.id).to_dict()}


@router.post("/node-group-get-options")
def node_group_get_options(req: OptionsRequest, adapter: AutoscalerAdapter = Depends(get_adapter)):
    return {"options": adapter.node_group_get_options(req.id, req.defaults)}
