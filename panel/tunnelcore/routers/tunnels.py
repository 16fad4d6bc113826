"""Tunnels API endpoints"""
from fastapi import APIRouter, HTTPException, Request
from typing import Any, Dict, List
from pydantic import BaseModel
import logging


router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "unknown_engine": 400,
    "invalid_port": 400,
    "reserved_port": 400,
    "invalid_options": 400,
    "node_not_found": 404,
    "tunnel_not_found": 404,
    "not_found": 404,
    "port_in_use": 409,
    "port_conflict": 409,
    "already_running": 409,
}


class TunnelCreate(BaseModel):
    engine: str
    near_node_id: str
    far_node_id: str | None = None
    port: int | None = None
    transport: str = "tcp"
    config: Dict[str, Any] = {}


class DeployConfigRequest(BaseModel):
    engine: str
    options: Dict[str, Any] = {}


class AutoSetupRequest(BaseModel):
    near_node_id: str
    far_node_id: str


def raise_for_result(result: Dict[str, Any]) -> Dict[str, Any]:
    """Map a failed validation result to an HTTP error, pass others through"""
    if result.get("success") is False and result.get("code") in ERROR_STATUS:
        raise HTTPException(status_code=ERROR_STATUS[result["code"]], detail=result)
    return result


@router.post("")
async def create_tunnel(tunnel: TunnelCreate, request: Request):
    """Create a tunnel and start its engine"""
    logger.info(
        f"Creating tunnel: engine={tunnel.engine}, near={tunnel.near_node_id}, "
        f"far={tunnel.far_node_id}, port={tunnel.port}, transport={tunnel.transport}"
    )
    manager = request.app.state.tunnel_manager
    result = await manager.create_tunnel(
        engine=tunnel.engine,
        near_node_id=tunnel.near_node_id,
        far_node_id=tunnel.far_node_id,
        port=tunnel.port,
        transport=tunnel.transport,
        config=tunnel.config,
    )
    return raise_for_result(result)


@router.get("")
async def list_tunnels(request: Request, node_id: str | None = None) -> List[Dict[str, Any]]:
    """List all tunnels, best score first"""
    return await request.app.state.tunnel_manager.list_tunnels(node_id=node_id)


@router.get("/engines")
async def list_engines(request: Request):
    return request.app.state.tunnel_manager.get_engines()


@router.get("/health")
async def health_check_all(request: Request):
    return await request.app.state.tunnel_manager.health_check_all()


@router.get("/stats")
async def tunnel_stats(request: Request):
    return await request.app.state.tunnel_manager.get_stats()


@router.get("/deployment-plan")
async def deployment_plan(near_node_id: str, far_node_id: str, request: Request):
    """Deploy configs for a relay pair"""
    result = await request.app.state.tunnel_manager.get_deployment_plan(near_node_id, far_node_id)
    return raise_for_result(result)


@router.post("/auto-setup")
async def auto_setup(body: AutoSetupRequest, request: Request):
    """Create every recommended channel for a relay pair"""
    result = await request.app.state.tunnel_manager.auto_setup(body.near_node_id, body.far_node_id)
    return raise_for_result(result)


@router.post("/deploy-config")
async def deploy_config(body: DeployConfigRequest, request: Request):
    result = request.app.state.tunnel_manager.generate_deploy_config(body.engine, body.options)
    return raise_for_result(result)


@router.get("/{tunnel_id}")
async def get_tunnel(tunnel_id: str, request: Request):
    """Get tunnel record with runtime status"""
    result = await request.app.state.tunnel_manager.get_status(tunnel_id)
    return raise_for_result(result)


@router.get("/{tunnel_id}/history")
async def tunnel_history(tunnel_id: str, request: Request, limit: int = 50):
    return await request.app.state.tunnel_manager.get_monitor_history(tunnel_id, limit=limit)


@router.post("/{tunnel_id}/stop")
async def stop_tunnel(tunnel_id: str, request: Request):
    result = await request.app.state.tunnel_manager.stop_tunnel(tunnel_id)
    return raise_for_result(result)


@router.delete("/{tunnel_id}")
async def delete_tunnel(tunnel_id: str, request: Request):
    result = await request.app.state.tunnel_manager.delete_tunnel(tunnel_id)
    return raise_for_result(result)
