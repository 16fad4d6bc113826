"""Autopilot API endpoints"""
from fastapi import APIRouter, Request
from pydantic import BaseModel


router = APIRouter()


class AutopilotToggle(BaseModel):
    enabled: bool


@router.get("/status")
async def autopilot_status(request: Request):
    return await request.app.state.autopilot.get_status()


@router.post("/cycle")
async def run_cycle(request: Request):
    """Trigger a monitoring cycle now"""
    return await request.app.state.tunnel_manager.run_monitoring_cycle()


@router.put("/enabled")
async def set_enabled(body: AutopilotToggle, request: Request):
    return await request.app.state.autopilot.set_enabled(body.enabled)


@router.get("/port-rules")
async def port_rules(request: Request):
    return request.app.state.autopilot.get_port_rules()
