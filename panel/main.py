"""
Elahe Tunnel Core - orchestration service
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tunnelcore.autopilot import AutopilotMonitor
from tunnelcore.config import settings
from tunnelcore.database import AsyncSessionLocal, init_db
from tunnelcore.engines.catalog import build_engines
from tunnelcore.port_allocator import PortAllocator
from tunnelcore.routers import autopilot, nodes, tunnels
from tunnelcore.tunnel_manager import TunnelManager

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    await init_db()

    allocator = PortAllocator()
    monitor = AutopilotMonitor(AsyncSessionLocal, allocator)
    engines = build_engines(data_dir=settings.data_dir)
    manager = TunnelManager(AsyncSessionLocal, engines, allocator, monitor)

    await monitor.initialize()
    await manager.initialize()

    app.state.port_allocator = allocator
    app.state.autopilot = monitor
    app.state.tunnel_manager = manager

    if settings.restore_tunnels_on_startup:
        try:
            restored = await manager.restore_tunnels()
            logger.info(f"Restored tunnels: {restored}")
        except Exception as e:
            logger.error(f"Error restoring tunnels: {e}", exc_info=True)

    app.state.autopilot_task = asyncio.create_task(monitor.run_forever())

    yield

    if hasattr(app.state, 'autopilot_task'):
        app.state.autopilot_task.cancel()
        try:
            await app.state.autopilot_task
        except asyncio.CancelledError:
            pass

    await manager.cleanup()


app = FastAPI(
    title="Elahe Tunnel Core",
    description="Multi-protocol tunnel orchestration",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(nodes.router, prefix="/api/nodes", tags=["nodes"])
app.include_router(tunnels.router, prefix="/api/tunnels", tags=["tunnels"])
app.include_router(autopilot.router, prefix="/api/autopilot", tags=["autopilot"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.panel_host, port=settings.panel_port)
