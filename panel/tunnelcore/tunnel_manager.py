"""Tunnel manager: ports, registry rows and engine processes behind one facade"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, or_, select

from tunnelcore.autopilot import AutopilotMonitor
from tunnelcore.config import settings
from tunnelcore.engines.base import BaseEngine
from tunnelcore.engines.catalog import ENGINE_CATALOG, is_known_engine, list_engines
from tunnelcore.errors import (
    NodeNotFound,
    PortConflict,
    ReservedPort,
    TunnelCoreError,
    TunnelNotFound,
    UnknownEngine,
)
from tunnelcore.models import MonitorResult, Node, Tunnel
from tunnelcore.port_allocator import PortAllocator
from tunnelcore.utils import generate_token

logger = logging.getLogger(__name__)

BACKUP_CHANNELS = [
    {"engine": "gost", "name": "GOST (TLS)", "transport": "tls", "config": {"gost_mode": "forward"}},
    {"engine": "gost", "name": "GOST (QUIC)", "transport": "quic", "config": {"gost_mode": "forward"}},
    {"engine": "frp", "name": "FRP (TLS)", "transport": "tcp", "config": {"tls_enabled": True}},
    {"engine": "chisel", "name": "Chisel (TLS/WS)", "transport": "https", "config": {"tls_enabled": True}},
    {"engine": "ssh", "name": "SSH Tunnel", "transport": "tcp", "config": {"forward_type": "local"}},
]


def tunnel_to_dict(tunnel: Tunnel) -> Dict[str, Any]:
    return {
        "id": tunnel.id,
        "near_node_id": tunnel.near_node_id,
        "far_node_id": tunnel.far_node_id,
        "engine": tunnel.engine,
        "transport": tunnel.transport,
        "port": tunnel.port,
        "status": tunnel.status,
        "score": tunnel.score,
        "latency_ms": tunnel.latency_ms,
        "jitter_ms": tunnel.jitter_ms,
        "priority": tunnel.priority,
        "config": tunnel.config or {},
        "last_error": tunnel.error_message,
        "last_check": tunnel.last_check.isoformat() if tunnel.last_check else None,
        "created_at": tunnel.created_at.isoformat() if tunnel.created_at else None,
        "updated_at": tunnel.updated_at.isoformat() if tunnel.updated_at else None,
    }


class TunnelManager:
    """
    Orchestration facade used by the API layer.

    The allocator and the autopilot tracking map are owned by their own
    objects; the manager only calls their methods. Validation problems come
    back as ``{"success": False, "error": ..., "code": ...}`` results.
    """

    def __init__(
        self,
        session_factory,
        engines: Dict[str, BaseEngine],
        allocator: PortAllocator,
        autopilot: AutopilotMonitor,
    ):
        self.session_factory = session_factory
        self.engines = engines
        self.allocator = allocator
        self.autopilot = autopilot
        for engine in engines.values():
            engine.add_listener(self._on_engine_failed)

    # -- startup -------------------------------------------------------------------

    async def initialize(self) -> None:
        """Rebuild the allocator and the tracking map from active records"""
        async with self.session_factory() as session:
            result = await session.execute(select(Tunnel).where(Tunnel.status == "active"))
            active = result.scalars().all()
        self.allocator.rebuild([(tunnel.port, tunnel.id) for tunnel in active])
        for tunnel in active:
            self.autopilot.track(tunnel.id, tunnel.engine, tunnel.port)
        logger.info(f"Tunnel manager initialized with {len(active)} active tunnel(s)")

    async def _ensure_ready(self) -> None:
        if not self.allocator.loaded:
            await self.initialize()

    async def restore_tunnels(self) -> Dict[str, Any]:
        """Restart engine processes for every active record after a restart"""
        await self._ensure_ready()
        async with self.session_factory() as session:
            result = await session.execute(select(Tunnel).where(Tunnel.status == "active"))
            active = result.scalars().all()
            restored, failed = 0, 0
            for tunnel in active:
                engine = self.engines.get(tunnel.engine)
                if engine is None or tunnel.id in engine.handles:
                    continue
                near = await session.get(Node, tunnel.near_node_id)
                far = await session.get(Node, tunnel.far_node_id) if tunnel.far_node_id else None
                options = self._build_start_options(tunnel, near, far, tunnel.config or {})
                start = await engine.start(tunnel.id, options)
                if start.get("success"):
                    restored += 1
                    logger.info(f"Restored {tunnel.engine} tunnel {tunnel.id} on port {tunnel.port}")
                else:
                    failed += 1
                    self._mark_failed(tunnel, start.get("error"))
                    self.allocator.release(tunnel.port)
                    self.autopilot.untrack(tunnel.id)
                    logger.error(f"Failed to restore tunnel {tunnel.id}: {start.get('error')}")
            await session.commit()
        return {"restored": restored, "failed": failed}

    # -- create / stop / delete --------------------------------------------------------

    async def create_tunnel(
        self,
        engine: str,
        near_node_id: str,
        far_node_id: Optional[str] = None,
        port: Optional[int] = None,
        transport: str = "tcp",
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        await self._ensure_ready()
        try:
            return await self._create_tunnel(engine, near_node_id, far_node_id, port, transport, dict(config or {}))
        except TunnelCoreError as e:
            logger.warning(f"create_tunnel rejected ({e.code}): {e.message}")
            return e.to_result()

    async def _create_tunnel(
        self,
        engine_name: str,
        near_node_id: str,
        far_node_id: Optional[str],
        port: Optional[int],
        transport: str,
        config: Dict[str, Any],
    ) -> Dict[str, Any]:
        if not is_known_engine(engine_name) or engine_name not in self.engines:
            raise UnknownEngine(f"Unknown engine: {engine_name}", engine=engine_name)
        engine = self.engines[engine_name]

        async with self.session_factory() as session:
            near = await session.get(Node, near_node_id)
            if near is None:
                raise NodeNotFound(f"Near node {near_node_id} not found", node_id=near_node_id)
            far = None
            if far_node_id:
                far = await session.get(Node, far_node_id)
                if far is None:
                    raise NodeNotFound(f"Far node {far_node_id} not found", node_id=far_node_id)

            if port is not None and port in self.allocator.reserved:
                raise ReservedPort(f"Port {port} is reserved", port=port)
            if port is None:
                held_before = self.allocator.assigned
                assigned = self.allocator.allocate_random()
                # A saturated range can hand back a port another tunnel already holds
                reserved_here = assigned not in held_before
                previous_owner = held_before.get(assigned)
            else:
                assigned = self.allocator.reserve(port)
                reserved_here = True
                previous_owner = None

            clash = await session.execute(
                select(Tunnel.id).where(Tunnel.port == assigned, Tunnel.status == "active")
            )
            holder = clash.scalar_one_or_none()
            if holder is not None:
                if reserved_here:
                    self.allocator.release(assigned)
                raise PortConflict(
                    f"Port {assigned} is already held by active tunnel {holder}", port=assigned, tunnel_id=holder
                )

            if engine_name == "frp" and not config.get("token"):
                config["token"] = generate_token()
            if engine_name == "chisel" and config.get("generate_auth") and not config.get("auth"):
                config["auth"] = engine.generate_auth(near_node_id)
                config.pop("generate_auth")

            tunnel = Tunnel(
                near_node_id=near.id,
                far_node_id=far.id if far else None,
                engine=engine_name,
                transport=transport or "tcp",
                port=assigned,
                status="active",
                priority=ENGINE_CATALOG[engine_name]["priority"],
                config=config,
            )
            session.add(tunnel)
            await session.commit()
            self.allocator.claim(assigned, tunnel.id)
            self.autopilot.track(tunnel.id, engine_name, assigned)
            logger.info(f"Created {engine_name} tunnel {tunnel.id} on port {assigned}")

            options = self._build_start_options(tunnel, near, far, config)
            start = await engine.start(tunnel.id, options)

            if not start.get("success"):
                self._mark_failed(tunnel, start.get("error"))
                await session.commit()
                if reserved_here:
                    self.allocator.release(assigned)
                else:
                    self.allocator.claim(assigned, previous_owner)
                self.autopilot.untrack(tunnel.id)
                logger.error(f"Engine {engine_name} failed to start tunnel {tunnel.id}: {start.get('error')}")
                return {
                    "success": False,
                    "tunnel_id": tunnel.id,
                    "port": assigned,
                    "engine": engine_name,
                    "error": start.get("error"),
                    "code": start.get("code"),
                    "start": start,
                }

        return {
            "success": True,
            "tunnel_id": tunnel.id,
            "port": assigned,
            "engine": engine_name,
            "start": start,
        }

    async def stop_tunnel(self, tunnel_id: str) -> Dict[str, Any]:
        await self._ensure_ready()
        async with self.session_factory() as session:
            tunnel = await session.get(Tunnel, tunnel_id)
            if tunnel is None:
                return TunnelNotFound(f"Tunnel {tunnel_id} not found", tunnel_id=tunnel_id).to_result()

            engine = self.engines.get(tunnel.engine)
            result: Dict[str, Any] = {"success": True, "tunnel_id": tunnel_id}
            if engine is not None and tunnel_id in engine.handles:
                stop = await engine.stop(tunnel_id)
                if not stop.get("success"):
                    return stop
            else:
                result["note"] = "no active process found"

            self._release_if_owned(tunnel)
            tunnel.status = "inactive"
            await session.commit()
            self.autopilot.untrack(tunnel_id)
        logger.info(f"Stopped tunnel {tunnel_id}")
        return result

    async def delete_tunnel(self, tunnel_id: str) -> Dict[str, Any]:
        await self._ensure_ready()
        async with self.session_factory() as session:
            tunnel = await session.get(Tunnel, tunnel_id)
            if tunnel is None:
                return TunnelNotFound(f"Tunnel {tunnel_id} not found", tunnel_id=tunnel_id).to_result()
            engine = self.engines.get(tunnel.engine)
            if engine is not None and tunnel_id in engine.handles:
                await engine.stop(tunnel_id)
            self._release_if_owned(tunnel)
            self.autopilot.untrack(tunnel_id)
            await session.execute(delete(MonitorResult).where(MonitorResult.tunnel_id == tunnel_id))
            await session.delete(tunnel)
            await session.commit()
        logger.info(f"Deleted tunnel {tunnel_id}")
        return {"success": True, "tunnel_id": tunnel_id}

    def _release_if_owned(self, tunnel: Tunnel) -> None:
        owner = self.allocator.owner(tunnel.port)
        if self.allocator.is_assigned(tunnel.port) and owner in (tunnel.id, None):
            self.allocator.release(tunnel.port)

    def _mark_failed(self, tunnel: Tunnel, error: Optional[str]) -> None:
        tunnel.status = "failed"
        tunnel.error_message = error or "engine failed to start"
        tunnel.updated_at = datetime.utcnow()

    async def _on_engine_failed(self, tunnel_id: str, status: str, last_error: Optional[str]) -> None:
        """Engine listener: a tunnel exhausted its reconnect attempts"""
        async with self.session_factory() as session:
            tunnel = await session.get(Tunnel, tunnel_id)
            if tunnel is None:
                return
            self._release_if_owned(tunnel)
            self._mark_failed(tunnel, last_error)
            await session.commit()
        self.autopilot.untrack(tunnel_id)
        logger.error(f"Tunnel {tunnel_id} marked failed: {last_error}")

    # -- start options -------------------------------------------------------------------

    def _build_start_options(
        self, tunnel: Tunnel, near: Optional[Node], far: Optional[Node], config: Dict[str, Any]
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "tunnel_id": tunnel.id,
            "listen_port": tunnel.port,
            "transport": tunnel.transport,
            "near_ip": near.ip_address if near else None,
            "far_ip": far.ip_address if far else None,
            "ssh_port": far.port if far else None,
            "tls_enabled": tunnel.transport not in ("tcp", "udp"),
        }
        options.update({key: value for key, value in config.items() if value is not None})
        return options

    # -- queries -------------------------------------------------------------------------

    def _runtime_status(self, tunnel: Tunnel) -> Optional[Dict[str, Any]]:
        engine = self.engines.get(tunnel.engine)
        return engine.get_status(tunnel.id) if engine is not None else None

    async def list_tunnels(self, node_id: Optional[str] = None) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            query = select(Tunnel).order_by(Tunnel.score.desc(), Tunnel.created_at)
            if node_id:
                query = query.where(or_(Tunnel.near_node_id == node_id, Tunnel.far_node_id == node_id))
            result = await session.execute(query)
            tunnels = result.scalars().all()
        items = []
        for tunnel in tunnels:
            item = tunnel_to_dict(tunnel)
            item["always_on"] = ENGINE_CATALOG.get(tunnel.engine, {}).get("role") == "secondary"
            item["runtime"] = self._runtime_status(tunnel)
            items.append(item)
        return items

    async def get_status(self, tunnel_id: str) -> Dict[str, Any]:
        async with self.session_factory() as session:
            tunnel = await session.get(Tunnel, tunnel_id)
        if tunnel is None:
            return TunnelNotFound(f"Tunnel {tunnel_id} not found", tunnel_id=tunnel_id).to_result()
        item = tunnel_to_dict(tunnel)
        item["success"] = True
        item["runtime"] = self._runtime_status(tunnel)
        item["tracked"] = self.autopilot.is_tracked(tunnel_id)
        engine = self.engines.get(tunnel.engine)
        if engine is not None and tunnel_id in engine.handles:
            item["health"] = await engine.health_check(tunnel_id)
        return item

    async def health_check_all(self) -> List[Dict[str, Any]]:
        results = []
        for name, engine in self.engines.items():
            for tunnel_id in list(engine.handles.keys()):
                health = await engine.health_check(tunnel_id)
                results.append({"engine": name, **health})
        return results

    def get_engines(self) -> List[Dict[str, Any]]:
        return list_engines(self.engines)

    async def get_monitor_history(self, tunnel_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MonitorResult)
                .where(MonitorResult.tunnel_id == tunnel_id)
                .order_by(MonitorResult.checked_at.desc())
                .limit(limit)
            )
            rows = result.scalars().all()
        return [
            {
                "target": row.target,
                "latency_ms": row.latency_ms,
                "jitter_ms": row.jitter_ms,
                "packet_loss": row.packet_loss,
                "score": row.score,
                "status": row.status,
                "checked_at": row.checked_at.isoformat() if row.checked_at else None,
            }
            for row in rows
        ]

    async def get_stats(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            result = await session.execute(select(Tunnel.status, Tunnel.engine))
            rows = result.all()
        by_status: Dict[str, int] = {}
        by_engine: Dict[str, int] = {}
        for status, engine in rows:
            by_status[status] = by_status.get(status, 0) + 1
            by_engine[engine] = by_engine.get(engine, 0) + 1
        return {
            "total": len(rows),
            "by_status": by_status,
            "by_engine": by_engine,
            "running": sum(len(engine.handles) for engine in self.engines.values()),
            "assigned_ports": len(self.allocator.assigned),
        }

    # -- deployment ----------------------------------------------------------------------

    def generate_deploy_config(self, engine: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if engine not in self.engines:
            return UnknownEngine(f"Unknown engine: {engine}", engine=engine).to_result()
        try:
            return self.engines[engine].generate_deploy_config(options or {})
        except (KeyError, ValueError) as e:
            logger.warning(f"Invalid {engine} deploy options: {e}")
            return {"success": False, "engine": engine, "error": str(e), "code": "invalid_options"}

    async def get_deployment_plan(self, near_node_id: str, far_node_id: str) -> Dict[str, Any]:
        """
        Everything an operator needs to bring up a relay pair by hand:
        the always-on services, deploy configs for the pair's existing
        tunnels and the recommended backup channels.
        """
        async with self.session_factory() as session:
            near = await session.get(Node, near_node_id)
            far = await session.get(Node, far_node_id)
            if near is None or far is None:
                missing = near_node_id if near is None else far_node_id
                return NodeNotFound(f"Node {missing} not found", node_id=missing).to_result()
            result = await session.execute(
                select(Tunnel)
                .where(
                    Tunnel.near_node_id == near.id,
                    Tunnel.far_node_id == far.id,
                    Tunnel.status != "inactive",
                )
                .order_by(Tunnel.priority, Tunnel.created_at)
            )
            tunnels = result.scalars().all()

        tt_port = settings.trusttunnel_port
        always_on = [
            {
                "engine": "trusttunnel",
                "name": ENGINE_CATALOG["trusttunnel"]["name"],
                "port": tt_port,
                "transport": "http3/quic",
                "status": "always_active",
                "server": self.engines["trusttunnel"].generate_deploy_config({
                    "tunnel_id": f"tt-{near.id[:8]}-{far.id[:8]}",
                    "trusttunnel_mode": "server",
                    "listen_port": tt_port,
                }),
                "client": self.engines["trusttunnel"].generate_deploy_config({
                    "tunnel_id": f"tt-{near.id[:8]}-{far.id[:8]}",
                    "trusttunnel_mode": "client",
                    "listen_port": tt_port,
                    "far_ip": far.ip_address,
                    "far_port": tt_port,
                }),
            }
        ]
        for port in settings.openvpn_ports:
            always_on.append({
                "engine": "openvpn", "name": f"OpenVPN (port {port})", "port": port, "transport": "tcp",
                "status": "always_active", "note": "Managed by the OpenVPN server, not a tunnel engine",
            })
        for port in settings.wireguard_ports:
            always_on.append({
                "engine": "wireguard", "name": f"WireGuard (port {port})", "port": port, "transport": "udp",
                "status": "always_active", "note": "Managed by the WireGuard server, not a tunnel engine",
            })

        existing = []
        for tunnel in tunnels:
            engine = self.engines.get(tunnel.engine)
            if engine is None:
                continue
            options = self._build_start_options(tunnel, near, far, tunnel.config or {})
            existing.append({
                "tunnel_id": tunnel.id,
                "engine": tunnel.engine,
                "port": tunnel.port,
                "status": tunnel.status,
                "score": tunnel.score,
                "config": self.generate_deploy_config(tunnel.engine, options),
            })

        recommendations = [
            {
                **channel,
                "priority": ENGINE_CATALOG[channel["engine"]]["priority"],
                "role": ENGINE_CATALOG[channel["engine"]]["role"],
                "port": None,
                "note": "port drawn from the dynamic range on create",
            }
            for channel in BACKUP_CHANNELS
        ]

        return {
            "success": True,
            "near_node": {"id": near.id, "name": near.name, "ip": near.ip_address},
            "far_node": {"id": far.id, "name": far.name, "ip": far.ip_address},
            "mode": "autopilot",
            "generated_at": datetime.utcnow().isoformat(),
            "always_on": always_on,
            "tunnels": existing,
            "recommended_backups": recommendations,
            "port_rules": self.autopilot.get_port_rules(),
        }

    async def auto_setup(self, near_node_id: str, far_node_id: str) -> Dict[str, Any]:
        """
        Create the TrustTunnel channel and every recommended backup channel
        for a relay pair. Each channel is created independently; one
        failing does not stop the others.
        """
        async with self.session_factory() as session:
            near = await session.get(Node, near_node_id)
            far = await session.get(Node, far_node_id)
        if near is None or far is None:
            missing = near_node_id if near is None else far_node_id
            return NodeNotFound(f"Node {missing} not found", node_id=missing).to_result()

        tt_port = settings.trusttunnel_port
        channels = [{
            "engine": "trusttunnel",
            "name": ENGINE_CATALOG["trusttunnel"]["name"],
            "transport": "quic",
            "port": tt_port,
            "config": {"trusttunnel_mode": "client", "far_port": tt_port},
        }] + BACKUP_CHANNELS

        results = []
        for channel in channels:
            result = await self.create_tunnel(
                channel["engine"],
                near.id,
                far.id,
                port=channel.get("port"),
                transport=channel["transport"],
                config=channel["config"],
            )
            results.append({"engine": channel["engine"], "name": channel["name"], **result})

        created = sum(1 for result in results if result.get("success"))
        logger.info(f"Auto setup for {near.name} -> {far.name}: {created}/{len(results)} channel(s) created")
        return {
            "success": True,
            "near_node": {"id": near.id, "name": near.name, "ip": near.ip_address},
            "far_node": {"id": far.id, "name": far.name, "ip": far.ip_address},
            "created": created,
            "total": len(results),
            "results": results,
        }

    async def run_monitoring_cycle(self) -> Dict[str, Any]:
        await self._ensure_ready()
        return await self.autopilot.run_monitoring_cycle()

    async def cleanup(self) -> None:
        for name, engine in self.engines.items():
            logger.info(f"Stopping all {name} tunnels")
            await engine.cleanup()
