"""Autopilot monitor: periodic health sampling of engines, services and tunnels"""
import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

import httpx
from sqlalchemy import delete, select

from tunnelcore.config import settings
from tunnelcore.engines.catalog import ENGINE_CATALOG
from tunnelcore.errors import ProbeFailure
from tunnelcore.models import MonitorResult, Setting, Tunnel
from tunnelcore.port_allocator import PortAllocator
from tunnelcore.utils import format_address_port

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_MONITORING = "monitoring"
STATE_ERROR = "error"

ENGINE_BASE_LATENCY = {
    "ssh": 25,
    "frp": 15,
    "gost": 12,
    "chisel": 18,
}
DEFAULT_BASE_LATENCY = 20

DEFAULT_SETTINGS = {
    "autopilot.enabled": "true",
    "autopilot.last_cycle": "",
    "autopilot.cycle_count": "0",
}


@dataclass
class ProbeTarget:
    label: str
    engine: str
    host: str = "127.0.0.1"
    port: Optional[int] = None
    tunnel_id: Optional[str] = None


class Prober(Protocol):
    async def probe(self, target: ProbeTarget) -> float:
        """Return one round-trip latency in milliseconds or raise ProbeFailure"""
        ...


class SimulatedProber:
    """
    Reference prober: latency is the engine's characteristic base latency
    plus up to ``spread_ms`` of random jitter, spent as an asyncio.sleep.
    """

    def __init__(
        self,
        base_latency: Optional[Dict[str, float]] = None,
        spread_ms: float = 30.0,
        failure_rate: float = 0.0,
        time_scale: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        self.base_latency = dict(ENGINE_BASE_LATENCY if base_latency is None else base_latency)
        self.spread_ms = spread_ms
        self.failure_rate = failure_rate
        self.time_scale = time_scale
        self._rng = rng or random.Random()

    async def probe(self, target: ProbeTarget) -> float:
        latency = self.base_latency.get(target.engine, DEFAULT_BASE_LATENCY) + self._rng.random() * self.spread_ms
        if self.time_scale > 0:
            await asyncio.sleep(latency / 1000.0 * self.time_scale)
        if self.failure_rate and self._rng.random() < self.failure_rate:
            raise ProbeFailure(f"simulated probe failure for {target.label}")
        return latency


class TcpConnectProber:
    """Measures TCP connect time to the target's host and port"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    async def probe(self, target: ProbeTarget) -> float:
        if not target.port:
            raise ProbeFailure(f"no port to probe for {target.label}")
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise ProbeFailure(f"connect to {target.host}:{target.port} failed: {e}") from e
        latency = (loop.time() - started) * 1000.0
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return latency


class HttpProber:
    """Times an HTTP GET against the target, e.g. a camouflage site or chisel backend"""

    def __init__(self, timeout: float = 5.0, scheme: str = "http", path: str = "/", verify: bool = False):
        self.timeout = timeout
        self.scheme = scheme
        self.path = path
        self.verify = verify

    async def probe(self, target: ProbeTarget) -> float:
        if not target.port:
            raise ProbeFailure(f"no port to probe for {target.label}")
        url = f"{self.scheme}://{format_address_port(target.host, target.port)}{self.path}"
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, verify=self.verify) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise ProbeFailure(f"GET {url} failed: {e}") from e
        if response.status_code >= 500:
            raise ProbeFailure(f"GET {url} returned {response.status_code}")
        return (time.perf_counter() - started) * 1000.0


def summarize(samples: List[Optional[float]]) -> Dict[str, Any]:
    """
    Turn one probe window into latency, jitter, loss, score and a status label.

    ``None`` entries are failed attempts. Jitter is the population standard
    deviation of the successful samples.
    """
    attempts = len(samples)
    successful = [s for s in samples if s is not None]
    if not successful:
        return {
            "status": "failed",
            "latency_ms": None,
            "jitter_ms": None,
            "packet_loss": 100.0,
            "score": 0.0,
        }

    avg = sum(successful) / len(successful)
    jitter = math.sqrt(sum((s - avg) ** 2 for s in successful) / len(successful))
    loss = (attempts - len(successful)) / attempts * 100.0
    score = max(0.0, 100.0 - (0.3 * avg + 0.5 * jitter + 2 * loss))
    if score > 50:
        status = "optimal"
    elif score > 20:
        status = "degraded"
    else:
        status = "poor"
    return {
        "status": status,
        "latency_ms": round(avg, 2),
        "jitter_ms": round(jitter, 2),
        "packet_loss": round(loss, 2),
        "score": round(score, 2),
    }


class AutopilotMonitor:
    """
    Samples every engine class, every always-on service and every
    non-inactive tunnel record, and writes the results to history.

    Monitoring is observational: all configured tunnels stay up side by
    side. A record only moves to ``failed`` when its whole probe window
    errored. A passing window never brings a record back to ``active``;
    recovering a failed tunnel is left to the operator.
    """

    def __init__(
        self,
        session_factory,
        allocator: PortAllocator,
        prober: Optional[Prober] = None,
        probe_count: Optional[int] = None,
        retention_hours: Optional[int] = None,
        always_on: Optional[Dict[str, List[int]]] = None,
        probe_host: str = "127.0.0.1",
    ):
        self.session_factory = session_factory
        self.allocator = allocator
        self.prober = prober or build_prober()
        self.probe_count = probe_count or settings.probe_count
        self.retention_hours = retention_hours or settings.monitor_retention_hours
        self.always_on = always_on if always_on is not None else {
            "trusttunnel": [settings.trusttunnel_port],
            "openvpn": list(settings.openvpn_ports),
            "wireguard": list(settings.wireguard_ports),
        }
        self.probe_host = probe_host
        self.state = STATE_IDLE
        self.last_cycle: Optional[str] = None
        self.last_error: Optional[str] = None
        self.latest_results: Dict[str, Dict[str, Any]] = {}
        self._tracked: Dict[str, Dict[str, Any]] = {}

    # -- tracking map ------------------------------------------------------------

    def track(self, tunnel_id: str, engine: str, port: int) -> None:
        self._tracked[tunnel_id] = {"engine": engine, "port": port, "since": datetime.utcnow().isoformat()}

    def untrack(self, tunnel_id: str) -> None:
        self._tracked.pop(tunnel_id, None)

    def is_tracked(self, tunnel_id: str) -> bool:
        return tunnel_id in self._tracked

    def tracked(self) -> Dict[str, Dict[str, Any]]:
        return {tunnel_id: dict(info) for tunnel_id, info in self._tracked.items()}

    # -- settings ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Seed default autopilot settings rows that do not exist yet"""
        defaults = dict(DEFAULT_SETTINGS)
        defaults["autopilot.enabled"] = "true" if settings.autopilot_enabled else "false"
        defaults["autopilot.monitor_interval"] = str(settings.monitor_interval_minutes)
        async with self.session_factory() as session:
            result = await session.execute(select(Setting.key).where(Setting.key.in_(list(defaults.keys()))))
            existing = set(result.scalars().all())
            for key, value in defaults.items():
                if key not in existing:
                    session.add(Setting(key=key, value=value))
            await session.commit()
            row = await session.get(Setting, "autopilot.last_cycle")
            if row is not None and row.value:
                self.last_cycle = row.value
        logger.info(
            "Autopilot initialized; always-on services: "
            + ", ".join(f"{name} on {ports}" for name, ports in self.always_on.items())
        )

    async def _get_setting(self, session, key: str, default: Optional[str] = None) -> Optional[str]:
        row = await session.get(Setting, key)
        return row.value if row is not None else default

    async def _set_setting(self, session, key: str, value: str) -> None:
        row = await session.get(Setting, key)
        if row is None:
            session.add(Setting(key=key, value=value))
        else:
            row.value = value
            row.updated_at = datetime.utcnow()

    async def is_enabled(self) -> bool:
        async with self.session_factory() as session:
            value = await self._get_setting(session, "autopilot.enabled", "true")
        return value != "false"

    async def set_enabled(self, enabled: bool) -> Dict[str, Any]:
        async with self.session_factory() as session:
            await self._set_setting(session, "autopilot.enabled", "true" if enabled else "false")
            await session.commit()
        logger.info(f"Autopilot {'enabled' if enabled else 'disabled'}")
        return {"success": True, "enabled": enabled}

    # -- probing -------------------------------------------------------------------

    async def _probe_window(self, target: ProbeTarget) -> Dict[str, Any]:
        samples: List[Optional[float]] = []
        for _ in range(self.probe_count):
            try:
                samples.append(await self.prober.probe(target))
            except ProbeFailure as e:
                logger.debug(f"Probe failed for {target.label}: {e}")
                samples.append(None)
        return summarize(samples)

    def _engine_probe_port(self, engine: str) -> Optional[int]:
        for info in self._tracked.values():
            if info["engine"] == engine:
                return info["port"]
        return None

    async def run_monitoring_cycle(self) -> Dict[str, Any]:
        """Run one full cycle; concurrent triggers are skipped"""
        if self.state == STATE_MONITORING:
            logger.warning("Monitoring cycle already running")
            return {"skipped": True, "reason": "already_running"}

        self.state = STATE_MONITORING
        started = time.monotonic()
        logger.info("Starting autopilot monitoring cycle")
        try:
            report = await self._run_cycle()
        except Exception as e:
            self.state = STATE_ERROR
            self.last_error = str(e)
            logger.error(f"Autopilot monitoring cycle failed: {e}", exc_info=True)
            return {"success": False, "error": str(e), "state": self.state}

        self.state = STATE_IDLE
        self.last_error = None
        report["duration_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Monitoring cycle complete in {report['duration_ms']}ms: "
            f"{len(report['engines'])} engine(s), {len(report['services'])} service(s), "
            f"{len(report['tunnels'])} tunnel(s)"
        )
        return report

    async def _run_cycle(self) -> Dict[str, Any]:
        now = datetime.utcnow()
        engines: List[Dict[str, Any]] = []
        services: List[Dict[str, Any]] = []
        tunnels: List[Dict[str, Any]] = []

        async with self.session_factory() as session:
            for engine in ENGINE_CATALOG:
                target = ProbeTarget(
                    label=f"engine:{engine}", engine=engine,
                    host=self.probe_host, port=self._engine_probe_port(engine),
                )
                summary = await self._probe_window(target)
                self.latest_results[target.label] = {**summary, "checked_at": now.isoformat()}
                session.add(MonitorResult(target=target.label, checked_at=now, **summary))
                engines.append({"engine": engine, **summary})

            for service, ports in self.always_on.items():
                target = ProbeTarget(
                    label=f"service:{service}", engine=service,
                    host=self.probe_host, port=ports[0] if ports else None,
                )
                summary = await self._probe_window(target)
                self.latest_results[target.label] = {**summary, "checked_at": now.isoformat()}
                session.add(MonitorResult(target=target.label, checked_at=now, **summary))
                services.append({"service": service, "ports": ports, **summary})

            result = await session.execute(select(Tunnel).where(Tunnel.status != "inactive"))
            for tunnel in result.scalars().all():
                target = ProbeTarget(
                    label=f"tunnel:{tunnel.id}", engine=tunnel.engine,
                    host=self.probe_host, port=tunnel.port, tunnel_id=tunnel.id,
                )
                summary = await self._probe_window(target)
                previous = tunnel.status
                self._apply_record_health(tunnel, summary)
                session.add(MonitorResult(tunnel_id=tunnel.id, target=target.label, checked_at=now, **summary))
                tunnels.append({
                    "tunnel_id": tunnel.id,
                    "engine": tunnel.engine,
                    "port": tunnel.port,
                    "previous_status": previous,
                    "record_status": tunnel.status,
                    **summary,
                })

            cutoff = now - timedelta(hours=self.retention_hours)
            purged = await session.execute(delete(MonitorResult).where(MonitorResult.checked_at < cutoff))

            self.last_cycle = now.isoformat()
            await self._set_setting(session, "autopilot.last_cycle", self.last_cycle)
            count = int(await self._get_setting(session, "autopilot.cycle_count", "0") or 0)
            await self._set_setting(session, "autopilot.cycle_count", str(count + 1))
            await session.commit()

        return {
            "success": True,
            "timestamp": self.last_cycle,
            "engines": engines,
            "services": services,
            "tunnels": tunnels,
            "checked": len(engines) + len(services) + len(tunnels),
            "purged": purged.rowcount or 0,
        }

    def _apply_record_health(self, tunnel: Tunnel, summary: Dict[str, Any]) -> None:
        tunnel.score = summary["score"]
        tunnel.latency_ms = summary["latency_ms"]
        tunnel.jitter_ms = summary["jitter_ms"]
        tunnel.last_check = datetime.utcnow()

        if summary["status"] == "failed":
            if tunnel.status != "failed":
                logger.warning(f"Tunnel {tunnel.id} failed every health probe, marking failed")
            tunnel.status = "failed"
            tunnel.error_message = tunnel.error_message or "every health probe in the window failed"

    # -- reporting -----------------------------------------------------------------

    def get_port_rules(self) -> Dict[str, Any]:
        return {
            "always_on": {
                name: {"ports": ports, "protocol": name} for name, ports in self.always_on.items()
            },
            "dynamic_range": {"min": self.allocator.range_min, "max": self.allocator.range_max},
            "reserved_ports": sorted(self.allocator.reserved),
            "policy": "all configured tunnels stay active simultaneously",
        }

    async def get_status(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            result = await session.execute(select(Setting).where(Setting.key.like("autopilot.%")))
            stored = {row.key.split(".", 1)[1]: row.value for row in result.scalars().all()}
        return {
            "state": self.state,
            "enabled": stored.get("enabled", "true") != "false",
            "last_cycle": self.last_cycle or stored.get("last_cycle") or None,
            "cycle_count": int(stored.get("cycle_count") or 0),
            "monitor_interval_minutes": int(stored.get("monitor_interval") or settings.monitor_interval_minutes),
            "last_error": self.last_error,
            "tracked": self.tracked(),
            "latest_results": dict(self.latest_results),
            "port_rules": self.get_port_rules(),
        }

    # -- scheduler -----------------------------------------------------------------

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Background loop started from the service lifespan"""
        interval = interval_seconds or settings.monitor_interval_minutes * 60
        logger.info(f"Autopilot scheduler started (every {interval}s)")
        while True:
            try:
                await asyncio.sleep(interval)
                if await self.is_enabled():
                    await self.run_monitoring_cycle()
            except asyncio.CancelledError:
                logger.info("Autopilot scheduler stopped")
                break
            except Exception as e:
                logger.error(f"Error in autopilot scheduler: {e}", exc_info=True)


def build_prober(mode: Optional[str] = None) -> Prober:
    """Prober selected by the probe_mode setting"""
    mode = mode or settings.probe_mode
    if mode == "tcp":
        return TcpConnectProber()
    if mode == "http":
        return HttpProber()
    return SimulatedProber()
