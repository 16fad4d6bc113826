"""Static engine catalog and the engine-name registry"""
from pathlib import Path
from typing import Any, Dict, List, Optional

from tunnelcore.engines.base import BaseEngine
from tunnelcore.engines.chisel import ChiselEngine
from tunnelcore.engines.frp import FRPEngine
from tunnelcore.engines.gost import GostEngine
from tunnelcore.engines.ssh import SSHEngine
from tunnelcore.engines.trusttunnel import TrustTunnelEngine

ENGINE_CATALOG: Dict[str, Dict[str, Any]] = {
    "ssh": {
        "name": "SSH Tunnel",
        "description": "Encrypted SSH port forwarding",
        "transports": ["tcp"],
        "encryption": "SSH (Ed25519/RSA)",
        "priority": 3,
        "role": "backup",
        "features": [],
    },
    "frp": {
        "name": "FRP (TLS)",
        "description": "Fast Reverse Proxy with TLS encryption",
        "transports": ["tcp", "udp", "stcp", "xtcp", "http", "https"],
        "encryption": "TLS 1.3",
        "priority": 2,
        "role": "backup",
        "features": [],
    },
    "gost": {
        "name": "GOST (TLS/QUIC)",
        "description": "GO Simple Tunnel with TLS and QUIC transport",
        "transports": ["tls", "quic", "wss", "mwss", "h2", "grpc", "mtls", "mquic"],
        "encryption": "TLS 1.3 / QUIC",
        "priority": 2,
        "role": "backup",
        "features": [],
    },
    "chisel": {
        "name": "Chisel (TLS)",
        "description": "HTTP-based tunnel with TLS, firewall-friendly",
        "transports": ["http", "https", "websocket"],
        "encryption": "TLS 1.3",
        "priority": 2,
        "role": "backup",
        "features": [],
    },
    "trusttunnel": {
        "name": "TrustTunnel (HTTP/3)",
        "description": "HTTP/3 based tunnel with camouflage and traffic shaping",
        "transports": ["http3", "quic"],
        "encryption": "TLS 1.3 / QUIC / HTTP/3",
        "priority": 1,
        "role": "secondary",
        "features": ["camouflage", "traffic-shaping", "fake-website", "cdn-compatible"],
    },
}

ENGINE_CLASSES = {
    "ssh": SSHEngine,
    "frp": FRPEngine,
    "gost": GostEngine,
    "chisel": ChiselEngine,
    "trusttunnel": TrustTunnelEngine,
}


def is_known_engine(engine: str) -> bool:
    return engine in ENGINE_CATALOG


def list_engines(running: Optional[Dict[str, BaseEngine]] = None) -> List[Dict[str, Any]]:
    """Catalog entries, with running tunnel counts when engine instances are given"""
    engines = []
    for key, entry in ENGINE_CATALOG.items():
        item = {"key": key, **entry}
        if running is not None and key in running:
            item["active_tunnels"] = len(running[key].handles)
        engines.append(item)
    return engines


def build_engines(data_dir: Optional[Path] = None, serve_decoy: bool = True, **kwargs) -> Dict[str, BaseEngine]:
    """
    One engine instance per catalog entry.

    Extra keyword arguments (spawner, max_retries, reconnect_interval, ...)
    are passed to every engine.
    """
    engines = {}
    for key, engine_cls in ENGINE_CLASSES.items():
        config_dir = Path(data_dir) / key if data_dir else None
        if engine_cls is TrustTunnelEngine:
            engines[key] = engine_cls(config_dir=config_dir, serve_decoy=serve_decoy, **kwargs)
        else:
            engines[key] = engine_cls(config_dir=config_dir, **kwargs)
    return engines
