"""TrustTunnel: HTTP/3 (QUIC) relay with a camouflage website"""
import asyncio
import json
import logging
from email.utils import formatdate
from pathlib import Path
from typing import Any, Dict, List, Optional

from tunnelcore.config import settings
from tunnelcore.engines.base import BaseEngine, EngineRuntimeHandle
from tunnelcore.utils import format_address_port

logger = logging.getLogger(__name__)

CAMOUFLAGE_HEADERS = {
    "Server": "nginx/1.24.0",
    "X-Powered-By": "Express",
    "X-Content-Type-Options": "nosniff",
}

DEFAULT_QUIC = {
    "max_idle_timeout": 30,
    "max_stream_count": 100,
    "initial_stream_window_size": 524288,
    "max_stream_window_size": 6291456,
    "initial_connection_window_size": 786432,
    "max_connection_window_size": 15728640,
    "keepalive_period": 15,
}

_AI_RESEARCH = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Stellar AI Research Lab</title>
<style>
body{margin:0;font-family:'Segoe UI',Tahoma,Geneva,Verdana,sans-serif;background:#f8fafc;color:#1e293b}
header{background:linear-gradient(135deg,#0f172a 0%,#1e3a5f 100%);color:white;padding:80px 20px;text-align:center}
.container{max-width:1200px;margin:0 auto;padding:40px 20px}
.grid{display:grid;grid-template-columns:repeat(auto-fit,minmax(300px,1fr));gap:24px}
.card{background:white;padding:32px;border-radius:12px;box-shadow:0 1px 3px rgba(0,0,0,0.1)}
footer{background:#0f172a;color:#94a3b8;padding:40px 20px;text-align:center;margin-top:60px}
</style>
</head>
<body>
<header><h1>Stellar AI Research Lab</h1><p>Advancing artificial intelligence research through collaborative innovation and modern machine learning techniques.</p></header>
<div class="container">
<h2>Our Research Areas</h2>
<div class="grid">
<div class="card"><h3>Natural Language Processing</h3><p>Language models that understand context and nuance across many languages.</p></div>
<div class="card"><h3>Computer Vision</h3><p>Image recognition and object detection for healthcare and autonomous systems.</p></div>
<div class="card"><h3>Reinforcement Learning</h3><p>Agents that learn strategies through interaction with complex simulations.</p></div>
</div>
</div>
<footer><p>Stellar AI Research Lab. All rights reserved. Contact: research@stellar-ai.example.com</p></footer>
</body>
</html>
"""

_CLOUD_COMPANY = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>NimbusCloud Solutions - Enterprise Cloud Infrastructure</title>
<style>
body{margin:0;font-family:system-ui,sans-serif;background:#fff}
header{background:linear-gradient(135deg,#1a1a2e 0%,#16213e 50%,#0f3460 100%);color:white;padding:100px 20px;text-align:center}
.features{display:flex;flex-wrap:wrap;justify-content:center;gap:32px;padding:60px 20px;max-width:1200px;margin:0 auto}
.feature{flex:1 1 280px;padding:24px;text-align:center}
footer{background:#1a1a2e;color:#aaa;padding:30px;text-align:center}
</style>
</head>
<body>
<header><h1>NimbusCloud Solutions</h1><p>Enterprise-grade cloud infrastructure for global businesses</p></header>
<div class="features">
<div class="feature"><h3>Global CDN</h3><p>Content delivery from 200+ edge locations worldwide.</p></div>
<div class="feature"><h3>Auto Scaling</h3><p>Scale infrastructure automatically with real-time demand.</p></div>
<div class="feature"><h3>99.99% Uptime</h3><p>Redundant systems across multiple availability zones.</p></div>
</div>
<footer><p>NimbusCloud Solutions</p></footer>
</body>
</html>
"""

CAMOUFLAGE_PROFILES = {
    "ai-research": _AI_RESEARCH,
    "cloud-company": _CLOUD_COMPANY,
}


def camouflage_page(profile: str) -> str:
    return CAMOUFLAGE_PROFILES.get(profile, CAMOUFLAGE_PROFILES["ai-research"])


class DecoySite:
    """Serves a static website on the TCP side of the tunnel port"""

    def __init__(self, port: int, html: str, host: str = "0.0.0.0"):
        self.port = port
        self.host = host
        self.body = html.encode("utf-8")
        self.server: Optional[asyncio.AbstractServer] = None

    async def start(self):
        self.server = await asyncio.start_server(
            self._handle_client,
            host=self.host,
            port=self.port,
            reuse_address=True,
        )
        logger.info(f"Camouflage site listening on {self.host}:{self.port}")

    async def stop(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            request_line = await asyncio.wait_for(reader.readline(), timeout=10.0)
            while True:
                header = await asyncio.wait_for(reader.readline(), timeout=10.0)
                if header in (b"\r\n", b"\n", b""):
                    break
            parts = request_line.decode("latin-1").split()
            method = parts[0] if parts else "GET"
            path = parts[1] if len(parts) > 1 else "/"

            if path in ("/", "/index.html"):
                status, body = "200 OK", self.body
            else:
                status, body = "404 Not Found", b"<html><body><h1>404 Not Found</h1></body></html>"

            headers = {
                "Date": formatdate(usegmt=True),
                "Content-Type": "text/html; charset=utf-8",
                "Content-Length": str(len(body)),
                "Connection": "close",
            }
            headers.update(CAMOUFLAGE_HEADERS)
            head = f"HTTP/1.1 {status}\r\n" + "".join(f"{k}: {v}\r\n" for k, v in headers.items()) + "\r\n"
            writer.write(head.encode("latin-1"))
            if method != "HEAD":
                writer.write(body)
            await writer.drain()
        except (asyncio.TimeoutError, ConnectionError, ValueError) as e:
            logger.debug(f"Camouflage client dropped: {e}")
        finally:
            writer.close()


class TrustTunnelEngine(BaseEngine):
    """
    HTTP/3 transport built on gost's relay+quic, with TLS 1.3 settings,
    an application-layer camouflage profile and an optional decoy website
    served over TCP on the same port number.
    """

    name = "trusttunnel"
    display_name = "TrustTunnel"
    config_suffix = ".json"
    default_settle_delay = 3.0
    success_patterns = {
        "stdout": ("listening", "service is running"),
        "stderr": ("listening", "service"),
    }
    error_patterns = ("failed", "error")

    def __init__(self, *args, serve_decoy: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.serve_decoy = serve_decoy
        self.decoys: Dict[str, DecoySite] = {}

    def resolve_mode(self, options: Dict[str, Any]) -> str:
        mode = options.get("trusttunnel_mode") or options.get("mode") or "server"
        if mode not in ("client", "server"):
            raise ValueError(f"Unsupported TrustTunnel mode '{mode}'")
        return mode

    def binary_name(self, mode: str) -> str:
        return "gost"

    def configured_binary(self, mode: str) -> str:
        return settings.gost_binary

    def _listen_port(self, options: Dict[str, Any]) -> int:
        return int(options.get("listen_port") or settings.trusttunnel_port)

    def build_tunnel_config(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Dict[str, Any]:
        listen_addr = options.get("listen_addr", "0.0.0.0")
        cert_dir = Path(options.get("cert_dir") or settings.cert_dir) / "trusttunnel"
        target_addr = options.get("target_addr") or (options.get("far_ip") if mode == "client" else None)
        target_port = options.get("target_port") or (options.get("far_port") if mode == "client" else None)
        camouflage_enabled = options.get("camouflage_enabled", True)

        return {
            "version": "1.0",
            "tunnel_id": tunnel_id,
            "mode": mode,
            "transport": {
                "type": "http3",
                "listen": format_address_port(listen_addr, self._listen_port(options)),
                "tls": {
                    "cert_file": options.get("tls_cert_file") or str(cert_dir / f"{tunnel_id}.crt"),
                    "key_file": options.get("tls_key_file") or str(cert_dir / f"{tunnel_id}.key"),
                    "alpn": options.get("alpn") or ["h3", "h2", "http/1.1"],
                    "sni": options.get("sni") or settings.camouflage_sni,
                    "min_version": "TLS1.3",
                },
                "quic": {**DEFAULT_QUIC, **(options.get("quic") or {})},
            },
            "routing": {
                "upstream": format_address_port(target_addr, int(target_port)) if target_addr and target_port else None,
            },
            "auth": {"method": "token", "token": options["auth"]} if options.get("auth") else None,
            "camouflage": {
                "enabled": camouflage_enabled,
                "type": "fake-website",
                "profile": options.get("camouflage_profile") or settings.camouflage_profile,
                "traffic_shaping": {
                    "enabled": True,
                    "min_delay": 5,
                    "max_delay": 50,
                    "padding_enabled": True,
                    "padding_min_bytes": 64,
                    "padding_max_bytes": 256,
                },
                "app_layer": {"mimic_protocol": "https", "headers": CAMOUFLAGE_HEADERS},
            },
            "multipath": options.get("multipath") or {"enabled": False, "paths": 2, "strategy": "round-robin"},
            "logging": {"level": "info", "file": str(Path(settings.log_dir) / f"trusttunnel-{tunnel_id}.log")},
            "limits": {
                "max_connections": 1000,
                "max_connections_per_ip": 50,
                "rate_limit_per_ip": "100mbps",
                "idle_timeout": 300,
            },
        }

    def render_config(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Optional[str]:
        return json.dumps(self.build_tunnel_config(tunnel_id, mode, options), indent=2) + "\n"

    def build_argv(
        self, tunnel_id: str, mode: str, options: Dict[str, Any], config_path: Optional[str], binary: str
    ) -> List[str]:
        listen_addr = options.get("listen_addr", "0.0.0.0")
        listen_port = self._listen_port(options)
        auth = f"{options['auth']}@" if options.get("auth") else ""
        if mode == "server":
            return [binary, "-L", f"relay+quic://{auth}{format_address_port(listen_addr, listen_port)}"]

        far_ip = options.get("far_ip") or options.get("target_addr")
        if not far_ip:
            raise ValueError("TrustTunnel client requires 'far_ip'")
        far_port = int(options.get("far_port") or settings.trusttunnel_port)
        target = format_address_port(options.get("target_addr") or "127.0.0.1", int(options.get("target_port") or listen_port))
        return [
            binary,
            "-L", f"tcp://{format_address_port(listen_addr, listen_port)}/{target}",
            "-F", f"relay+quic://{auth}{format_address_port(far_ip, far_port)}",
        ]

    def build_env(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Dict[str, str]:
        return {"ELAHE_TUNNEL_ID": tunnel_id}

    async def _on_started(self, handle: EngineRuntimeHandle) -> Dict[str, Any]:
        options = handle.options
        camouflage = handle.mode == "server" and options.get("camouflage_enabled", True)
        active = False
        if camouflage and self.serve_decoy:
            profile = options.get("camouflage_profile") or settings.camouflage_profile
            decoy = DecoySite(self._listen_port(options), camouflage_page(profile))
            try:
                await decoy.start()
                self.decoys[handle.tunnel_id] = decoy
                active = True
            except OSError as e:
                logger.warning(f"Camouflage site for tunnel {handle.tunnel_id} could not bind: {e}")
        handle.extra["camouflage_active"] = active
        return {"camouflage_active": active}

    async def _on_stopped(self, handle: EngineRuntimeHandle) -> None:
        decoy = self.decoys.pop(handle.tunnel_id, None)
        if decoy is not None:
            await decoy.stop()
