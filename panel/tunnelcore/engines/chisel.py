"""Chisel HTTP tunnel engine"""
import logging
import secrets
from typing import Any, Dict, List, Optional

from tunnelcore.config import settings
from tunnelcore.engines.base import BaseEngine
from tunnelcore.utils import format_address_port

logger = logging.getLogger(__name__)


class ChiselEngine(BaseEngine):
    """Runs ``chisel server`` on the far side or ``chisel client`` on the near side"""

    name = "chisel"
    display_name = "Chisel"
    default_settle_delay = 5.0
    success_patterns = {
        "stdout": ("Connected", "Listening", "server is running"),
        "stderr": ("Connected", "Listening", "server is running"),
    }
    error_patterns = ("failed", "error", "denied")

    def resolve_mode(self, options: Dict[str, Any]) -> str:
        mode = options.get("chisel_mode") or options.get("mode") or "client"
        if mode not in ("client", "server"):
            raise ValueError(f"Unsupported Chisel mode '{mode}'")
        return mode

    def binary_name(self, mode: str) -> str:
        return "chisel"

    def configured_binary(self, mode: str) -> str:
        return settings.chisel_binary

    def build_argv(
        self, tunnel_id: str, mode: str, options: Dict[str, Any], config_path: Optional[str], binary: str
    ) -> List[str]:
        keepalive = options.get("keepalive", "25s")
        if mode == "server":
            argv = [
                binary, "server",
                "--host", options.get("host", "0.0.0.0"),
                "--port", str(options.get("listen_port") or options.get("server_port") or 8080),
            ]
            if options.get("auth"):
                argv += ["--auth", options["auth"]]
            if options.get("tls_key") and options.get("tls_cert"):
                argv += ["--tls-key", options["tls_key"], "--tls-cert", options["tls_cert"]]
            elif options.get("tls_domain"):
                argv += ["--tls-domain", options["tls_domain"]]
            if options.get("reverse", True):
                argv.append("--reverse")
            if options.get("socks5"):
                argv.append("--socks5")
            argv += ["--keepalive", keepalive]
            if options.get("backend"):
                argv += ["--backend", options["backend"]]
            return argv

        far_ip = options.get("far_ip") or options.get("server_addr")
        if not far_ip:
            raise ValueError("Chisel client requires 'far_ip'")
        listen_port = int(options.get("listen_port") or options["local_port"])
        server_port = int(options.get("far_port") or options.get("server_port") or 8080)
        scheme = "https" if options.get("tls_enabled") else "http"
        server_url = f"{scheme}://{format_address_port(far_ip, server_port)}"

        argv = [binary, "client"]
        if options.get("auth"):
            argv += ["--auth", options["auth"]]
        if options.get("fingerprint"):
            argv += ["--fingerprint", options["fingerprint"]]
        argv += [
            "--keepalive", keepalive,
            "--max-retry-count", str(options.get("max_retry_count", 10)),
            "--max-retry-interval", options.get("max_retry_interval", "10s"),
        ]
        if options.get("proxy"):
            argv += ["--proxy", options["proxy"]]
        if options.get("hostname"):
            argv += ["--hostname", options["hostname"]]
        if options.get("sni"):
            argv += ["--sni", options["sni"]]
        if options.get("tls_skip_verify"):
            argv.append("--tls-skip-verify")
        argv.append(server_url)

        remotes = options.get("remotes")
        if not remotes:
            target = format_address_port(
                options.get("target_addr") or "127.0.0.1",
                int(options.get("target_port") or listen_port),
            )
            prefix = "R:" if options.get("reverse") else ""
            remotes = [f"{prefix}0.0.0.0:{listen_port}:{target}"]
        argv.extend(remotes)
        return argv

    def generate_auth(self, tunnel_id: str) -> str:
        """user:password credentials for --auth"""
        return f"elahe-{tunnel_id[:8]}:{secrets.token_urlsafe(18)}"
