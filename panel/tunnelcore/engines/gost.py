"""GOST v3 engine"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from tunnelcore.config import settings
from tunnelcore.engines.base import BaseEngine
from tunnelcore.utils import format_address_port

logger = logging.getLogger(__name__)

GOST_MODES = ("relay", "forward", "reverse", "socks5", "http")
GOST_TRANSPORTS = ("tcp", "tls", "quic", "wss", "mwss", "h2", "grpc", "mtls", "mquic")


class GostEngine(BaseEngine):
    """
    Runs gost with a generated JSON service/chain configuration.

    Modes:
        relay: relay server listening on the tunnel port (far side)
        forward: local port forwarded to a target, optionally through a relay chain
        reverse: remote port forwarding (rtcp) through the far relay
        socks5 / http: proxy services on the tunnel port
    """

    name = "gost"
    display_name = "GOST"
    config_suffix = ".json"
    default_settle_delay = 3.0
    success_patterns = {
        "stdout": ("listening", "service is running"),
        "stderr": ("listening", "service"),
    }
    error_patterns = ("failed", "error")

    def resolve_mode(self, options: Dict[str, Any]) -> str:
        mode = options.get("gost_mode") or options.get("mode") or "forward"
        if mode not in GOST_MODES:
            raise ValueError(f"Unsupported GOST mode '{mode}'")
        return mode

    def binary_name(self, mode: str) -> str:
        return "gost"

    def configured_binary(self, mode: str) -> str:
        return settings.gost_binary

    def _transport(self, options: Dict[str, Any]) -> str:
        transport = options.get("transport") or "tcp"
        if transport not in GOST_TRANSPORTS:
            raise ValueError(f"Unsupported GOST transport '{transport}'")
        return transport

    def _listen_port(self, options: Dict[str, Any]) -> int:
        return int(options.get("listen_port") or options["local_port"])

    def _target(self, options: Dict[str, Any]) -> str:
        host = options.get("target_addr") or "127.0.0.1"
        port = options.get("target_port") or self._listen_port(options)
        return format_address_port(host, int(port))

    def _auth(self, options: Dict[str, Any]) -> Optional[Dict[str, str]]:
        if options.get("username") and options.get("password"):
            return {"username": options["username"], "password": options["password"]}
        return None

    def _chain(self, tunnel_id: str, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        far_ip = options.get("far_ip")
        if not far_ip:
            return None
        transport = self._transport(options)
        node: Dict[str, Any] = {
            "name": "far-relay",
            "addr": format_address_port(far_ip, int(options.get("far_port") or self._listen_port(options))),
            "connector": {"type": "relay"},
            "dialer": {"type": transport},
        }
        auth = self._auth(options)
        if auth:
            node["connector"]["auth"] = auth
        if transport in ("tls", "wss", "mwss", "h2", "grpc", "mtls", "quic", "mquic"):
            node["dialer"]["tls"] = {"serverName": options.get("sni") or far_ip, "secure": False}
        return {"name": f"chain-{tunnel_id}", "hops": [{"name": "hop-0", "nodes": [node]}]}

    def build_service_config(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Dict[str, Any]:
        listen = f":{self._listen_port(options)}"
        transport = self._transport(options)
        service: Dict[str, Any] = {"name": f"service-{tunnel_id}", "addr": listen}
        config: Dict[str, Any] = {"services": [service]}
        chain = None

        if mode == "relay":
            service["handler"] = {"type": "relay"}
            service["listener"] = {"type": transport}
            auth = self._auth(options)
            if auth:
                service["handler"]["auth"] = auth
        elif mode == "forward":
            chain = self._chain(tunnel_id, options)
            service["handler"] = {"type": "tcp"}
            service["listener"] = {"type": "tcp"}
            service["forwarder"] = {"nodes": [{"name": "target-0", "addr": self._target(options)}]}
        elif mode == "reverse":
            chain = self._chain(tunnel_id, options)
            if chain is None:
                raise ValueError("GOST reverse mode requires 'far_ip'")
            service["handler"] = {"type": "rtcp"}
            service["listener"] = {"type": "rtcp"}
            service["forwarder"] = {"nodes": [{"name": "target-0", "addr": self._target(options)}]}
        else:
            service["handler"] = {"type": mode}
            service["listener"] = {"type": transport}
            auth = self._auth(options)
            if auth:
                service["handler"]["auth"] = auth

        if chain is not None:
            service["handler"]["chain"] = chain["name"]
            config["chains"] = [chain]
        config["log"] = {"level": options.get("log_level", "info"), "format": "json", "output": "stderr"}
        return config

    def build_urls(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Tuple[List[str], List[str]]:
        """Equivalent -L / -F URLs for the argv form"""
        transport = self._transport(options)
        listen_port = self._listen_port(options)
        auth = self._auth(options)
        auth_prefix = f"{auth['username']}:{auth['password']}@" if auth else ""
        forwards: List[str] = []
        if options.get("far_ip") and mode in ("forward", "reverse"):
            far = format_address_port(options["far_ip"], int(options.get("far_port") or listen_port))
            scheme = "relay" if transport == "tcp" else f"relay+{transport}"
            forwards.append(f"{scheme}://{auth_prefix}{far}")

        if mode == "relay":
            scheme = "relay" if transport == "tcp" else f"relay+{transport}"
            listens = [f"{scheme}://{auth_prefix}:{listen_port}"]
        elif mode == "forward":
            listens = [f"tcp://:{listen_port}/{self._target(options)}"]
        elif mode == "reverse":
            if not forwards:
                raise ValueError("GOST reverse mode requires 'far_ip'")
            listens = [f"rtcp://:{listen_port}/{self._target(options)}"]
        else:
            scheme = mode if transport == "tcp" else f"{mode}+{transport}"
            listens = [f"{scheme}://{auth_prefix}:{listen_port}"]
        return listens, forwards

    def render_config(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Optional[str]:
        if options.get("config_format") == "argv":
            return None
        return json.dumps(self.build_service_config(tunnel_id, mode, options), indent=2) + "\n"

    def build_argv(
        self, tunnel_id: str, mode: str, options: Dict[str, Any], config_path: Optional[str], binary: str
    ) -> List[str]:
        if config_path:
            return [binary, "-C", config_path]
        listens, forwards = self.build_urls(tunnel_id, mode, options)
        argv = [binary]
        for url in listens:
            argv += ["-L", url]
        for url in forwards:
            argv += ["-F", url]
        return argv
