"""FRP client/server engine"""
import logging
from typing import Any, Dict, List, Optional

from tunnelcore.config import settings
from tunnelcore.engines.base import BaseEngine
from tunnelcore.utils import render_toml

logger = logging.getLogger(__name__)

PROXY_TYPES = ("tcp", "udp", "stcp", "xtcp", "http", "https")
FRP_TRANSPORTS = ("tcp", "kcp", "quic", "websocket", "wss")


class FRPEngine(BaseEngine):
    """Runs frpc (client, near side) or frps (server, far side) from a TOML config"""

    name = "frp"
    display_name = "FRP"
    config_suffix = ".toml"
    default_settle_delay = 5.0
    success_patterns = {"stdout": ("login to server success", "start proxy success")}
    auth_patterns = {"stderr": ("login to server failed", "connect to server error")}

    def resolve_mode(self, options: Dict[str, Any]) -> str:
        mode = options.get("frp_mode") or options.get("mode") or "client"
        if mode not in ("client", "server"):
            raise ValueError(f"Unsupported FRP mode '{mode}'")
        return mode

    def binary_name(self, mode: str) -> str:
        return "frps" if mode == "server" else "frpc"

    def configured_binary(self, mode: str) -> str:
        return settings.frps_binary if mode == "server" else settings.frpc_binary

    def render_config(self, tunnel_id: str, mode: str, options: Dict[str, Any]) -> Optional[str]:
        if mode == "server":
            return render_toml(self._server_config(options))
        return render_toml(self._client_config(tunnel_id, options))

    def build_argv(
        self, tunnel_id: str, mode: str, options: Dict[str, Any], config_path: Optional[str], binary: str
    ) -> List[str]:
        return [binary, "-c", config_path]

    def _auth(self, options: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        token = options.get("token")
        if not token:
            return None
        return {"method": "token", "token": token}

    def _client_config(self, tunnel_id: str, options: Dict[str, Any]) -> Dict[str, Any]:
        server_addr = options.get("server_addr") or options.get("far_ip")
        if not server_addr:
            raise ValueError("FRP client requires 'server_addr' or 'far_ip'")
        transport = options.get("transport") if options.get("transport") in FRP_TRANSPORTS else "tcp"

        proxies = options.get("proxies") or [self._default_proxy(tunnel_id, options)]
        return {
            "serverAddr": server_addr,
            "serverPort": int(options.get("server_port") or options.get("far_port") or 7000),
            "loginFailExit": False,
            "user": options.get("user"),
            "auth": self._auth(options),
            "transport": {
                "protocol": transport,
                "poolCount": int(options.get("pool_count", 5)),
                "tcpMux": options.get("tcp_mux", True),
                "heartbeatInterval": int(options.get("heartbeat_interval", 30)),
                "heartbeatTimeout": int(options.get("heartbeat_timeout", 90)),
                "tls": {"enable": bool(options.get("tls_enabled", True))},
            },
            "log": {"to": "console", "level": options.get("log_level", "info"), "disablePrintColor": True},
            "proxies": [self._proxy(tunnel_id, proxy) for proxy in proxies],
        }

    def _default_proxy(self, tunnel_id: str, options: Dict[str, Any]) -> Dict[str, Any]:
        listen_port = options.get("listen_port") or options.get("remote_port")
        return {
            "name": f"{tunnel_id}-{options.get('proxy_type', 'tcp')}",
            "type": options.get("proxy_type", "tcp"),
            "local_ip": options.get("target_addr") or "127.0.0.1",
            "local_port": options.get("target_port") or options.get("local_port") or listen_port,
            "remote_port": listen_port,
            "custom_domains": options.get("custom_domains"),
            "secret_key": options.get("secret_key"),
            "use_encryption": options.get("use_encryption", True),
            "use_compression": options.get("use_compression", True),
            "bandwidth_limit": options.get("bandwidth_limit"),
        }

    def _proxy(self, tunnel_id: str, proxy: Dict[str, Any]) -> Dict[str, Any]:
        proxy_type = proxy.get("type", "tcp")
        if proxy_type not in PROXY_TYPES:
            raise ValueError(f"Unsupported FRP proxy type '{proxy_type}'")
        if proxy.get("local_port") is None:
            raise ValueError("FRP proxy requires 'local_port'")

        rendered: Dict[str, Any] = {
            "name": proxy.get("name") or f"{tunnel_id}-{proxy_type}",
            "type": proxy_type,
            "localIP": proxy.get("local_ip") or "127.0.0.1",
            "localPort": int(proxy["local_port"]),
        }
        if proxy_type in ("tcp", "udp"):
            if proxy.get("remote_port") is None:
                raise ValueError(f"FRP {proxy_type} proxy requires 'remote_port'")
            rendered["remotePort"] = int(proxy["remote_port"])
        elif proxy_type in ("http", "https"):
            domains = proxy.get("custom_domains")
            if not domains:
                raise ValueError(f"FRP {proxy_type} proxy requires 'custom_domains'")
            rendered["customDomains"] = list(domains)
        else:
            rendered["secretKey"] = proxy.get("secret_key") or ""
        rendered["transport"] = {
            "useEncryption": bool(proxy.get("use_encryption", True)),
            "useCompression": bool(proxy.get("use_compression", True)),
            "bandwidthLimit": proxy.get("bandwidth_limit"),
        }
        return rendered

    def _server_config(self, options: Dict[str, Any]) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "bindAddr": options.get("bind_addr", "0.0.0.0"),
            "bindPort": int(options.get("bind_port") or options.get("listen_port") or 7000),
            "kcpBindPort": options.get("kcp_bind_port"),
            "quicBindPort": options.get("quic_bind_port"),
            "vhostHTTPPort": options.get("vhost_http_port"),
            "vhostHTTPSPort": options.get("vhost_https_port"),
            "auth": self._auth(options),
            "transport": {
                "maxPoolCount": int(options.get("max_pool_count", 5)),
                "tcpMux": options.get("tcp_mux", True),
                "heartbeatTimeout": int(options.get("heartbeat_timeout", 90)),
                "tls": {"force": bool(options.get("tls_force", False))},
            },
            "log": {"to": "console", "level": options.get("log_level", "info"), "disablePrintColor": True},
        }
        if options.get("allow_ports"):
            config["allowPorts"] = [{"start": r[0], "end": r[1]} for r in options["allow_ports"]]
        if options.get("dashboard_port"):
            config["webServer"] = {
                "addr": "0.0.0.0",
                "port": int(options["dashboard_port"]),
                "user": options.get("dashboard_user", "admin"),
                "password": options.get("dashboard_password"),
            }
        return config
