"""SSH port forwarding engine"""
import base64
import hashlib
import logging
import os
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from tunnelcore.config import settings
from tunnelcore.engines.base import BaseEngine

logger = logging.getLogger(__name__)

FORWARD_TYPES = ("local", "remote", "dynamic")


class SSHEngine(BaseEngine):
    """Runs ``ssh -N`` with a single -L, -R or -D forward"""

    name = "ssh"
    display_name = "SSH"
    default_settle_delay = 3.0
    auth_patterns = {"stderr": ("Permission denied", "Connection refused")}

    def resolve_mode(self, options: Dict[str, Any]) -> str:
        mode = options.get("forward_type") or options.get("mode") or "local"
        if mode not in FORWARD_TYPES:
            raise ValueError(f"Unsupported SSH forward type '{mode}'")
        return mode

    def binary_name(self, mode: str) -> str:
        return "ssh"

    def configured_binary(self, mode: str) -> str:
        return settings.ssh_binary

    def build_argv(
        self, tunnel_id: str, mode: str, options: Dict[str, Any], config_path: Optional[str], binary: str
    ) -> List[str]:
        far_ip = options.get("far_ip") or options.get("remote_host")
        if not far_ip:
            raise ValueError("SSH tunnel requires 'far_ip'")
        listen_port = int(options.get("listen_port") or options["local_port"])
        target_port = int(options.get("target_port") or listen_port)
        target_host = options.get("target_addr") or "127.0.0.1"
        strict = "yes" if options.get("strict_host_key") else "no"
        keepalive = int(options.get("keepalive_interval", 30))

        argv = [
            binary,
            "-N",
            "-o", "ExitOnForwardFailure=yes",
            "-o", f"ServerAliveInterval={keepalive}",
            "-o", "ServerAliveCountMax=3",
            "-o", f"StrictHostKeyChecking={strict}",
        ]
        if strict == "no":
            argv += ["-o", "UserKnownHostsFile=/dev/null"]
        argv += ["-o", "LogLevel=ERROR"]
        if options.get("compression", True):
            argv.append("-C")
        if options.get("key_path"):
            argv += ["-i", str(options["key_path"])]

        if mode == "local":
            argv += ["-L", f"0.0.0.0:{listen_port}:{target_host}:{target_port}"]
        elif mode == "remote":
            argv += ["-R", f"0.0.0.0:{listen_port}:{target_host}:{target_port}"]
        else:
            argv += ["-D", f"0.0.0.0:{listen_port}"]

        argv += [
            "-p", str(options.get("ssh_port") or options.get("far_ssh_port") or 22),
            f"{options.get('username') or 'root'}@{far_ip}",
        ]
        return argv

    def generate_key_pair(self, tunnel_id: str) -> Dict[str, str]:
        """Create an Ed25519 key pair for a tunnel under the engine's key directory"""
        key_dir = self.config_dir / "keys"
        key_dir.mkdir(parents=True, exist_ok=True)
        private_path = key_dir / f"{tunnel_id}_ed25519"
        public_path = key_dir / f"{tunnel_id}_ed25519.pub"

        private_key = Ed25519PrivateKey.generate()
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH,
        )
        public_line = public_bytes.decode("ascii") + f" elahe-{tunnel_id}"

        private_path.write_bytes(private_bytes)
        os.chmod(private_path, 0o600)
        public_path.write_text(public_line + "\n", encoding="utf-8")
        os.chmod(public_path, 0o644)

        blob = base64.b64decode(public_bytes.split()[1])
        fingerprint = "SHA256:" + base64.b64encode(hashlib.sha256(blob).digest()).decode("ascii").rstrip("=")
        logger.info(f"Generated SSH key pair for tunnel {tunnel_id}: {fingerprint}")
        return {
            "private_key_path": str(private_path),
            "public_key_path": str(public_path),
            "public_key": public_line,
            "fingerprint": fingerprint,
        }
