"""Rendering of systemd units and setup scripts for manual node deployment"""
from typing import Dict, Optional, Sequence

from tunnelcore.config import settings
from tunnelcore.utils import shell_join

DEPLOY_ROOT = "/etc/elahe"
UNIT_DIR = "/etc/systemd/system"


def install_snippet(binary: str) -> str:
    """Shell lines installing an engine binary into /usr/local/bin"""
    if binary == "ssh":
        return "  apt-get update && apt-get install -y openssh-client"
    if binary in ("frpc", "frps"):
        version = settings.frp_version
        return (
            f"  curl -fsSL -o /tmp/frp.tar.gz "
            f"https://github.com/fatedier/frp/releases/download/v{version}/frp_{version}_linux_amd64.tar.gz\n"
            f"  tar -xzf /tmp/frp.tar.gz -C /tmp\n"
            f"  install -m 0755 /tmp/frp_{version}_linux_amd64/{binary} /usr/local/bin/{binary}"
        )
    if binary == "gost":
        version = settings.gost_version
        return (
            f"  curl -fsSL -o /tmp/gost.tar.gz "
            f"https://github.com/go-gost/gost/releases/download/v{version}/gost_{version}_linux_amd64.tar.gz\n"
            f"  tar -xzf /tmp/gost.tar.gz -C /tmp gost\n"
            f"  install -m 0755 /tmp/gost /usr/local/bin/gost"
        )
    if binary == "chisel":
        version = settings.chisel_version
        return (
            f"  curl -fsSL -o /tmp/chisel.gz "
            f"https://github.com/jpillora/chisel/releases/download/v{version}/chisel_{version}_linux_amd64.gz\n"
            f"  gunzip -f /tmp/chisel.gz\n"
            f"  install -m 0755 /tmp/chisel /usr/local/bin/chisel"
        )
    raise ValueError(f"No install recipe for binary '{binary}'")


def render_unit(description: str, argv: Sequence[str], env: Optional[Dict[str, str]] = None) -> str:
    lines = [
        "[Unit]",
        f"Description={description}",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        "Type=simple",
    ]
    for key, value in (env or {}).items():
        lines.append(f"Environment={key}={value}")
    lines.extend([
        f"ExecStart={shell_join(argv)}",
        "Restart=always",
        "RestartSec=5",
        "LimitNOFILE=1048576",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
    ])
    return "\n".join(lines) + "\n"


def render_setup_script(
    binary: str,
    unit_name: str,
    unit_text: str,
    config_path: Optional[str] = None,
    config_text: Optional[str] = None,
) -> str:
    """
    Idempotent POSIX script: installs the binary only when missing, writes
    config and unit through heredocs, then (re)starts the service.
    """
    lines = [
        "#!/bin/sh",
        "set -e",
        "",
        f"if ! command -v {binary} >/dev/null 2>&1; then",
        install_snippet(binary),
        "fi",
        "",
    ]
    if config_path and config_text is not None:
        config_dir = config_path.rsplit("/", 1)[0]
        lines.extend([
            f"mkdir -p {config_dir}",
            f"cat > {config_path} <<'ELAHE_CONFIG'",
            config_text.rstrip("\n"),
            "ELAHE_CONFIG",
            "",
        ])
    lines.extend([
        f"mkdir -p {UNIT_DIR}",
        f"cat > {UNIT_DIR}/{unit_name}.service <<'ELAHE_UNIT'",
        unit_text.rstrip("\n"),
        "ELAHE_UNIT",
        "",
        "systemctl daemon-reload",
        f"systemctl enable {unit_name}",
        f"systemctl restart {unit_name}",
    ])
    return "\n".join(lines) + "\n"
