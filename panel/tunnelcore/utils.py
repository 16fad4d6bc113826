"""Utility helpers for addresses, binaries, rendering and process inspection"""
import ipaddress
import secrets
import shlex
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import psutil


def format_address_port(host: str, port: Optional[int] = None) -> str:
    """
    Format host and port into address:port string, handling IPv6 addresses.
    
    Args:
        host: Host address (IPv4, IPv6, or hostname)
        port: Port number (optional)
        
    Returns:
        Formatted string: "host:port" or "[ipv6]:port" or "host"
    """
    if not host:
        return ""
    
    try:
        ipaddress.IPv6Address(host)
        if port is not None:
            return f"[{host}]:{port}"
        return host
    except (ValueError, ipaddress.AddressValueError):
        if port is not None:
            return f"{host}:{port}"
        return host


def is_valid_port(port: Any) -> bool:
    """True for integers in 1..65535 (bools are rejected)"""
    if isinstance(port, bool) or not isinstance(port, int):
        return False
    return 1 <= port <= 65535


def resolve_binary(name: str, configured: str = "", candidates: Sequence[str] = ()) -> Path:
    """
    Locate an executable for an engine.
    
    Order: explicit configured path, well-known install locations, then PATH.
    
    Raises:
        FileNotFoundError: if nothing matches
    """
    if configured:
        configured_path = Path(configured)
        if configured_path.exists():
            return configured_path
    
    for candidate in candidates or (f"/usr/local/bin/{name}", f"/usr/bin/{name}"):
        path = Path(candidate)
        if path.exists():
            return path
    
    resolved = shutil.which(name)
    if resolved:
        return Path(resolved)
    
    raise FileNotFoundError(
        f"{name} binary not found. Expected at the configured path, /usr/local/bin/{name}, or in PATH."
    )


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    value_str = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f"\"{value_str}\""


def render_toml(data: Dict[str, Any]) -> str:
    """
    Render a small TOML document.
    
    Top-level scalars come first, then one [section] per dict value and one
    [[section]] block per item of a list of dicts. Nested dicts inside a
    section are flattened to dotted keys (``auth.token = "..."``). ``None``
    values are skipped.
    """
    scalars: List[str] = []
    blocks: List[str] = []
    
    def flatten(prefix: str, values: Dict[str, Any], out: List[str]) -> None:
        for key, val in values.items():
            if val is None:
                continue
            full_key = f"{prefix}{key}"
            if isinstance(val, dict):
                flatten(f"{full_key}.", val, out)
            else:
                out.append(f"{full_key} = {_toml_value(val)}")
    
    for key, val in data.items():
        if val is None:
            continue
        if isinstance(val, dict):
            lines: List[str] = []
            flatten("", val, lines)
            blocks.append("\n".join([f"[{key}]"] + lines))
        elif isinstance(val, list) and val and all(isinstance(item, dict) for item in val):
            for item in val:
                lines = []
                flatten("", item, lines)
                blocks.append("\n".join([f"[[{key}]]"] + lines))
        else:
            scalars.append(f"{key} = {_toml_value(val)}")
    
    parts = []
    if scalars:
        parts.append("\n".join(scalars))
    parts.extend(blocks)
    return "\n\n".join(parts) + "\n"


def generate_token(nbytes: int = 16) -> str:
    return secrets.token_hex(nbytes)


def shell_join(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in argv)


def pid_alive(pid: Optional[int]) -> bool:
    """Check whether a process id refers to a live, non-zombie process"""
    if not pid:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def process_io_counters(pid: Optional[int]) -> Dict[str, int]:
    """Best-effort bytes read/written by a child process"""
    if not pid:
        return {"bytes_in": 0, "bytes_out": 0}
    try:
        counters = psutil.Process(pid).io_counters()
    except (psutil.NoSuchProcess, psutil.AccessDenied, AttributeError):
        return {"bytes_in": 0, "bytes_out": 0}
    bytes_in = getattr(counters, "read_chars", None) or counters.read_bytes
    bytes_out = getattr(counters, "write_chars", None) or counters.write_bytes
    return {"bytes_in": int(bytes_in), "bytes_out": int(bytes_out)}
