"""Error types shared by the allocator, engines, manager and autopilot"""
from typing import Any, Dict


class TunnelCoreError(Exception):
    """Base error carrying a machine readable code"""
    
    code = "tunnel_core_error"
    
    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details
    
    def to_result(self) -> Dict[str, Any]:
        result = {"success": False, "error": self.message, "code": self.code}
        result.update(self.details)
        return result


class InvalidPort(TunnelCoreError):
    code = "invalid_port"


class PortInUse(TunnelCoreError):
    code = "port_in_use"


class PortConflict(TunnelCoreError):
    code = "port_conflict"


class ReservedPort(TunnelCoreError):
    code = "reserved_port"


class UnknownEngine(TunnelCoreError):
    code = "unknown_engine"


class NodeNotFound(TunnelCoreError):
    code = "node_not_found"


class TunnelNotFound(TunnelCoreError):
    code = "tunnel_not_found"


class AdapterAlreadyRunning(TunnelCoreError):
    code = "already_running"


class AdapterNotFound(TunnelCoreError):
    code = "not_found"


class ProcessSpawnFailure(TunnelCoreError):
    code = "spawn_failed"


class ProcessExitedUnexpectedly(TunnelCoreError):
    code = "process_exited"


class MaxRetriesExceeded(TunnelCoreError):
    code = "max_retries_exceeded"


class ProbeFailure(TunnelCoreError):
    code = "probe_failed"
