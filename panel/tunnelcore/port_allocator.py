"""In-memory port assignment set rebuilt from the tunnel registry"""
import logging
import random
from typing import Dict, Iterable, Optional

from tunnelcore.config import settings
from tunnelcore.errors import InvalidPort, PortInUse
from tunnelcore.utils import is_valid_port

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Tracks which ports are bound by tunnels owned by this service.
    
    Ports are reserved before the registry row is inserted. Each entry may
    later be claimed by the record id that owns it.
    """
    
    def __init__(
        self,
        range_min: Optional[int] = None,
        range_max: Optional[int] = None,
        reserved: Optional[Iterable[int]] = None,
        max_attempts: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ):
        self.range_min = range_min if range_min is not None else settings.port_range_min
        self.range_max = range_max if range_max is not None else settings.port_range_max
        self.reserved = frozenset(reserved if reserved is not None else settings.reserved_ports)
        self.max_attempts = max_attempts if max_attempts is not None else settings.port_allocation_attempts
        self._rng = rng or random.Random()
        self._assigned: Dict[int, Optional[str]] = {}
        self._loaded = False
    
    @property
    def loaded(self) -> bool:
        return self._loaded
    
    @property
    def assigned(self) -> Dict[int, Optional[str]]:
        return dict(self._assigned)
    
    def _ensure_loaded(self):
        if not self._loaded:
            raise RuntimeError("PortAllocator used before rebuild() loaded the active tunnel ports")
    
    def rebuild(self, ports: Iterable) -> None:
        """
        Replace state with the ports of all active records.
        
        Accepts plain ports or (port, owner_id) pairs.
        """
        self._assigned.clear()
        for item in ports:
            if isinstance(item, tuple):
                port, owner = item
            else:
                port, owner = item, None
            self._assigned[int(port)] = owner
        self._loaded = True
        logger.info(f"Port allocator rebuilt with {len(self._assigned)} active port(s)")
    
    def is_assigned(self, port: int) -> bool:
        return port in self._assigned
    
    def owner(self, port: int) -> Optional[str]:
        return self._assigned.get(port)
    
    def allocate_random(self) -> int:
        """Pick a free port from the dynamic range and mark it assigned"""
        self._ensure_loaded()
        for _ in range(self.max_attempts):
            port = self._rng.randint(self.range_min, self.range_max)
            if port in self.reserved or port in self._assigned:
                continue
            self._assigned[port] = None
            return port
        
        # Saturated range: best-effort port, possibly one already assigned
        port = self._rng.randint(self.range_min, self.range_max)
        while port in self.reserved:
            port = self._rng.randint(self.range_min, self.range_max)
        logger.warning(
            f"No free port found after {self.max_attempts} attempts, falling back to {port} "
            f"which may already be in use"
        )
        self._assigned.setdefault(port, None)
        return port
    
    def reserve(self, port) -> int:
        """Mark an explicit port assigned"""
        self._ensure_loaded()
        if not is_valid_port(port):
            raise InvalidPort(f"Invalid port: {port!r}", port=port)
        if port in self._assigned:
            raise PortInUse(f"Port {port} is already in use", port=port)
        self._assigned[port] = None
        return port
    
    def claim(self, port: int, owner: str) -> None:
        """Record which tunnel owns an assigned port"""
        self._assigned[port] = owner
    
    def release(self, port: Optional[int]) -> None:
        if port is None:
            return
        self._assigned.pop(port, None)
