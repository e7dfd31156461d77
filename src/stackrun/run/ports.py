"""Host port allocation for function gateways.

Concurrent run tasks share one ``PortAllocator``. Allocation is serialized
with an ``asyncio.Lock`` and every handed-out port is remembered, so two
tasks of the same cycle never receive the same port even before either
container has bound it.
"""

from __future__ import annotations

import asyncio
import socket

from stackrun.config import MAX_PORT, MIN_PORT
from stackrun.errors import PortAllocationError
from stackrun.logging import get_logger

logger = get_logger(__name__)


def port_is_free(port: int, host: str = "0.0.0.0") -> bool:
    """Return True if *port* can be bound on *host* right now."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Hand out unclaimed, currently free ports in ``[min_port, max_port]``."""

    def __init__(self, min_port: int = MIN_PORT, max_port: int = MAX_PORT, *, is_free=port_is_free) -> None:
        if max_port <= min_port:
            raise ValueError(f"max_port ({max_port}) must be greater than min_port ({min_port})")
        self.min_port = min_port
        self.max_port = max_port
        self._is_free = is_free
        self._claimed: set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def claimed(self) -> frozenset[int]:
        return frozenset(self._claimed)

    def _usable(self, port: int) -> bool:
        return self.min_port <= port <= self.max_port and port not in self._claimed and self._is_free(port)

    async def allocate(self, preferred: int | None = None) -> int:
        """Claim and return a free port, *preferred* first when usable.

        Raises:
            PortAllocationError: If every port in the range is taken.
        """
        async with self._lock:
            if preferred is not None and self._usable(preferred):
                self._claimed.add(preferred)
                return preferred
            for port in range(self.min_port, self.max_port + 1):
                if self._usable(port):
                    self._claimed.add(port)
                    return port
        logger.error("ports.exhausted", min_port=self.min_port, max_port=self.max_port)
        raise PortAllocationError(f"No free port between {self.min_port} and {self.max_port}")

    async def claim(self, port: int) -> int:
        """Claim an explicitly requested *port*.

        The port may lie outside the allocation range but must not be held by
        another task.

        Raises:
            PortAllocationError: If *port* is already claimed.
        """
        async with self._lock:
            if port in self._claimed:
                raise PortAllocationError(f"Port {port} is already claimed")
            self._claimed.add(port)
            return port

    def release(self, port: int) -> None:
        self._claimed.discard(port)


__all__ = ["PortAllocator", "port_is_free"]
