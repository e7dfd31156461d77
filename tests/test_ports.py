"""Tests for PortAllocator."""

from __future__ import annotations

import asyncio
import socket

import pytest

from stackrun.config import MAX_PORT, MIN_PORT
from stackrun.errors import PortAllocationError
from stackrun.run.ports import PortAllocator, port_is_free


def always_free(port: int) -> bool:
    return True


class TestPortAllocator:
    def test_rejects_empty_range(self):
        with pytest.raises(ValueError):
            PortAllocator(50000, 50000)

    def test_default_range(self):
        allocator = PortAllocator()
        assert (allocator.min_port, allocator.max_port) == (MIN_PORT, MAX_PORT)

    @pytest.mark.asyncio
    async def test_allocates_in_range(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        port = await allocator.allocate()
        assert 50000 <= port <= 50010
        assert allocator.claimed == {port}

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_distinct(self):
        allocator = PortAllocator(50000, 50100, is_free=always_free)
        ports = await asyncio.gather(*(allocator.allocate() for _ in range(20)))
        assert len(set(ports)) == 20
        assert all(50000 <= port <= 50100 for port in ports)

    @pytest.mark.asyncio
    async def test_preferred_port(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        assert await allocator.allocate(preferred=50007) == 50007

    @pytest.mark.asyncio
    async def test_preferred_port_already_claimed(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        await allocator.allocate(preferred=50007)
        assert await allocator.allocate(preferred=50007) == 50000

    @pytest.mark.asyncio
    async def test_preferred_port_outside_range_ignored(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        assert await allocator.allocate(preferred=8080) == 50000

    @pytest.mark.asyncio
    async def test_skips_ports_in_use_on_host(self):
        allocator = PortAllocator(50000, 50010, is_free=lambda port: port != 50000)
        assert await allocator.allocate() == 50001

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        allocator = PortAllocator(50000, 50001, is_free=always_free)
        await allocator.allocate()
        await allocator.allocate()
        with pytest.raises(PortAllocationError, match="50000 and 50001"):
            await allocator.allocate()

    @pytest.mark.asyncio
    async def test_release(self):
        allocator = PortAllocator(50000, 50001, is_free=always_free)
        first = await allocator.allocate()
        await allocator.allocate()
        allocator.release(first)
        assert await allocator.allocate() == first

    @pytest.mark.asyncio
    async def test_claimed_port_is_not_allocated(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        assert await allocator.claim(50000) == 50000
        assert await allocator.allocate() == 50001

    @pytest.mark.asyncio
    async def test_claim_outside_range(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        assert await allocator.claim(8080) == 8080
        assert allocator.claimed == {8080}

    @pytest.mark.asyncio
    async def test_claim_taken_port(self):
        allocator = PortAllocator(50000, 50010, is_free=always_free)
        await allocator.allocate()
        with pytest.raises(PortAllocationError, match="50000 is already claimed"):
            await allocator.claim(50000)


class TestPortIsFree:
    def test_bound_port_is_not_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("0.0.0.0", 0))
            sock.listen()
            port = sock.getsockname()[1]
            assert not port_is_free(port)

    def test_unbound_port_is_free(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("0.0.0.0", 0))
            port = sock.getsockname()[1]
        assert port_is_free(port)
