"""Unit tests for local port allocation."""

import asyncio
import socket

import pytest

from models.errors import PortExhaustedError
from validator import ports as ports_module
from validator.ports import PortAllocator, is_port_free


@pytest.fixture
def all_ports_free(monkeypatch):
    monkeypatch.setattr(ports_module, "is_port_free", lambda port, host="127.0.0.1": True)


class TestPortAllocator:

    @pytest.mark.asyncio
    async def test_concurrent_claims_never_collide(self, all_ports_free):
        allocator = PortAllocator(20000, 50)
        held = []

        async def worker():
            async with allocator.claim() as port:
                assert port not in held
                held.append(port)
                await asyncio.sleep(0.01)
                held.remove(port)
                return port

        claimed = await asyncio.gather(*(worker() for _ in range(20)))
        assert all(20000 <= port < 20050 for port in claimed)
        assert allocator.in_use == 0

    @pytest.mark.asyncio
    async def test_released_on_exception(self, all_ports_free):
        allocator = PortAllocator(20000, 2)
        with pytest.raises(RuntimeError):
            async with allocator.claim():
                raise RuntimeError("boom")
        assert allocator.in_use == 0

    @pytest.mark.asyncio
    async def test_exhausted_range(self, all_ports_free):
        allocator = PortAllocator(20000, 1)
        async with allocator.claim() as port:
            assert port == 20000
            with pytest.raises(PortExhaustedError):
                await allocator.acquire()

    @pytest.mark.asyncio
    async def test_skips_ports_in_use_by_others(self, monkeypatch):
        monkeypatch.setattr(ports_module, "is_port_free", lambda port, host="127.0.0.1": port != 20000)
        allocator = PortAllocator(20000, 3)
        async with allocator.claim() as port:
            assert port == 20001

    def test_rejects_empty_range(self):
        with pytest.raises(ValueError):
            PortAllocator(20000, 0)


def test_is_port_free_detects_bound_socket():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        port = sock.getsockname()[1]
        assert is_port_free(port) is False
