# validator/ports.py

import asyncio
import logging
import socket
from contextlib import asynccontextmanager
from typing import AsyncIterator, Set

from models.errors import PortExhaustedError

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """检查本地端口当前是否可以绑定。"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """
    为并发运行的 Xray 实例分配互不冲突的本地端口。
    端口在 claim() 的作用域内独占，退出作用域后归还。
    """
    def __init__(self, base_port: int, size: int):
        if size < 1:
            raise ValueError("port range size must be positive")
        self.base_port = base_port
        self.size = size
        self._claimed: Set[int] = set()
        self._cursor = 0 # 轮转起点，避免刚释放的端口被立即复用
        self._lock = asyncio.Lock()

    @property
    def in_use(self) -> int:
        return len(self._claimed)

    async def acquire(self) -> int:
        async with self._lock:
            for offset in range(self.size):
                port = self.base_port + (self._cursor + offset) % self.size
                if port in self._claimed or not is_port_free(port):
                    continue
                self._claimed.add(port)
                self._cursor = (self._cursor + offset + 1) % self.size
                return port
        raise PortExhaustedError(
            f"no free local port in [{self.base_port}, {self.base_port + self.size})")

    def release(self, port: int) -> None:
        self._claimed.discard(port)

    @asynccontextmanager
    async def claim(self) -> AsyncIterator[int]:
        port = await self.acquire()
        try:
            yield port
        finally:
            self.release(port)
