# validator/prober.py

import asyncio
import json
import logging
import os
import ssl
import tempfile
import time
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator, List, Optional

import aiohttp
from aiohttp_socks import ProxyConnectionError, ProxyConnector, ProxyError, ProxyTimeoutError

import config # 绝对导入 config 模块
from models.errors import PortExhaustedError, ProbeFailure, RuntimeConfigError
from models.proxy_model import Endpoint, FailureReason, ProbeResult
from validator.ports import PortAllocator
from validator.xray_config import generate_xray_config

# 获取当前模块的日志记录器
logger = logging.getLogger(__name__)

# 等待本地端口就绪时的轮询间隔（秒）
READY_POLL_INTERVAL = 0.05

# 只保留 Xray stderr 输出的最后这么多字节，用于失败日志
STDERR_TAIL_BYTES = 4096


class Prober:
    """
    通过外部 Xray 进程测试单个节点：
    生成临时配置 -> 启动 Xray 监听本地 SOCKS 端口 -> 经该端口请求测试地址 -> 计算延迟。
    端口、临时配置文件和进程在任何退出路径（成功、失败、超时、取消）上都会被回收。
    """
    def __init__(self, xray_path: str = config.XRAY_PATH, test_url: str = config.TEST_URL,
                 ports: Optional[PortAllocator] = None,
                 startup_timeout: float = config.XRAY_STARTUP_TIMEOUT,
                 request_timeout: float = config.PROXY_CHECK_TIMEOUT,
                 terminate_grace: float = config.XRAY_TERMINATE_GRACE,
                 work_dir: Optional[str] = None):
        self.logger = logging.getLogger(__name__)
        self.xray_path = xray_path
        self.test_url = test_url
        self.ports = ports or PortAllocator(config.BASE_LOCAL_PORT, config.LOCAL_PORT_RANGE)
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.terminate_grace = terminate_grace
        self.work_dir = work_dir # 临时配置文件目录，None 表示系统临时目录
        self._spawn_warned = False

    def runtime_command(self, config_path: str) -> List[str]:
        return [self.xray_path, "run", "-c", config_path]

    async def _spawn(self, config_path: str) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *self.runtime_command(config_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            # 可执行文件缺失或不可执行通常意味着整个环境配置错误，只警告一次
            if not self._spawn_warned:
                self._spawn_warned = True
                self.logger.warning(f"无法启动 Xray ({self.xray_path}): {e}")
            raise ProbeFailure(FailureReason.PROCESS_SPAWN_ERROR, str(e))

    @staticmethod
    async def _drain_stderr(process: asyncio.subprocess.Process) -> bytes:
        """
        持续读取 Xray 的 stderr 直到 EOF，只保留末尾 STDERR_TAIL_BYTES 字节。
        管道必须一直被读取，否则输出较多的进程会在写满管道后阻塞。
        """
        tail = b""
        if process.stderr is None:
            return tail
        while True:
            chunk = await process.stderr.read(STDERR_TAIL_BYTES)
            if not chunk:
                return tail
            tail = (tail + chunk)[-STDERR_TAIL_BYTES:]

    async def _wait_until_ready(self, process: asyncio.subprocess.Process, port: int,
                                stderr_task: "asyncio.Task[bytes]") -> None:
        """
        等待 Xray 打开本地 SOCKS 端口。
        进程提前退出记为 PROCESS_SPAWN_ERROR，超过 startup_timeout 记为 TIMEOUT。
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while True:
            if process.returncode is not None:
                try:
                    stderr = await asyncio.wait_for(asyncio.shield(stderr_task), timeout=self.terminate_grace)
                except asyncio.TimeoutError: # 子进程仍持有管道
                    stderr = b""
                raise ProbeFailure(
                    FailureReason.PROCESS_SPAWN_ERROR,
                    f"xray exited with code {process.returncode}: {stderr.decode('utf-8', 'replace').strip()[-200:]}")
            try:
                _, writer = await asyncio.open_connection("127.0.0.1", port)
            except OSError:
                if loop.time() >= deadline:
                    raise ProbeFailure(FailureReason.TIMEOUT, f"local port {port} not ready")
                await asyncio.sleep(READY_POLL_INTERVAL)
                continue
            writer.close()
            with suppress(OSError):
                await writer.wait_closed()
            return

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """先 SIGTERM，宽限期后仍未退出则 SIGKILL，并回收进程。"""
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
            except asyncio.TimeoutError:
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        self.logger.debug(f"Xray 进程 {process.pid} 已退出，返回码 {process.returncode}")

    async def _cleanup(self, process: Optional[asyncio.subprocess.Process], config_path: str,
                       stderr_task: Optional["asyncio.Task[bytes]"]) -> None:
        if process is not None:
            await self._terminate(process)
        if stderr_task is not None and not stderr_task.done():
            stderr_task.cancel()
        if stderr_task is not None:
            with suppress(asyncio.CancelledError):
                await stderr_task
        with suppress(FileNotFoundError):
            os.remove(config_path)

    @asynccontextmanager
    async def runtime(self, endpoint: Endpoint) -> AsyncIterator[int]:
        """
        为节点启动一个 Xray 实例，产出其本地 SOCKS 端口。
        退出作用域时终止进程、删除临时配置、归还端口。
        """
        async with self.ports.claim() as port:
            xray_config = generate_xray_config(endpoint, port)
            try:
                fd, config_path = tempfile.mkstemp(prefix=f"xray_{port}_", suffix=".json", dir=self.work_dir)
            except OSError as e:
                raise ProbeFailure(FailureReason.PROCESS_SPAWN_ERROR, f"cannot create runtime config: {e}")
            process = None
            stderr_task = None
            try:
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        json.dump(xray_config, f, ensure_ascii=False)
                except OSError as e:
                    raise ProbeFailure(FailureReason.PROCESS_SPAWN_ERROR, f"cannot write runtime config: {e}")
                process = await self._spawn(config_path)
                stderr_task = asyncio.ensure_future(self._drain_stderr(process))
                await self._wait_until_ready(process, port, stderr_task)
                yield port
            finally:
                # 清理过程不受再次取消的影响
                await asyncio.shield(self._cleanup(process, config_path, stderr_task))

    async def _measure(self, port: int) -> float:
        """
        经本地 SOCKS 端口请求测试地址，返回往返延迟（毫秒）。
        """
        connector = ProxyConnector.from_url(f"socks5://127.0.0.1:{port}", rdns=True)
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
                start = time.perf_counter()
                async with session.get(self.test_url, allow_redirects=False) as response:
                    latency_ms = (time.perf_counter() - start) * 1000
                    if not 200 <= response.status < 400:
                        raise ProbeFailure(FailureReason.HANDSHAKE_ERROR, f"status {response.status}")
                    return latency_ms
        except (asyncio.TimeoutError, ProxyTimeoutError) as e:
            raise ProbeFailure(FailureReason.TIMEOUT, str(e) or "request timed out")
        except (ProxyConnectionError, ProxyError) as e:
            raise ProbeFailure(FailureReason.CONNECT_ERROR, str(e))
        except (aiohttp.ClientSSLError, ssl.SSLError) as e:
            raise ProbeFailure(FailureReason.HANDSHAKE_ERROR, str(e))
        except aiohttp.ClientConnectorError as e:
            raise ProbeFailure(FailureReason.CONNECT_ERROR, str(e))
        except aiohttp.ClientError as e:
            raise ProbeFailure(FailureReason.HANDSHAKE_ERROR, str(e))

    async def probe(self, endpoint: Endpoint) -> ProbeResult:
        """
        测试单个节点。
        Args:
            endpoint (Endpoint): 要测试的节点。
        Returns:
            ProbeResult: 成功时包含延迟，失败时包含失败原因。
        """
        try:
            async with self.runtime(endpoint) as port:
                latency_ms = await self._measure(port)
        except ProbeFailure as e:
            self.logger.debug(f"节点 {endpoint.name or endpoint.host} ({endpoint.host}:{endpoint.port}) 测试失败: {e}")
            return ProbeResult.failed(endpoint, e.reason)
        except (RuntimeConfigError, PortExhaustedError) as e:
            self.logger.debug(f"节点 {endpoint.host}:{endpoint.port} 无法启动 Xray: {e}")
            return ProbeResult.failed(endpoint, FailureReason.PROCESS_SPAWN_ERROR)

        self.logger.debug(f"节点 {endpoint.name or endpoint.host} 验证成功。延迟: {latency_ms:.2f}ms")
        return ProbeResult.success(endpoint, latency_ms)
