# validator/validator.py

import asyncio
import logging
from typing import Iterable, List, Optional

import config # 绝对导入 config 模块
from models.proxy_model import Endpoint, FailureReason, ProbeBatch, ProbeResult
from validator.prober import Prober

# 获取当前模块的日志记录器
logger = logging.getLogger(__name__)

# 每完成多少个探测输出一次进度
PROGRESS_EVERY = 100


class ProxyValidator:
    """
    并发调度节点探测：同一时刻最多 concurrency 个探测在运行，
    每个探测超过 timeout 记为 TIMEOUT，且其进程与临时文件在返回前已被回收。
    """
    def __init__(self, prober: Optional[Prober] = None):
        # 实例化时初始化日志记录器
        self.logger = logging.getLogger(__name__)
        self.prober = prober or Prober()

    async def _probe_with_timeout(self, endpoint: Endpoint, timeout: float) -> ProbeResult:
        try:
            # wait_for 超时会取消探测协程，并等待其清理完成后才返回
            return await asyncio.wait_for(self.prober.probe(endpoint), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.debug(f"节点 {endpoint.host}:{endpoint.port} 测试超时 ({timeout}s)。")
            return ProbeResult.failed(endpoint, FailureReason.TIMEOUT)

    async def run(self, endpoints: Iterable[Endpoint],
                  concurrency: int = config.MAX_CONCURRENT_CHECKS,
                  timeout: float = config.PROXY_CHECK_TIMEOUT,
                  deadline: Optional[float] = config.RUN_DEADLINE) -> ProbeBatch:
        """
        异步函数：并发验证节点列表。
        Args:
            endpoints (Iterable[Endpoint]): 已去重的节点。
            concurrency (int): 最大并发探测数。
            timeout (float): 单个探测的超时时间（秒）。
            deadline (Optional[float]): 整个探测阶段的时间上限（秒），None 表示不限。
        Returns:
            ProbeBatch: 每个节点恰好一个结果，按提交顺序排列。
        """
        endpoints = list(endpoints)
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if not endpoints:
            return ProbeBatch()

        semaphore = asyncio.Semaphore(concurrency)
        results: List[Optional[ProbeResult]] = [None] * len(endpoints)
        finished = 0

        async def limited_probe(index: int, endpoint: Endpoint) -> None:
            """带有并发限制的验证包装器。"""
            nonlocal finished
            async with semaphore:
                results[index] = await self._probe_with_timeout(endpoint, timeout)
            finished += 1
            if finished % PROGRESS_EVERY == 0:
                self.logger.info(f"已完成 {finished}/{len(endpoints)} 个节点的测试。")

        self.logger.info(f"正在并发验证 {len(endpoints)} 个节点 (并发 {concurrency}，超时 {timeout}s)...")
        tasks = [asyncio.create_task(limited_probe(i, ep)) for i, ep in enumerate(endpoints)]
        try:
            done, pending = await asyncio.wait(tasks, timeout=deadline)
            if pending:
                self.logger.warning(f"探测阶段达到时间上限 ({deadline}s)，取消剩余 {len(pending)} 个测试。")
        finally:
            # 正常结束、到达时间上限或整个运行被取消时，都要取消未完成的探测并等待其清理
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in done:
            task.result() # 探测器内部的意外错误在这里向上抛出

        batch = ProbeBatch([
            result if result is not None else ProbeResult.failed(endpoint, FailureReason.TIMEOUT)
            for endpoint, result in zip(endpoints, results)
        ])
        self.logger.info(f"完成所有节点的并发验证。共发现 {len(batch.successes())} 个有效节点。")
        return batch
