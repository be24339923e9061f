# scraper/fetcher.py

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple, Union

import aiohttp

from models.errors import AbortError

# 获取当前模块的日志记录器
logger = logging.getLogger(__name__)


def read_input_feed(path: Optional[Union[str, Path]] = None) -> str:
    """
    读取本地输入：每行一个代理链接。
    Args:
        path: 输入文件路径；None 或 "-" 表示从标准输入读取。
    Returns:
        str: 原始文本内容。
    Raises:
        AbortError: 输入完全无法读取。
    """
    if path is None or str(path) == "-":
        try:
            return sys.stdin.read()
        except (OSError, UnicodeDecodeError) as e:
            raise AbortError(f"cannot read standard input: {e}") from e
    try:
        return Path(path).read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise AbortError(f"cannot read input feed {path}: {e}") from e


async def fetch_url(session: aiohttp.ClientSession, url: str) -> Optional[str]:
    """
    异步函数：从单个 URL 抓取内容。
    Args:
        session (aiohttp.ClientSession): 共享的 HTTP 会话。
        url (str): 要抓取的 URL。
    Returns:
        Optional[str]: 如果成功抓取，返回内容字符串；否则返回 None。
    """
    try:
        async with session.get(url) as response:
            if response.status == 200: # 检查 HTTP 状态码是否为 200 (成功)
                logger.debug(f"成功抓取: {url}")
                return await response.text(errors="replace")
            logger.warning(f"抓取 {url} 失败，状态码: {response.status}")
            return None
    except asyncio.TimeoutError:
        logger.warning(f"抓取 {url} 超时。")
        return None
    except aiohttp.ClientError as e:
        logger.warning(f"抓取 {url} 时发生客户端错误: {e}")
        return None


async def fetch_all_proxy_sources(urls: List[str], timeout: float) -> List[Tuple[str, str]]:
    """
    异步函数：并发抓取所有订阅源 URL 的内容。失败的源只记录日志并跳过。
    Args:
        urls (List[str]): 订阅源 URL 列表。
        timeout (float): 每个请求的超时时间（秒）。
    Returns:
        List[Tuple[str, str]]: 包含 (内容, 原始URL) 元组的列表。
    """
    if not urls:
        return []
    logger.info(f"开始并发抓取 {len(urls)} 个订阅源。")
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        results = await asyncio.gather(*(fetch_url(session, url) for url in urls))

    fetched_contents = [(content, url) for content, url in zip(results, urls) if content is not None]
    logger.info(f"完成所有订阅源抓取。成功抓取到 {len(fetched_contents)} 个源的内容。")
    return fetched_contents
