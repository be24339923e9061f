# parser/deduplicator.py

import logging
from typing import Iterable, List

from models.proxy_model import Endpoint

logger = logging.getLogger(__name__)


def deduplicate_endpoints(endpoints: Iterable[Endpoint]) -> List[Endpoint]:
    """
    根据节点的规范身份 (协议, 地址, 端口, 凭据指纹) 去重，保留首次出现的顺序。
    传输参数或原始链接不同但身份相同的节点视为重复。
    Args:
        endpoints (Iterable[Endpoint]): 解析出的节点。
    Returns:
        List[Endpoint]: 去重后的节点列表。
    """
    seen_keys = set() # 用于存储已见过的节点的唯一键
    deduplicated = [] # 存储去重后的节点
    total = 0
    for endpoint in endpoints:
        total += 1
        key = endpoint.generate_key()
        if key not in seen_keys: # 如果键未出现过，则添加
            deduplicated.append(endpoint)
            seen_keys.add(key)
    logger.info(f"去重前共有 {total} 个节点，去重后剩下 {len(deduplicated)} 个。")
    return deduplicated
