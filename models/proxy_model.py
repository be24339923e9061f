# models/proxy_model.py

import hashlib # 用于生成唯一哈希键
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Protocol(str, Enum):
    """支持的代理协议，枚举值即 URI scheme。"""
    VLESS = "vless"
    VMESS = "vmess"
    SHADOWSOCKS = "ss"
    TROJAN = "trojan"


class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    CONNECT_ERROR = "connect_error"
    HANDSHAKE_ERROR = "handshake_error"
    PROCESS_SPAWN_ERROR = "process_spawn_error"


def canonical_credential(protocol: Protocol, credential: str) -> str:
    """
    规范化凭据，使仅在大小写上不同的 UUID / 加密方法被视为同一节点。
    Args:
        protocol (Protocol): 协议类型。
        credential (str): 原始凭据。
    Returns:
        str: 规范化后的凭据。
    """
    if protocol in (Protocol.VLESS, Protocol.VMESS):
        return credential.strip().lower() # UUID 不区分大小写
    if protocol == Protocol.SHADOWSOCKS:
        method, _, password = credential.partition(':')
        return f"{method.strip().lower()}:{password}"
    return credential


@dataclass(frozen=True)
class Endpoint:
    """
    代表一个解析后的代理节点。创建后不可修改。
    """
    protocol: Protocol
    host: str         # 服务器地址（小写，IPv6 不带方括号）
    port: int         # 服务器端口
    credential: str   # UUID / 密码 / "method:password"
    options: Dict[str, str] = field(default_factory=dict, hash=False) # 传输参数
    name: str = ""    # 节点名称（URI 片段或 VMess 的 ps 字段）
    raw: str = field(default="", compare=False) # 原始代理链接字符串

    @property
    def credential_fingerprint(self) -> str:
        digest = hashlib.sha256(canonical_credential(self.protocol, self.credential).encode('utf-8'))
        return digest.hexdigest()[:16]

    @property
    def identity(self) -> Tuple[str, str, int, str]:
        """去重用的规范身份：(协议, 地址, 端口, 凭据指纹)。"""
        return (self.protocol.value, self.host.lower(), self.port, self.credential_fingerprint)

    def generate_key(self) -> str:
        """
        为节点生成一个唯一的键，用于去重。
        传输参数和原始链接不参与计算。
        Returns:
            str: 节点的唯一哈希键。
        """
        unique_string = ':'.join(str(part) for part in self.identity)
        return hashlib.sha256(unique_string.encode('utf-8')).hexdigest()

    def __repr__(self):
        return (f"Endpoint(protocol='{self.protocol.value}', host='{self.host}', "
                f"port={self.port}, name='{self.name}')")


@dataclass(frozen=True)
class ProbeResult:
    """
    单个节点的一次探测结果。latency_ms 与 failure 二者恰有其一。
    """
    endpoint: Endpoint
    latency_ms: Optional[float] = None
    failure: Optional[FailureReason] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if (self.latency_ms is None) == (self.failure is None):
            raise ValueError("ProbeResult needs exactly one of latency_ms or failure")

    @classmethod
    def success(cls, endpoint: Endpoint, latency_ms: float) -> "ProbeResult":
        return cls(endpoint=endpoint, latency_ms=latency_ms)

    @classmethod
    def failed(cls, endpoint: Endpoint, reason: FailureReason) -> "ProbeResult":
        return cls(endpoint=endpoint, failure=reason)

    @property
    def ok(self) -> bool:
        return self.failure is None


class ProbeBatch:
    """
    一次运行的全部探测结果，按提交顺序保存（与完成顺序无关）。
    """
    def __init__(self, results: Optional[List[ProbeResult]] = None):
        self.results: List[ProbeResult] = list(results) if results else []

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    def successes(self) -> List[ProbeResult]:
        return [r for r in self.results if r.ok]

    def failure_counts(self) -> Dict[FailureReason, int]:
        counts = {reason: 0 for reason in FailureReason}
        for result in self.results:
            if result.failure is not None:
                counts[result.failure] += 1
        return counts


@dataclass
class RankedEndpoint:
    endpoint: Endpoint
    latency_ms: float


@dataclass
class SubscriptionSet:
    """
    分组名（协议名以及 "all"）到按延迟升序排列的节点列表的映射。
    """
    groups: Dict[str, List[RankedEndpoint]] = field(default_factory=dict)

    def __getitem__(self, group: str) -> List[RankedEndpoint]:
        return self.groups[group]

    def counts(self) -> Dict[str, int]:
        return {group: len(entries) for group, entries in self.groups.items()}
