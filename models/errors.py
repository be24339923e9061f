# models/errors.py

from enum import Enum
from typing import Optional

from models.proxy_model import FailureReason


class ProxySieveError(Exception):
    """所有错误的基类。"""


class ParseErrorReason(str, Enum):
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    MALFORMED_FIELD = "malformed_field"


class ParseError(ProxySieveError):
    """
    单行代理链接解析失败。
    只影响当前行，调用方记录后继续处理下一行。
    """
    def __init__(self, reason: ParseErrorReason, raw_input: str, field: Optional[str] = None):
        self.reason = reason
        self.raw_input = raw_input
        self.field = field # 出错的字段名，仅 MALFORMED_FIELD 时设置
        if field:
            message = f"{reason.value} ({field}): {raw_input[:80]}"
        else:
            message = f"{reason.value}: {raw_input[:80]}"
        super().__init__(message)

    @classmethod
    def unsupported(cls, raw_input: str) -> "ParseError":
        return cls(ParseErrorReason.UNSUPPORTED_SCHEME, raw_input)

    @classmethod
    def malformed(cls, raw_input: str, field: str) -> "ParseError":
        return cls(ParseErrorReason.MALFORMED_FIELD, raw_input, field)


class ProbeFailure(ProxySieveError):
    """
    单个节点探测失败。只在 Prober 内部传递，最终记录为 ProbeResult 中的失败原因。
    """
    def __init__(self, reason: FailureReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class RuntimeConfigError(ProxySieveError):
    """无法为节点生成 Xray 运行时配置。"""


class PortExhaustedError(ProxySieveError):
    """本地端口池中没有可用端口。"""


class AbortError(ProxySieveError):
    """
    不可恢复的环境错误（输入无法读取、输出目录不可写）。
    抛出时不会留下写了一半的输出文件。
    """
