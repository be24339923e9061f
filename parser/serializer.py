# parser/serializer.py

import base64
import json
from dataclasses import replace
from typing import Callable, Dict
from urllib.parse import quote, urlencode

from models.proxy_model import Endpoint, Protocol

_VMESS_RESERVED_KEYS = ('v', 'ps', 'add', 'port', 'id')


def _format_host(host: str) -> str:
    # IPv6 地址在链接中需要方括号
    return f"[{host}]" if ':' in host else host


def _tail(endpoint: Endpoint) -> str:
    """查询参数与片段（节点名称）部分。"""
    tail = ""
    if endpoint.options:
        tail += "?" + urlencode(list(endpoint.options.items()), quote_via=quote)
    if endpoint.name:
        tail += "#" + quote(endpoint.name, safe='')
    return tail


def _userinfo_uri(endpoint: Endpoint) -> str:
    credential = quote(endpoint.credential, safe='')
    return (f"{endpoint.protocol.value}://{credential}@{_format_host(endpoint.host)}:{endpoint.port}"
            + _tail(endpoint))


def _vmess_uri(endpoint: Endpoint) -> str:
    # v2rayN 格式：整个 JSON 进行 Base64 编码
    data = {
        'v': '2',
        'ps': endpoint.name,
        'add': endpoint.host,
        'port': str(endpoint.port),
        'id': endpoint.credential,
    }
    data.update({k: v for k, v in endpoint.options.items() if k not in _VMESS_RESERVED_KEYS})
    encoded = base64.b64encode(json.dumps(data, ensure_ascii=False).encode('utf-8')).decode('ascii')
    return f"vmess://{encoded}"


def _ss_uri(endpoint: Endpoint) -> str:
    # SIP002：method:password 使用 URL 安全的 Base64 编码，去掉填充
    userinfo = base64.urlsafe_b64encode(endpoint.credential.encode('utf-8')).decode('ascii').rstrip('=')
    return f"ss://{userinfo}@{_format_host(endpoint.host)}:{endpoint.port}" + _tail(endpoint)


_SERIALIZERS: Dict[Protocol, Callable[[Endpoint], str]] = {
    Protocol.VLESS: _userinfo_uri,
    Protocol.TROJAN: _userinfo_uri,
    Protocol.VMESS: _vmess_uri,
    Protocol.SHADOWSOCKS: _ss_uri,
}


def to_uri(endpoint: Endpoint) -> str:
    """
    把 Endpoint 重新序列化为代理链接。
    结果再次解析后得到与原节点相等的 Endpoint（不保证与原始链接逐字节相同）。
    """
    return _SERIALIZERS[endpoint.protocol](endpoint)


def with_name(endpoint: Endpoint, name: str) -> str:
    """序列化节点，并把节点名称替换为 name。"""
    return to_uri(replace(endpoint, name=name))
