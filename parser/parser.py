# parser/parser.py

import base64
import binascii
import json # 导入 json 模块，用于处理 VMess 的 JSON 内容
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urlsplit

import yaml

import config # 绝对导入 config 模块
from models.errors import ParseError, ParseErrorReason
from models.proxy_model import Endpoint, Protocol
from parser.serializer import to_uri

# 获取当前模块的日志记录器
logger = logging.getLogger(__name__)

# 整行都是 Base64 字符时，可能是一整份被编码的订阅内容
_BASE64_LINE = re.compile(r'^[A-Za-z0-9+/_=-]+$')

# VMess JSON 中由 Endpoint 自身字段承载的键
_VMESS_RESERVED_KEYS = ('v', 'ps', 'add', 'port', 'id')

# URL 形式 VMess 的参数名 -> v2rayN JSON 参数名
_VMESS_URL_KEYS = {'type': 'net', 'security': 'tls', 'headerType': 'type'}


def parse_query(query: str) -> Dict[str, str]:
    """
    解析查询字符串。与 parse_qsl 不同，'+' 保持原样而不是被当作空格。
    """
    options: Dict[str, str] = {}
    for pair in query.split('&'):
        if not pair:
            continue
        key, _, value = pair.partition('=')
        options[unquote(key)] = unquote(value)
    return options


def parse_param_filters(text: str) -> Dict[str, str]:
    """
    解析 "key=value,key2=value2" 形式的参数白名单。
    Raises:
        ValueError: 某一项缺少 '=' 或键为空。
    """
    filters: Dict[str, str] = {}
    for item in text.split(','):
        item = item.strip()
        if not item:
            continue
        key, sep, value = item.partition('=')
        if not sep or not key.strip():
            raise ValueError(f"invalid parameter filter: {item!r}")
        filters[key.strip()] = value.strip()
    return filters


def b64decode_text(data: str) -> str:
    """
    宽松的 Base64 解码：同时接受标准与 URL 安全字母表，自动补齐填充。
    Raises:
        ValueError: 内容不是合法的 Base64 或解码结果不是 UTF-8。
    """
    data = data.strip().replace('-', '+').replace('_', '/')
    data += '=' * (-len(data) % 4)
    try:
        return base64.b64decode(data, validate=True).decode('utf-8')
    except binascii.Error as e:
        raise ValueError(str(e)) from e


@dataclass
class ParseReport:
    """一段原始内容的解析结果。"""
    endpoints: List[Endpoint] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    lines: int = 0        # 非空行数
    blank_lines: int = 0  # 跳过的空行数
    filtered: int = 0     # 不满足参数白名单而被丢弃的节点数

    def merge(self, other: "ParseReport") -> None:
        self.endpoints.extend(other.endpoints)
        self.errors.extend(other.errors)
        self.lines += other.lines
        self.blank_lines += other.blank_lines
        self.filtered += other.filtered

    def error_counts(self) -> Dict[str, int]:
        counts = {reason.value: 0 for reason in ParseErrorReason}
        for error in self.errors:
            counts[error.reason.value] += 1
        return counts


class ProxyParser:
    """
    把各种协议的代理链接解析为统一的 Endpoint。
    parse_line 不做任何 I/O。
    Args:
        whitelist_params: 节点参数必须全部匹配这些键值才会保留，空表示不过滤。
        remove_params: 从查询参数中删除的键（广告、备注等）。
        sanitize_params: 是否清理会导致 Xray 无法启动的参数值。
    """
    def __init__(self, whitelist_params: Optional[Dict[str, str]] = None,
                 remove_params: Optional[Iterable[str]] = None,
                 sanitize_params: bool = config.SANITIZE_PARAMS):
        # 实例化时初始化日志记录器
        self.logger = logging.getLogger(__name__)
        self.whitelist_params = dict(config.WHITELIST_PARAMS if whitelist_params is None else whitelist_params)
        self.remove_params = frozenset(config.REMOVE_PARAMS if remove_params is None else remove_params)
        self.sanitize_params = sanitize_params
        self._parsers: Dict[Protocol, Callable[[str], Endpoint]] = {
            Protocol.VLESS: self._parse_vless,
            Protocol.VMESS: self._parse_vmess,
            Protocol.SHADOWSOCKS: self._parse_ss,
            Protocol.TROJAN: self._parse_trojan,
        }

    @staticmethod
    def _host_port(line: str, netloc: str) -> Tuple[str, int]:
        """从 host:port 部分取出地址和端口，缺失或非法时抛出 ParseError。"""
        try:
            parts = urlsplit('//' + netloc)
            host = parts.hostname # 自动去掉 IPv6 方括号并转为小写
            port = parts.port     # 非数字或越界时抛出 ValueError
        except ValueError:
            if netloc.startswith('[') and ']' not in netloc:
                raise ParseError.malformed(line, 'host')
            raise ParseError.malformed(line, 'port')
        if not host:
            raise ParseError.malformed(line, 'host')
        if not port:
            raise ParseError.malformed(line, 'port')
        return host, port

    def _query_options(self, query: str) -> Tuple[Dict[str, str], bool]:
        """
        解析查询参数并按配置清理。
        Returns:
            Tuple[Dict[str, str], bool]: 清理后的参数，以及是否有参数被删除或改写。
        """
        options = parse_query(query)
        cleaned: Dict[str, str] = {}
        for key, value in options.items():
            if key in self.remove_params:
                continue
            if self.sanitize_params:
                # 修复 encryption=none=xxx 这类被污染的值
                if value.startswith('none='):
                    value = 'none'
                # none 与 type=tcp 都是默认值，直接省略；security=none 对 Trojan 有实际含义，保留
                if (value == 'none' and key != 'security') or (key == 'type' and value == 'tcp'):
                    continue
            cleaned[key] = value
        return cleaned, cleaned != options

    def _parse_userinfo_link(self, line: str, protocol: Protocol,
                             key_map: Optional[Dict[str, str]] = None) -> Endpoint:
        """
        解析 scheme://credential@host:port?query#name 形式的链接（VLESS、Trojan、URL 形式的 VMess）。
        key_map 用于把查询参数名改写为该协议惯用的名称。
        """
        try:
            parsed = urlsplit(line)
        except ValueError: # 例如缺少右方括号的 IPv6 地址
            raise ParseError.malformed(line, 'host')
        userinfo, sep, hostport = parsed.netloc.rpartition('@')
        if not sep or not userinfo:
            raise ParseError.malformed(line, 'credential')
        host, port = self._host_port(line, hostport)
        options, changed = self._query_options(parsed.query) # 传输参数
        if key_map:
            options = {key_map.get(key, key): value for key, value in options.items()}
        endpoint = Endpoint(
            protocol=protocol,
            host=host,
            port=port,
            credential=unquote(userinfo),
            options=options,
            name=unquote(parsed.fragment), # 从 URL 片段中获取代理名称
            raw=line,
        )
        if changed: # 发布清理后的链接
            endpoint = replace(endpoint, raw=to_uri(endpoint))
        return endpoint

    def _parse_vless(self, line: str) -> Endpoint:
        return self._parse_userinfo_link(line, Protocol.VLESS)

    def _parse_trojan(self, line: str) -> Endpoint:
        return self._parse_userinfo_link(line, Protocol.TROJAN)

    def _parse_vmess(self, line: str) -> Endpoint:
        """
        解析 VMess 代理链接。
        标准格式为 vmess://base64(JSON)（v2rayN），同时兼容 vmess://uuid@host:port?... 形式。
        URL 形式使用 VLESS 风格的参数名，这里统一改写为 v2rayN 的 net / tls / type。
        """
        payload, _, fragment = line.split('://', 1)[1].partition('#')
        if '@' in payload:
            return self._parse_userinfo_link(line, Protocol.VMESS, _VMESS_URL_KEYS)

        try:
            data = json.loads(b64decode_text(payload)) # 解码后的内容是 JSON 格式
        except ValueError:
            raise ParseError.malformed(line, 'payload')
        if not isinstance(data, dict):
            raise ParseError.malformed(line, 'payload')

        host = str(data.get('add') or '').strip().strip('[]').lower()
        if not host:
            raise ParseError.malformed(line, 'host')
        try:
            port = int(str(data.get('port', '')).strip())
        except ValueError:
            raise ParseError.malformed(line, 'port')
        if not 0 < port < 65536:
            raise ParseError.malformed(line, 'port')
        uuid = str(data.get('id') or '').strip()
        if not uuid:
            raise ParseError.malformed(line, 'id')

        options = {
            key: _option_text(value)
            for key, value in data.items()
            if key not in _VMESS_RESERVED_KEYS and key not in self.remove_params
        }
        name = str(data.get('ps') or '') or unquote(fragment)
        endpoint = Endpoint(Protocol.VMESS, host, port, uuid, options, name, raw=line)
        if any(key in self.remove_params for key in data):
            endpoint = replace(endpoint, raw=to_uri(endpoint))
        return endpoint

    def _parse_ss(self, line: str) -> Endpoint:
        """
        解析 Shadowsocks (SS) 代理链接。支持三种写法：
        SIP002 ss://base64(method:password)@host:port#name，
        SIP002 明文 ss://method:password@host:port#name（百分号编码），
        旧式 ss://base64(method:password@host:port)#name。
        """
        body = line.split('://', 1)[1]
        body, _, fragment = body.partition('#')
        body, _, query = body.partition('?')

        if '@' in body:
            userinfo, _, hostport = body.rpartition('@')
            credential = self._decode_ss_userinfo(line, userinfo)
        else:
            # 旧格式：整个主体都经过 Base64 编码
            try:
                decoded = b64decode_text(body.rstrip('/'))
            except ValueError:
                raise ParseError.malformed(line, 'credential')
            credential, sep, hostport = decoded.rpartition('@')
            if not sep:
                raise ParseError.malformed(line, 'credential')

        method, sep, _ = credential.partition(':')
        if not sep or not method:
            raise ParseError.malformed(line, 'credential')
        host, port = self._host_port(line, hostport.rstrip('/'))
        options, changed = self._query_options(query) # 例如 plugin 参数
        endpoint = Endpoint(
            protocol=Protocol.SHADOWSOCKS,
            host=host,
            port=port,
            credential=credential,
            options=options,
            name=unquote(fragment),
            raw=line,
        )
        if changed:
            endpoint = replace(endpoint, raw=to_uri(endpoint))
        return endpoint

    @staticmethod
    def _decode_ss_userinfo(line: str, userinfo: str) -> str:
        try:
            decoded = b64decode_text(unquote(userinfo))
            if ':' in decoded:
                return decoded
        except ValueError:
            pass # 不是 Base64，按明文处理
        plain = unquote(userinfo)
        if ':' in plain:
            return plain
        raise ParseError.malformed(line, 'credential')

    def accepts(self, endpoint: Endpoint) -> bool:
        """节点参数是否满足白名单中的所有键值。"""
        return all(endpoint.options.get(key) == value for key, value in self.whitelist_params.items())

    def parse_line(self, line: str) -> Endpoint:
        """
        解析单行代理链接。
        Args:
            line (str): 一行文本。
        Returns:
            Endpoint: 解析出的节点。
        Raises:
            ParseError: 不支持的协议或字段格式错误。
        """
        line = line.strip().replace('&amp;', '&') # 部分来源会把 & 转义为 HTML 实体
        scheme, sep, _ = line.partition('://')
        try:
            protocol = Protocol(scheme.lower()) if sep else None
        except ValueError:
            protocol = None
        if protocol is None:
            raise ParseError.unsupported(line)
        return self._parsers[protocol](line)

    def _endpoint_from_clash(self, node: Dict[str, Any]) -> Endpoint:
        """
        把 Clash YAML 中的单个 proxies 条目转换为 Endpoint，并反向构造原始链接。
        """
        raw = f"clash:{node.get('name', '')}"
        try:
            protocol = Protocol(str(node.get('type', '')).lower())
        except ValueError:
            raise ParseError.unsupported(raw)
        server = str(node.get('server') or '').strip().strip('[]').lower()
        if not server:
            raise ParseError.malformed(raw, 'host')
        try:
            port = int(node.get('port'))
        except (TypeError, ValueError, OverflowError):
            raise ParseError.malformed(raw, 'port')
        if not 0 < port < 65536:
            raise ParseError.malformed(raw, 'port')

        options: Dict[str, str] = {}
        ws_opts = _option_block(node, 'ws-opts', raw)
        network = node.get('network')
        if network and network != 'tcp':
            options['net' if protocol == Protocol.VMESS else 'type'] = str(network)
        if ws_opts.get('path'):
            options['path'] = str(ws_opts['path'])
        headers = _option_block(ws_opts, 'headers', raw)
        if headers.get('Host'):
            options['host'] = str(headers['Host'])
        grpc_opts = _option_block(node, 'grpc-opts', raw)
        if grpc_opts.get('grpc-service-name'):
            options['serviceName'] = str(grpc_opts['grpc-service-name'])
        servername = node.get('servername') or node.get('sni')
        if servername:
            options['sni'] = str(servername)

        if protocol == Protocol.SHADOWSOCKS:
            credential = f"{node.get('cipher', '')}:{node.get('password', '')}"
            if not node.get('cipher'):
                raise ParseError.malformed(raw, 'credential')
        elif protocol == Protocol.TROJAN:
            credential = str(node.get('password') or '')
        else:
            credential = str(node.get('uuid') or '')
        if not credential:
            raise ParseError.malformed(raw, 'credential')

        if protocol == Protocol.VMESS:
            options['aid'] = str(node.get('alterId', 0))
            options['scy'] = str(node.get('cipher', 'auto'))
            if node.get('tls'):
                options['tls'] = 'tls'
        elif protocol == Protocol.VLESS:
            reality = _option_block(node, 'reality-opts', raw)
            if reality:
                options['security'] = 'reality'
                options['pbk'] = str(reality.get('public-key', ''))
                options['sid'] = str(reality.get('short-id', ''))
            elif node.get('tls'):
                options['security'] = 'tls'
            if node.get('flow'):
                options['flow'] = str(node['flow'])
            if node.get('client-fingerprint'):
                options['fp'] = str(node['client-fingerprint'])

        endpoint = Endpoint(protocol, server, port, credential, options, str(node.get('name') or ''))
        return replace(endpoint, raw=to_uri(endpoint))

    def _keep(self, report: ParseReport, endpoint: Endpoint) -> None:
        if self.accepts(endpoint):
            report.endpoints.append(endpoint)
        else:
            self.logger.debug(f"节点 {endpoint.host}:{endpoint.port} 不满足参数白名单，已丢弃。")
            report.filtered += 1

    def _parse_yaml_nodes(self, content: str, source: str) -> Optional[ParseReport]:
        """
        解析 Clash-style YAML 内容，其中包含代理节点。
        内容不是带 proxies 列表的 YAML 时返回 None。
        """
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            self.logger.debug(f"{source} 不是合法的 YAML: {e}")
            return None
        if not isinstance(data, dict) or not isinstance(data.get('proxies'), list):
            return None

        report = ParseReport()
        for node in data['proxies']:
            report.lines += 1
            if not isinstance(node, dict):
                report.errors.append(ParseError.malformed(str(node), 'payload'))
                continue
            try:
                endpoint = self._endpoint_from_clash(node)
            except ParseError as e:
                self.logger.debug(f"跳过 YAML 节点: {e}")
                report.errors.append(e)
                continue
            self._keep(report, endpoint)
        return report

    def parse_raw_content(self, content: str, source: str = "input") -> ParseReport:
        """
        将原始内容解析为 Endpoint 列表。解析失败的行会被记录并跳过，不会中断整批处理。
        Args:
            content (str): 原始内容字符串。
            source (str): 内容来源 (用于日志记录)。
        Returns:
            ParseReport: 解析出的节点、错误与计数。
        """
        # 通常 YAML 配置会包含 "proxies:" 这样的关键字
        if "proxies:" in content:
            report = self._parse_yaml_nodes(content, source)
            if report is not None:
                self.logger.debug(f"{source} 按 Clash YAML 解析，得到 {len(report.endpoints)} 个节点。")
                return report

        report = ParseReport()
        for line in content.splitlines():
            line = line.strip()
            if not line: # 跳过空行
                report.blank_lines += 1
                continue

            # 整行看起来像 Base64 时，尝试当作一份编码过的订阅解码
            if '://' not in line and _BASE64_LINE.match(line):
                try:
                    decoded = b64decode_text(line)
                except ValueError:
                    decoded = ''
                if '://' in decoded or 'proxies:' in decoded:
                    self.logger.debug(f"将 {line[:20]}... 作为 Base64 订阅解码。")
                    report.merge(self.parse_raw_content(decoded, f"decoded_from_{source}"))
                    continue

            report.lines += 1
            try:
                endpoint = self.parse_line(line)
            except ParseError as e:
                self.logger.debug(f"未能解析行 (来自 {source}): {e}")
                report.errors.append(e)
                continue
            self._keep(report, endpoint)

        return report


def _option_block(node: Dict[str, Any], key: str, raw: str) -> Dict[str, Any]:
    """取出 Clash 节点中的嵌套选项块，缺失时为空字典，不是映射时视为格式错误。"""
    value = node.get(key) or {}
    if not isinstance(value, dict):
        raise ParseError.malformed(raw, key)
    return value


def _option_text(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(',', ':'), ensure_ascii=False)
    return str(value)
