# validator/xray_config.py

import string
from typing import Any, Dict, List, Optional

import config
from models.errors import RuntimeConfigError
from models.proxy_model import Endpoint, Protocol

INBOUND_TAG = "socks-in"
OUTBOUND_TAG = "proxy"


def generate_xray_config(endpoint: Endpoint, local_port: int,
                         log_level: str = config.XRAY_LOG_LEVEL) -> Dict[str, Any]:
    """
    为单个节点生成 Xray 配置：本地 SOCKS 入站 -> 节点出站。
    Args:
        endpoint (Endpoint): 要测试的节点。
        local_port (int): 本地 SOCKS 监听端口。
        log_level (str): Xray 日志级别。
    Returns:
        Dict[str, Any]: 可直接 json.dump 的配置字典。
    Raises:
        RuntimeConfigError: 节点参数无法映射为 Xray 配置。
    """
    return {
        "log": {"loglevel": log_level},
        "inbounds": [{
            "listen": "127.0.0.1",
            "port": local_port,
            "protocol": "socks",
            "settings": {"auth": "noauth", "udp": True},
            "tag": INBOUND_TAG,
        }],
        "outbounds": [
            create_outbound(endpoint),
            {"protocol": "freedom", "tag": "direct"},
        ],
        "routing": {
            "domainStrategy": "AsIs",
            "rules": [{
                "type": "field",
                "inboundTag": [INBOUND_TAG],
                "outboundTag": OUTBOUND_TAG,
            }],
        },
    }


def create_outbound(endpoint: Endpoint) -> Dict[str, Any]:
    builders = {
        Protocol.VLESS: _vless_settings,
        Protocol.VMESS: _vmess_settings,
        Protocol.TROJAN: _trojan_settings,
        Protocol.SHADOWSOCKS: _shadowsocks_settings,
    }
    outbound = {
        "protocol": "shadowsocks" if endpoint.protocol == Protocol.SHADOWSOCKS else endpoint.protocol.value,
        "settings": builders[endpoint.protocol](endpoint),
        "tag": OUTBOUND_TAG,
    }
    stream_settings = create_stream_settings(endpoint)
    if stream_settings is not None:
        outbound["streamSettings"] = stream_settings
    return outbound


def _vless_settings(endpoint: Endpoint) -> Dict[str, Any]:
    user = {
        "id": endpoint.credential,
        "encryption": endpoint.options.get("encryption") or "none",
    }
    if endpoint.options.get("flow"):
        user["flow"] = endpoint.options["flow"]
    return {"vnext": [{"address": endpoint.host, "port": endpoint.port, "users": [user]}]}


def _vmess_settings(endpoint: Endpoint) -> Dict[str, Any]:
    try:
        alter_id = int(endpoint.options.get("aid") or 0)
    except ValueError:
        raise RuntimeConfigError(f"invalid alterId: {endpoint.options.get('aid')}")
    user = {
        "id": endpoint.credential,
        "alterId": alter_id,
        "security": endpoint.options.get("scy") or "auto",
    }
    return {"vnext": [{"address": endpoint.host, "port": endpoint.port, "users": [user]}]}


def _trojan_settings(endpoint: Endpoint) -> Dict[str, Any]:
    return {"servers": [{"address": endpoint.host, "port": endpoint.port, "password": endpoint.credential}]}


def _shadowsocks_settings(endpoint: Endpoint) -> Dict[str, Any]:
    if endpoint.options.get("plugin"):
        # Xray 不支持 SIP003 插件
        raise RuntimeConfigError(f"unsupported shadowsocks plugin: {endpoint.options['plugin']}")
    method, _, password = endpoint.credential.partition(':')
    return {"servers": [{
        "address": endpoint.host,
        "port": endpoint.port,
        "method": method.lower(),
        "password": password,
    }]}


def _transport(endpoint: Endpoint) -> Dict[str, str]:
    """
    把不同协议的参数写法统一为 network / security / header_type。
    VMess 使用 net、tls、type；VLESS 与 Trojan 使用 type、security、headerType。
    """
    opts = endpoint.options
    if endpoint.protocol == Protocol.SHADOWSOCKS:
        return {"network": "tcp", "security": "none", "header_type": ""}
    if endpoint.protocol == Protocol.VMESS:
        return {
            "network": (opts.get("net") or "tcp").lower(),
            "security": (opts.get("tls") or "none").lower(),
            "header_type": opts.get("type") or "",
        }
    default_security = "tls" if endpoint.protocol == Protocol.TROJAN else "none"
    return {
        "network": (opts.get("type") or "tcp").lower(),
        "security": (opts.get("security") or default_security).lower(),
        "header_type": opts.get("headerType") or "",
    }


def create_stream_settings(endpoint: Endpoint) -> Optional[Dict[str, Any]]:
    transport = _transport(endpoint)
    network, security = transport["network"], transport["security"]
    if network == "tcp" and security == "none" and transport["header_type"] != "http":
        return None

    stream_settings: Dict[str, Any] = {"network": network, "security": security}
    if security == "tls":
        stream_settings["tlsSettings"] = create_tls_settings(endpoint)
    elif security == "reality":
        stream_settings["realitySettings"] = create_reality_settings(endpoint)
    elif security != "none":
        raise RuntimeConfigError(f"unsupported security: {security}")

    apply_network_settings(stream_settings, endpoint, network, transport["header_type"])
    return stream_settings


def create_tls_settings(endpoint: Endpoint) -> Dict[str, Any]:
    opts = endpoint.options
    settings: Dict[str, Any] = {
        "serverName": opts.get("sni") or opts.get("peer") or opts.get("host") or endpoint.host,
    }
    if opts.get("alpn"):
        settings["alpn"] = _split_list(opts["alpn"])
    if opts.get("fp"):
        settings["fingerprint"] = opts["fp"]
    if opts.get("allowInsecure") in ("1", "true"):
        settings["allowInsecure"] = True
    return settings


def create_reality_settings(endpoint: Endpoint) -> Dict[str, Any]:
    opts = endpoint.options
    for required in ("sni", "pbk"):
        if not opts.get(required):
            raise RuntimeConfigError(f"reality requires '{required}'")
    settings: Dict[str, Any] = {
        "serverName": opts["sni"],
        "publicKey": opts["pbk"],
        "shortId": normalize_short_id(opts.get("sid", "")),
        "fingerprint": opts.get("fp") or "chrome", # REALITY 必须指定指纹
    }
    if opts.get("spx"):
        settings["spiderX"] = opts["spx"]
    return settings


def normalize_short_id(short_id: str) -> str:
    """
    REALITY shortId 必须是偶数长度、最多 16 位的十六进制串。
    奇数长度左侧补 0，非法值替换为 "00"。
    """
    value = short_id.strip()
    if len(value) % 2 == 1:
        value = "0" + value
    value = value[:16]
    if all(c in string.hexdigits for c in value):
        return value
    return "00"


def apply_network_settings(stream_settings: Dict[str, Any], endpoint: Endpoint,
                           network: str, header_type: str) -> None:
    opts = endpoint.options
    path = opts.get("path") or ""
    host = opts.get("host") or ""

    if network == "tcp":
        if header_type == "http":
            request: Dict[str, Any] = {"path": _split_list(path) or ["/"]}
            if host:
                request["headers"] = {"Host": _split_list(host)}
            stream_settings["tcpSettings"] = {"header": {"type": "http", "request": request}}
    elif network == "ws":
        ws_settings: Dict[str, Any] = {"path": path or "/"}
        if host:
            ws_settings["headers"] = {"Host": host}
        stream_settings["wsSettings"] = ws_settings
    elif network == "grpc":
        stream_settings["grpcSettings"] = {
            "serviceName": opts.get("serviceName") or path,
            "multiMode": opts.get("mode") == "multi",
        }
    elif network in ("xhttp", "splithttp"):
        stream_settings["network"] = "xhttp"
        xhttp_settings: Dict[str, Any] = {"path": path or "/"}
        if host:
            xhttp_settings["host"] = host
        mode = opts.get("mode") or "auto"
        if mode != "auto":
            xhttp_settings["mode"] = mode
        stream_settings["xhttpSettings"] = xhttp_settings
    elif network == "httpupgrade":
        upgrade_settings: Dict[str, Any] = {"path": path or "/"}
        if host:
            upgrade_settings["host"] = host
        stream_settings["httpupgradeSettings"] = upgrade_settings
    elif network in ("h2", "http"):
        stream_settings["network"] = "http"
        http_settings: Dict[str, Any] = {"path": path or "/"}
        if host:
            http_settings["host"] = _split_list(host)
        stream_settings["httpSettings"] = http_settings
    else:
        raise RuntimeConfigError(f"unsupported network: {network}")


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]
