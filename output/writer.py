# output/writer.py

import base64 # 用于 Base64 订阅编码
import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml # 用于处理 YAML 格式（如 Clash 配置）

import config # 绝对导入 config 模块
from models.errors import AbortError
from models.proxy_model import Endpoint, ProbeBatch, Protocol, RankedEndpoint, SubscriptionSet
from parser.serializer import to_uri, with_name

# 获取当前模块的日志记录器
logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def group_names() -> List[str]:
    """所有输出分组：每个协议一个，再加一个合并分组。"""
    return [protocol.value for protocol in Protocol] + [config.ALL_GROUP]


def build_subscription_set(batch: ProbeBatch) -> SubscriptionSet:
    """
    只保留测试成功的节点，按协议分组并按延迟升序排列。
    排序是稳定的，延迟相同的节点保持提交顺序。
    Args:
        batch (ProbeBatch): 一次运行的全部探测结果。
    Returns:
        SubscriptionSet: 协议名与 "all" 到有序节点列表的映射。
    """
    groups: Dict[str, List[RankedEndpoint]] = {name: [] for name in group_names()}
    ranked = sorted(batch.successes(), key=lambda r: r.latency_ms)
    for result in ranked:
        entry = RankedEndpoint(endpoint=result.endpoint, latency_ms=result.latency_ms)
        groups[result.endpoint.protocol.value].append(entry)
        groups[config.ALL_GROUP].append(entry)
    return SubscriptionSet(groups=groups)


def _link(entry: RankedEndpoint, rank: int, label_template: Optional[str]) -> str:
    endpoint = entry.endpoint
    if not label_template:
        return endpoint.raw or to_uri(endpoint)
    label = label_template.format(
        protocol=endpoint.protocol.value,
        rank=rank,
        latency=int(round(entry.latency_ms)),
        name=endpoint.name,
        host=endpoint.host,
        port=endpoint.port,
    )
    return with_name(endpoint, label)


def validate_label_template(label_template: Optional[str]) -> Optional[str]:
    """
    用示例值试填一次重命名模板，模板引用未知字段或格式错误时抛出 ValueError。
    在开始测试之前调用，避免测试完成后才在写入阶段失败。
    """
    if not label_template:
        return label_template
    try:
        label_template.format(protocol='vless', rank=1, latency=100, name='name', host='example.com', port=443)
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        raise ValueError(f"invalid label template {label_template!r}: {e!r}") from e
    return label_template


def render_plain_text(entries: List[RankedEndpoint], label_template: Optional[str] = None) -> str:
    """每行一个代理链接；没有节点时返回空字符串。"""
    lines = [_link(entry, rank, label_template) for rank, entry in enumerate(entries, start=1)]
    return "".join(line + "\n" for line in lines)


def _transport_fields(endpoint: Endpoint, network: str) -> Dict[str, Any]:
    opts = endpoint.options
    fields: Dict[str, Any] = {}
    if network and network != 'tcp':
        fields['network'] = network
    if network == 'ws':
        ws_opts: Dict[str, Any] = {'path': opts.get('path') or '/'}
        if opts.get('host'):
            ws_opts['headers'] = {'Host': opts['host']}
        fields['ws-opts'] = ws_opts
    elif network == 'grpc':
        fields['grpc-opts'] = {'grpc-service-name': opts.get('serviceName') or opts.get('path', '')}
    return fields


def _convert_to_clash_format(endpoint: Endpoint, name: str) -> Dict[str, Any]:
    """
    将单个节点转换为 Clash 代理节点的字典格式。
    """
    opts = endpoint.options
    clash_proxy: Dict[str, Any] = {
        'name': name, # 代理名称
        'type': endpoint.protocol.value, # 协议类型
        'server': endpoint.host, # 服务器地址
        'port': endpoint.port, # 端口
        'udp': True,
    }
    # 根据协议类型添加 Clash 需要的特定字段
    if endpoint.protocol == Protocol.SHADOWSOCKS:
        cipher, _, password = endpoint.credential.partition(':')
        clash_proxy['cipher'] = cipher
        clash_proxy['password'] = password
        return clash_proxy

    if endpoint.protocol == Protocol.VMESS:
        clash_proxy['uuid'] = endpoint.credential
        clash_proxy['alterId'] = int(opts['aid']) if opts.get('aid', '').isdigit() else 0
        clash_proxy['cipher'] = opts.get('scy') or 'auto'
        security = opts.get('tls', '')
        network = opts.get('net') or 'tcp'
    elif endpoint.protocol == Protocol.TROJAN:
        clash_proxy['password'] = endpoint.credential
        security = opts.get('security') or 'tls'
        network = opts.get('type') or 'tcp'
    else:
        clash_proxy['uuid'] = endpoint.credential
        security = opts.get('security', '')
        network = opts.get('type') or 'tcp'
        if opts.get('flow'):
            clash_proxy['flow'] = opts['flow']

    if security in ('tls', 'reality'):
        clash_proxy['tls'] = True
        if opts.get('sni'):
            clash_proxy['sni' if endpoint.protocol == Protocol.TROJAN else 'servername'] = opts['sni']
        if opts.get('fp'):
            clash_proxy['client-fingerprint'] = opts['fp']
    if security == 'reality':
        clash_proxy['reality-opts'] = {'public-key': opts.get('pbk', ''), 'short-id': opts.get('sid', '')}

    clash_proxy.update(_transport_fields(endpoint, network))
    return clash_proxy


def render_clash_yaml(entries: List[RankedEndpoint]) -> str:
    """
    生成 Clash YAML 配置：全部节点、一个手动选择组和一个自动测速组。
    """
    clash_proxies = []
    used_names = set()
    for rank, entry in enumerate(entries, start=1):
        endpoint = entry.endpoint
        name = endpoint.name or f"{endpoint.protocol.value}-{endpoint.host}:{endpoint.port}"
        if name in used_names: # Clash 要求节点名称唯一
            name = f"{name} #{rank}"
        used_names.add(name)
        clash_proxies.append(_convert_to_clash_format(endpoint, name))

    names = [p['name'] for p in clash_proxies]
    clash_config = {
        'proxies': clash_proxies, # 所有测试通过的节点
        'proxy-groups': [
            {
                'name': 'Proxy',
                'type': 'select', # 选择类型（用户手动选择）
                'proxies': ['Auto', 'DIRECT'] + names,
            },
            {
                'name': 'Auto',
                'type': 'url-test',
                'proxies': names or ['DIRECT'],
                'url': config.TEST_URL,
                'interval': 300,
            },
        ],
        'rules': [
            'MATCH,Proxy' # 默认规则：所有未匹配的流量都通过 'Proxy' 组
        ],
    }
    return yaml.safe_dump(clash_config, allow_unicode=True, sort_keys=False)


def render_subscription_files(subscriptions: SubscriptionSet,
                              label_template: Optional[str] = None) -> Dict[str, str]:
    """
    在内存中生成全部输出文件的内容。
    Returns:
        Dict[str, str]: 文件名到文件内容的映射。
    """
    files = {
        f"{group}.txt": render_plain_text(subscriptions[group], label_template)
        for group in group_names()
    }
    combined = files[f"{config.ALL_GROUP}.txt"]
    files[config.BASE64_OUTPUT_FILENAME] = base64.b64encode(combined.encode('utf-8')).decode('ascii')
    files[config.CLASH_OUTPUT_FILENAME] = render_clash_yaml(subscriptions[config.ALL_GROUP])
    return files


def ensure_writable(output_dir: PathLike) -> Path:
    """
    确保输出目录存在且可写，否则抛出 AbortError。
    在开始探测之前调用，避免测试完成后才发现无法写入。
    """
    path = Path(output_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
        fd, probe_path = tempfile.mkstemp(dir=path, prefix=".write-check-")
        os.close(fd)
        os.remove(probe_path)
    except OSError as e:
        raise AbortError(f"output directory {path} is not writable: {e}") from e
    return path


def write_subscription_set(subscriptions: SubscriptionSet, output_dir: PathLike,
                           label_template: Optional[str] = None) -> Dict[str, Path]:
    """
    原子地写入全部输出文件。
    先把所有内容写入同目录下的临时文件，全部成功后再逐个 os.replace 到目标位置，
    读者永远不会看到写了一半的文件。没有节点的分组也会被写成空文件。
    Args:
        subscriptions (SubscriptionSet): 分组后的节点。
        output_dir (PathLike): 输出目录。
        label_template (Optional[str]): 节点重命名模板，None 表示保持原始链接。
    Returns:
        Dict[str, Path]: 文件名到已发布路径的映射。
    """
    output_path = ensure_writable(output_dir)
    contents = render_subscription_files(subscriptions, label_template)

    staged: List[Tuple[str, Path]] = []
    try:
        for filename, text in contents.items():
            fd, tmp_path = tempfile.mkstemp(dir=output_path, prefix=f".{filename}.", suffix=".tmp")
            staged.append((tmp_path, output_path / filename))
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                f.write(text)
        for tmp_path, target in staged:
            os.replace(tmp_path, target)
    except OSError as e:
        raise AbortError(f"failed to write subscription files to {output_path}: {e}") from e
    finally:
        for tmp_path, _ in staged:
            with suppress(FileNotFoundError):
                os.remove(tmp_path)

    for group, count in subscriptions.counts().items():
        logger.info(f"成功将 {count} 个节点写入 {output_path / (group + '.txt')}")
    return {filename: output_path / filename for filename in contents}
