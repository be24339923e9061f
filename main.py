# main.py

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import typer

# 从项目结构中导入模块
import config # 导入 config.py
from models.errors import AbortError
from models.proxy_model import FailureReason, Protocol
from output.writer import build_subscription_set, ensure_writable, validate_label_template, write_subscription_set
from parser.deduplicator import deduplicate_endpoints
from parser.parser import ParseReport, ProxyParser, parse_param_filters
from scraper.fetcher import fetch_all_proxy_sources, read_input_feed
from validator.prober import Prober
from validator.validator import ProxyValidator

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


class RunState(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    DEDUPLICATING = "deduplicating"
    PROBING = "probing"
    CLASSIFYING = "classifying"
    PUBLISHED = "published"
    ABORTED = "aborted"


# 正常流程中状态只能向前推进
_STATE_ORDER = [
    RunState.IDLE,
    RunState.PARSING,
    RunState.DEDUPLICATING,
    RunState.PROBING,
    RunState.CLASSIFYING,
    RunState.PUBLISHED,
]
_TERMINAL_STATES = (RunState.PUBLISHED, RunState.ABORTED)


@dataclass
class RunSummary:
    """一次运行的状态与计数，即使结果为空也会输出。"""
    state: RunState = RunState.IDLE
    lines: int = 0
    parsed: int = 0
    parse_errors: Dict[str, int] = field(default_factory=dict)
    filtered: int = 0
    deduplicated: int = 0
    probed: int = 0
    succeeded: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, int] = field(default_factory=dict)
    files: Dict[str, Path] = field(default_factory=dict)

    def advance(self, state: RunState) -> None:
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"run already finished in state {self.state.value}")
        if state != RunState.ABORTED and _STATE_ORDER.index(state) <= _STATE_ORDER.index(self.state):
            raise RuntimeError(f"cannot move from {self.state.value} to {state.value}")
        logger.debug(f"状态: {self.state.value} -> {state.value}")
        self.state = state

    def log(self) -> None:
        logger.info(f"运行状态: {self.state.value}")
        logger.info(f"读取 {self.lines} 行，解析成功 {self.parsed} 个，解析失败 {sum(self.parse_errors.values())} 个 {self.parse_errors}")
        if self.filtered:
            logger.info(f"不满足参数白名单而丢弃 {self.filtered} 个。")
        logger.info(f"去重后 {self.deduplicated} 个，已测试 {self.probed} 个。")
        logger.info(f"测试通过: {self.succeeded}")
        logger.info(f"测试失败: {self.failures}")


async def load_feed(input_path: Optional[Path], sources: List[str], fetch_timeout: float,
                    parser: ProxyParser) -> ParseReport:
    """
    读取本地输入与远程订阅源，并解析为节点。
    本地输入无法读取，或只配置了远程源且全部抓取失败时抛出 AbortError。
    """
    report = ParseReport()
    if input_path is not None or not sources:
        report.merge(parser.parse_raw_content(read_input_feed(input_path), str(input_path or "stdin")))

    if sources:
        fetched = await fetch_all_proxy_sources(sources, fetch_timeout)
        if not fetched and input_path is None:
            raise AbortError("none of the configured sources could be fetched")
        for content, source_url in fetched:
            parsed_from_source = parser.parse_raw_content(content, source_url)
            logger.info(f"从 {source_url} 解析到 {len(parsed_from_source.endpoints)} 个节点。")
            report.merge(parsed_from_source)
    return report


async def run_pipeline(input_path: Optional[Path] = None,
                       output_dir: Path = Path(config.OUTPUT_DIR),
                       concurrency: int = config.MAX_CONCURRENT_CHECKS,
                       timeout: float = config.PROXY_CHECK_TIMEOUT,
                       deadline: Optional[float] = config.RUN_DEADLINE,
                       sources: Optional[List[str]] = None,
                       label_template: Optional[str] = config.OUTPUT_LABEL_TEMPLATE,
                       validator: Optional[ProxyValidator] = None,
                       parser: Optional[ProxyParser] = None,
                       fetch_timeout: float = config.FETCH_TIMEOUT) -> RunSummary:
    """
    主异步函数：解析 -> 去重 -> 并发测试 -> 分组排序 -> 原子写入。
    Returns:
        RunSummary: 运行状态与计数。
    Raises:
        AbortError: 输入无法读取、输出目录不可写或重命名模板无效，此时不会写入任何输出文件。
    """
    summary = RunSummary()
    validator = validator or ProxyValidator()
    parser = parser or ProxyParser()

    try:
        # --- 步骤 1: 读取并解析输入 ---
        summary.advance(RunState.PARSING)
        ensure_writable(output_dir)
        try:
            validate_label_template(label_template)
        except ValueError as e:
            raise AbortError(str(e)) from e
        report = await load_feed(input_path, list(sources or []), fetch_timeout, parser)
        summary.lines = report.lines
        summary.parsed = len(report.endpoints)
        summary.parse_errors = report.error_counts()
        summary.filtered = report.filtered
        logger.info(f"总共解析到 {summary.parsed} 个节点，跳过 {len(report.errors)} 行。")
    except AbortError:
        summary.advance(RunState.ABORTED)
        summary.log()
        raise

    # --- 步骤 2: 节点去重 ---
    summary.advance(RunState.DEDUPLICATING)
    endpoints = deduplicate_endpoints(report.endpoints)
    summary.deduplicated = len(endpoints)

    # --- 步骤 3: 并发验证节点 ---
    summary.advance(RunState.PROBING)
    batch = await validator.run(endpoints, concurrency, timeout, deadline)
    summary.probed = len(batch)
    summary.failures = {reason.value: count for reason, count in batch.failure_counts().items()}
    if summary.failures.get(FailureReason.PROCESS_SPAWN_ERROR.value) == summary.probed and summary.probed:
        logger.warning("所有节点都无法启动 Xray，请检查 Xray 路径与安装。")

    # --- 步骤 4: 分组排序并写入输出文件 ---
    summary.advance(RunState.CLASSIFYING)
    subscriptions = build_subscription_set(batch)
    summary.succeeded = {protocol.value: len(subscriptions[protocol.value]) for protocol in Protocol}
    try:
        summary.files = write_subscription_set(subscriptions, output_dir, label_template)
    except AbortError:
        # 写入失败时旧的输出文件保持不变
        summary.advance(RunState.ABORTED)
        summary.log()
        raise

    summary.advance(RunState.PUBLISHED)
    summary.log()
    return summary


app = typer.Typer(add_completion=False)


def _check_label(value: Optional[str]) -> Optional[str]:
    try:
        return validate_label_template(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def _check_param_filters(value: Optional[str]) -> Optional[str]:
    if value:
        try:
            parse_param_filters(value)
        except ValueError as e:
            raise typer.BadParameter(str(e))
    return value


@app.command()
def cli(
    input_path: Optional[Path] = typer.Option(None, "--input", "-i", help="Input feed, one link per line ('-' or omitted reads stdin)"),
    source: Optional[List[str]] = typer.Option(None, "--source", "-s", help="Remote subscription URL (repeatable)"),
    output_dir: Path = typer.Option(Path(config.OUTPUT_DIR), "--output-dir", "-o", help="Directory for subscription files"),
    concurrency: int = typer.Option(config.MAX_CONCURRENT_CHECKS, "--concurrency", "-c", min=1, help="Maximum probes in flight"),
    timeout: float = typer.Option(config.PROXY_CHECK_TIMEOUT, "--timeout", "-t", min=0.1, help="Per-probe timeout in seconds"),
    deadline: Optional[float] = typer.Option(config.RUN_DEADLINE, "--deadline", help="Time budget for the probing stage in seconds"),
    test_url: str = typer.Option(config.TEST_URL, "--test-url", help="URL requested through every proxy"),
    xray_path: str = typer.Option(config.XRAY_PATH, "--xray-path", help="Path to the xray binary"),
    label: Optional[str] = typer.Option(config.OUTPUT_LABEL_TEMPLATE, "--label", callback=_check_label, help="Relabel links, e.g. '{protocol}-{rank} [{latency}ms]'"),
    whitelist_params: Optional[str] = typer.Option(None, "--whitelist-params", callback=_check_param_filters, help="Keep only links with these parameters, e.g. 'security=reality,type=grpc'"),
    remove_params: Optional[str] = typer.Option(None, "--remove-params", help="Comma separated query parameters to strip from every link"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Probe proxy links through xray and publish the live ones as subscription files."""
    # 配置日志
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
    logger.info("程序开始运行...")

    validator = ProxyValidator(Prober(xray_path=xray_path, test_url=test_url, request_timeout=timeout))
    parser = ProxyParser(
        whitelist_params=parse_param_filters(whitelist_params) if whitelist_params else None,
        remove_params=[p.strip() for p in remove_params.split(',') if p.strip()] if remove_params else None,
    )
    sources = list(config.PROXY_SOURCES) + list(source or [])
    try:
        asyncio.run(run_pipeline(
            input_path=input_path,
            output_dir=output_dir,
            concurrency=concurrency,
            timeout=timeout,
            deadline=deadline,
            sources=sources,
            label_template=label,
            validator=validator,
            parser=parser,
        ))
    except AbortError as e:
        logger.error(f"运行中止: {e}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        logger.warning("运行被用户中断。")
        raise typer.Exit(code=130)
    logger.info("程序运行结束。")


if __name__ == "__main__":
    app()
