"""
CLI 模块

命令行接口实现。
"""

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import click
import toml
import yaml
from loguru import logger

from gamefetch.download import CancelToken, DownloadSession, LoggingSink
from gamefetch.exceptions import ConfigParseError, GameFetchError
from gamefetch.logger import setup_logger
from gamefetch.models import DownloadConfig
from gamefetch.orchestrator import GameFetchOrchestrator
from gamefetch.services import ManifestClient


def load_config(config_path: str) -> dict:
    """加载配置文件，支持 toml/json/yaml；[download] 段或顶层键均可"""
    path = Path(config_path)

    if not path.exists():
        raise click.ClickException(f"配置文件不存在: {config_path}")

    suffix = path.suffix.lower()

    try:
        if suffix == ".toml":
            data = toml.load(config_path)
        elif suffix == ".json":
            data = json.loads(path.read_text(encoding="utf-8"))
        elif suffix in (".yaml", ".yml"):
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        else:
            raise click.ClickException(f"不支持的配置文件格式: {suffix}")
    except (toml.TomlDecodeError, json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigParseError(
            f"配置文件解析失败: {e}", context={"path": config_path}
        ) from e

    data = data or {}
    if not isinstance(data, dict):
        raise ConfigParseError("配置文件顶层必须为表", context={"path": config_path})
    return dict(data.get("download", data))


def build_config(config_path: Optional[str], overrides: dict) -> DownloadConfig:
    """合并配置文件与命令行参数，命令行优先"""
    data = load_config(config_path) if config_path else {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return DownloadConfig.from_dict(data)


async def show_manifest(config: DownloadConfig):
    """只获取清单并输出概要"""
    async with ManifestClient(timeout=config.manifest_timeout) as client:
        manifest = await client.fetch(config.base_url)

    total_bytes = sum(entry.expected_bytes for entry in manifest.files)
    multis = sum(1 for entry in manifest.files if entry.is_multipart)
    optional = sum(1 for entry in manifest.files if entry.optional)
    click.echo(f"版本: {manifest.game_version or '未知'}")
    click.echo(f"文件: {len(manifest.files)} (分片 {multis}，可选 {optional})")
    click.echo(f"大小: {total_bytes / (1024 * 1024):.2f} MB")


async def run_async(config: DownloadConfig):
    """异步运行"""
    token = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        # Windows 事件循环不支持，由 KeyboardInterrupt 终止
        logger.debug("当前平台不支持信号处理器")

    try:
        async with DownloadSession(config) as session:
            orchestrator = GameFetchOrchestrator(
                config, sink=LoggingSink(), session=session, token=token
            )
            stats = await orchestrator.run()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass

    if stats.failed_paths:
        logger.warning(f"有 {len(stats.failed_paths)} 个文件下载失败:")
        for path in stats.failed_paths:
            logger.warning(f"  - {path}")
        raise click.ClickException(f"{stats.failed} 个文件下载失败")


@click.command()
@click.argument("base_url")
@click.argument("install_dir", type=click.Path(file_okay=False))
@click.option("--config", "config_path", type=click.Path(exists=True), help="配置文件路径")
@click.option("--include-optional", is_flag=True, default=None, help="同时下载可选文件")
@click.option("-c", "--concurrency", type=int, help="普通文件并发数")
@click.option("-p", "--part-concurrency", type=int, help="单个分片文件的分片并发数")
@click.option("--max-speed", type=int, help="全局限速（字节/秒，0 为不限速）")
@click.option(
    "--mode",
    type=click.Choice(["install", "repair", "update"], case_sensitive=False),
    help="下载模式",
)
@click.option("--manifest-only", is_flag=True, help="只获取并显示清单")
@click.option("--log-file", type=click.Path(dir_okay=False), help="同时写入日志文件")
@click.option("--debug", is_flag=True, help="启用调试模式")
@click.version_option(version="0.1.0")
def main(
    base_url: str,
    install_dir: str,
    config_path: Optional[str],
    include_optional: Optional[bool],
    concurrency: Optional[int],
    part_concurrency: Optional[int],
    max_speed: Optional[int],
    mode: Optional[str],
    manifest_only: bool,
    log_file: Optional[str],
    debug: bool,
):
    """GameFetch - 基于清单的游戏文件下载工具"""
    setup_logger(level="DEBUG" if debug else None, log_file=log_file)

    try:
        config = build_config(
            config_path,
            {
                "base_url": base_url,
                "install_dir": install_dir,
                "include_optional": include_optional,
                "concurrency": concurrency,
                "part_concurrency": part_concurrency,
                "max_speed": max_speed,
                "mode": mode,
            },
        )
        if manifest_only:
            asyncio.run(show_manifest(config))
        else:
            asyncio.run(run_async(config))
    except GameFetchError as e:
        logger.error(f"错误: {e}")
        raise click.ClickException(str(e))


if __name__ == "__main__":
    main()
