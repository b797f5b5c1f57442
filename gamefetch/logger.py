"""
日志模块

控制台输出使用统一格式；可选写入带轮转的日志文件，便于排查长时间下载中的网络问题。
"""

import os
import sys
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {message}"


def resolve_level(level: Optional[str] = None) -> str:
    """显式参数优先，其次是 GAMEFETCH_DEBUG 环境变量"""
    if level:
        return level.upper()
    return "DEBUG" if os.environ.get("GAMEFETCH_DEBUG", "0") == "1" else "INFO"


def setup_logger(
    level: Optional[str] = None,
    sink=sys.stdout,
    enqueue: bool = True,
    colorize: bool = True,
    log_file: Optional[str] = None,
    rotation: str = "10 MB",
    retention: str = "1 week",
) -> None:
    """
    设置日志记录器

    Args:
        level: 控制台日志级别，默认由 GAMEFETCH_DEBUG 决定
        sink: 控制台输出目标
        enqueue: 是否启用队列（线程安全）
        colorize: 是否启用颜色
        log_file: 日志文件路径，文件始终记录 DEBUG 级别
        rotation: 日志文件轮转条件
        retention: 旧日志保留时间
    """
    level = resolve_level(level)
    debug_mode = level == "DEBUG"

    logger.remove()
    logger.add(
        sink=sink,
        format=CONSOLE_FORMAT,
        enqueue=enqueue,
        level=level,
        colorize=colorize,
        backtrace=debug_mode,
        diagnose=debug_mode,
    )

    if log_file:
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level="DEBUG",
            rotation=rotation,
            retention=retention,
            encoding="utf-8",
            enqueue=enqueue,
        )

    if debug_mode:
        logger.debug("DEBUG 模式已启用")


__all__ = ["logger", "setup_logger"]
