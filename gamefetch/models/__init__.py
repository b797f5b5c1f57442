"""
GameFetch 数据模型包

包含配置模型、清单模型和进度事件定义。
"""

from gamefetch.models.config import DownloadConfig, DownloadMode
from gamefetch.models.events import EventType, FileState, ProgressEvent
from gamefetch.models.manifest import (
    FileEntry,
    Manifest,
    PartEntry,
    normalize_relative,
    path_key,
)

__all__ = [
    # 配置模型
    "DownloadConfig",
    "DownloadMode",
    # 清单模型
    "Manifest",
    "FileEntry",
    "PartEntry",
    "normalize_relative",
    "path_key",
    # 事件模型
    "EventType",
    "FileState",
    "ProgressEvent",
]
