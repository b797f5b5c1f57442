"""
GameFetch

基于清单的游戏文件下载器，支持断点续传、分片下载与校验。
"""

from gamefetch.download import CancelToken, DownloadSession, DownloadStats
from gamefetch.models import DownloadConfig, DownloadMode, Manifest
from gamefetch.orchestrator import GameFetchOrchestrator

__version__ = "0.1.0"

__all__ = [
    "CancelToken",
    "DownloadConfig",
    "DownloadMode",
    "DownloadSession",
    "DownloadStats",
    "GameFetchOrchestrator",
    "Manifest",
]
