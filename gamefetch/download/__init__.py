"""
GameFetch 下载层

包含断点续传、分片下载、任务队列、文件校验与进度汇报。
"""

from gamefetch.download.cancel import CancelToken
from gamefetch.download.file_task import FileResult, FileTask
from gamefetch.download.manager import DownloadManager
from gamefetch.download.progress import (
    CallbackSink,
    DownloadStats,
    LoggingSink,
    NullSink,
    ProgressReporter,
    ProgressSink,
    QueueSink,
)
from gamefetch.download.queue import FileQueue
from gamefetch.download.rate_limiter import RateLimiter
from gamefetch.download.session import DownloadSession
from gamefetch.download.transfer import Transfer
from gamefetch.download.verifier import FileVerifier

__all__ = [
    "CancelToken",
    "DownloadManager",
    "DownloadSession",
    "DownloadStats",
    "FileQueue",
    "FileResult",
    "FileTask",
    "FileVerifier",
    "RateLimiter",
    "Transfer",
    # 进度
    "ProgressReporter",
    "ProgressSink",
    "CallbackSink",
    "LoggingSink",
    "NullSink",
    "QueueSink",
]
