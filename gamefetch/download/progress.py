"""
进度汇报

ProgressSink 是下载引擎与外部消费者（GUI/IPC/CLI）之间唯一的接口。
ProgressReporter 在发出事件的同时维护 DownloadStats 中的计数。
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, List, Optional

from loguru import logger

from gamefetch.models import EventType, FileState, ProgressEvent, path_key


@dataclass
class DownloadStats:
    """下载统计"""

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    bytes_downloaded: int = 0
    total_bytes: int = 0
    failed_paths: List[str] = field(default_factory=list)


class ProgressSink(ABC):
    """进度事件接收端"""

    @abstractmethod
    async def emit(self, event: ProgressEvent) -> None:
        pass

    async def close(self) -> None:
        """事件流结束"""


class NullSink(ProgressSink):
    """丢弃所有事件"""

    async def emit(self, event: ProgressEvent) -> None:
        return None


class CallbackSink(ProgressSink):
    """把事件转交给同步回调，例如 emit(channel, payload) 风格的 IPC"""

    def __init__(self, callback: Callable[[ProgressEvent], None]):
        self._callback = callback

    async def emit(self, event: ProgressEvent) -> None:
        self._callback(event)


class QueueSink(ProgressSink):
    """
    有界队列，由单个订阅者循环消费，保持事件顺序。

    队列满时 emit 会等待，对下载形成背压。
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 1024):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def emit(self, event: ProgressEvent) -> None:
        await self._queue.put(event)

    async def close(self) -> None:
        await self._queue.put(self._CLOSED)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """按顺序迭代事件，直到 close() 被调用"""
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


class LoggingSink(ProgressSink):
    """把关键事件写入日志，供命令行使用"""

    def __init__(self, report_every: float = 5.0):
        self._report_every = report_every
        self._total_bytes = 0
        self._received = 0
        self._last_percent = 0.0

    async def emit(self, event: ProgressEvent) -> None:
        t = event.type
        if t is EventType.BYTES_TOTAL:
            self._total_bytes = event.total_bytes or 0
            logger.info(f"[信息] 总大小: {self._total_bytes / (1024 * 1024):.2f} MB")
        elif t is EventType.BYTES:
            self._received += event.delta or 0
            if self._total_bytes > 0:
                percent = self._received / self._total_bytes * 100
                if abs(percent - self._last_percent) >= self._report_every:
                    logger.info(f"[进度] {percent:.1f}%")
                    self._last_percent = percent
        elif t is EventType.START:
            logger.debug(f"[开始] ({event.index + 1}/{event.total}) {event.path}")
        elif t is EventType.SKIP:
            logger.info(f"[跳过] '{event.path}' 已存在且校验通过")
        elif t is EventType.DONE and not event.error:
            logger.success(f"[完成] ({event.completed}/{event.total}) {event.path}")
        elif t is EventType.ERROR:
            logger.error(f"[错误] '{event.path}': {event.message}")
        elif t is EventType.MERGE_START:
            logger.info(f"[合并] '{event.path}' ({event.total_parts} 个分片)")
        elif t is EventType.PART_RESET:
            logger.warning(f"[重置] '{event.path}' 分片 {event.part} 将重新下载")
        elif t is EventType.PAUSED:
            logger.info("[暂停] 不再开始新的下载")
        elif t is EventType.RESUMED:
            logger.info("[继续] 恢复下载")
        elif t is EventType.CANCELLED:
            logger.warning("[取消] 下载已取消")


_STATE_BY_EVENT = {
    EventType.START: FileState.DOWNLOADING,
    EventType.SKIP: FileState.SKIPPED,
    EventType.MERGE_START: FileState.MERGING,
    EventType.VERIFY: FileState.VERIFYING,
}


class ProgressReporter:
    """发出事件并维护统计与文件状态"""

    def __init__(
        self,
        sink: Optional[ProgressSink],
        stats: DownloadStats,
        states: Optional[Dict[str, FileState]] = None,
    ):
        self.sink = sink or NullSink()
        self.stats = stats
        self.states: Dict[str, FileState] = states if states is not None else {}

    async def emit(self, event_type: EventType, **fields) -> None:
        path = fields.get("path")
        if path is not None:
            self._track(event_type, path_key(path), fields.get("error", False))
        await self.sink.emit(ProgressEvent(type=event_type, **fields))

    def _track(self, event_type: EventType, key: str, error: bool) -> None:
        if event_type is EventType.DONE:
            if error:
                self.states[key] = FileState.FAILED
            elif self.states.get(key) is not FileState.SKIPPED:
                self.states[key] = FileState.DONE
        elif event_type in _STATE_BY_EVENT:
            self.states[key] = _STATE_BY_EVENT[event_type]

    async def add_bytes(self, delta: int) -> None:
        """累计已接收字节；delta 为负数表示回滚失败尝试"""
        if delta == 0:
            return
        self.stats.bytes_downloaded += delta
        await self.emit(EventType.BYTES, delta=delta)
