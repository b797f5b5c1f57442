"""
下载任务队列

一个阶段内的条目按路径键去重，工作协程按入队顺序逐个领取。
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Set

from gamefetch.models import FileEntry


@dataclass
class QueuedFile:
    """队列中的文件"""

    index: int
    entry: FileEntry


class FileQueue:
    """文件队列，工作协程通过 claim() 领取，同一个条目只会被领取一次"""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._keys: Set[str] = set()  # 用于去重

    def put(self, entry: FileEntry, index: int) -> bool:
        """
        添加任务到队列

        Returns:
            True 如果任务是新添加的，False 如果路径键已入队
        """
        if entry.key in self._keys:
            return False

        self._keys.add(entry.key)
        self._queue.put_nowait(QueuedFile(index=index, entry=entry))
        return True

    def claim(self) -> Optional[QueuedFile]:
        """领取下一个任务，队列为空时返回 None"""
        try:
            item = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self._queue.task_done()
        return item

    def qsize(self) -> int:
        """尚未领取的任务数"""
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()
