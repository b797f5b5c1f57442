"""
进度事件模型

下载引擎向外部（GUI/IPC/CLI）发出的所有事件都使用 ProgressEvent 表示。
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class FileState(Enum):
    """单个文件的处理状态"""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    MERGING = "merging"
    VERIFYING = "verifying"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


class EventType(Enum):
    """事件类型"""

    BYTES_TOTAL = "progress:bytes:total"
    BYTES = "progress:bytes"
    START = "progress:start"
    SKIP = "progress:skip"
    FILE = "progress:file"
    DONE = "progress:done"
    ERROR = "progress:error"
    PART = "progress:part"
    PART_RESET = "progress:part:reset"
    MERGE_START = "progress:merge:start"
    MERGE_PART = "progress:merge:part"
    MERGE_DONE = "progress:merge:done"
    VERIFY = "progress:verify"
    PAUSED = "progress:paused"
    RESUMED = "progress:resumed"
    CANCELLED = "progress:cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    """
    进度事件。

    不同类型只使用其中一部分字段：
    - BYTES: delta（有符号，失败回滚时为负数）
    - BYTES_TOTAL: total_bytes
    - START/DONE: index, total, path, completed（DONE 可带 error）
    - FILE/PART: path, received, size（PART 还有 part, total_parts）
    - ERROR: path, message
    """

    type: EventType
    path: Optional[str] = None
    index: Optional[int] = None
    total: Optional[int] = None
    completed: Optional[int] = None
    part: Optional[int] = None
    total_parts: Optional[int] = None
    received: Optional[int] = None
    size: Optional[int] = None
    delta: Optional[int] = None
    total_bytes: Optional[int] = None
    message: Optional[str] = None
    error: bool = False

    @property
    def channel(self) -> str:
        return self.type.value

    def to_dict(self) -> Dict[str, Any]:
        """转换为可序列化的字典，省略未使用的字段"""
        payload = {
            k: v
            for k, v in asdict(self).items()
            if k != "type" and v is not None and v is not False
        }
        payload["channel"] = self.channel
        return payload
