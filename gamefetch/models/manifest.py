"""
清单数据模型

定义 checksums.json 中描述的文件、分片和整体清单结构。
"""

from dataclasses import dataclass, field
from typing import List, Optional


def normalize_relative(path: str) -> str:
    """统一为正斜杠并去掉开头的斜杠"""
    return str(path or "").replace("\\", "/").lstrip("/")


def path_key(path: str) -> str:
    """用于去重和在途映射的路径键（不区分大小写）"""
    return normalize_relative(path).lower()


def _to_int(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class PartEntry:
    """分片信息"""

    path: str
    checksum: str
    size: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "PartEntry":
        return cls(
            path=str(data.get("path", "")),
            checksum=str(data.get("checksum", "")),
            size=_to_int(data.get("size")),
        )


@dataclass(frozen=True)
class FileEntry:
    """
    清单中的单个文件。

    如果 parts 非空，则为分片文件，checksum/size 描述的是合并后的结果。
    """

    path: str
    checksum: str
    size: int = 0
    optional: bool = False
    parts: Optional[List[PartEntry]] = None

    @property
    def key(self) -> str:
        return path_key(self.path)

    @property
    def relative_path(self) -> str:
        return normalize_relative(self.path)

    @property
    def is_multipart(self) -> bool:
        return bool(self.parts)

    @property
    def expected_bytes(self) -> int:
        """已知的字节数：优先使用文件大小，否则为分片大小之和"""
        if self.size > 0:
            return self.size
        if self.parts:
            return sum(part.size for part in self.parts)
        return 0

    @classmethod
    def from_dict(cls, data: dict) -> "FileEntry":
        parts = data.get("parts") or []
        if not isinstance(parts, list):
            raise TypeError("file 'parts' must be an array")
        parts = [PartEntry.from_dict(p) for p in parts if isinstance(p, dict)]
        return cls(
            path=str(data.get("path", "")),
            checksum=str(data.get("checksum", "")),
            size=_to_int(data.get("size")),
            optional=bool(data.get("optional", False)),
            parts=parts or None,
        )


@dataclass(frozen=True)
class Manifest:
    """文件清单"""

    game_version: str = ""
    files: List[FileEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "Manifest":
        """
        从 checksums.json 的内容构建清单

        Raises:
            TypeError: 顶层结构不是对象或 files 不是数组
        """
        if not isinstance(data, dict):
            raise TypeError("manifest must be a JSON object")
        files = data.get("files") or []
        if not isinstance(files, list):
            raise TypeError("manifest 'files' must be an array")
        return cls(
            game_version=str(data.get("game_version") or ""),
            files=[FileEntry.from_dict(f) for f in files if isinstance(f, dict)],
        )
