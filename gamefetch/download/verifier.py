"""
文件校验器

清单里的 checksum 是 SHA256 十六进制串。读取统一走 aiofiles，按 1 MiB 分块，
大文件也不会一次读入内存。已知大小时先比较大小，不一致直接判定无效，不再计算哈希。
"""

import hashlib
import os
from typing import Optional

import aiofiles

HASH_CHUNK = 1024 * 1024


class FileVerifier:
    """文件校验器"""

    @staticmethod
    async def calc_sha256(file_path: str) -> Optional[str]:
        """流式计算 SHA256（小写十六进制）；文件缺失或读取出错时返回 None"""
        if not os.path.isfile(file_path):
            return None

        digest = hashlib.sha256()
        try:
            async with aiofiles.open(file_path, "rb") as f:
                while True:
                    chunk = await f.read(HASH_CHUNK)
                    if not chunk:
                        break
                    digest.update(chunk)
        except OSError:
            return None
        return digest.hexdigest()

    @staticmethod
    async def verify_sha256(file_path: str, expected: Optional[str]) -> bool:
        """
        比较文件内容与清单中的校验值

        清单没有给出校验值时不做比较，视为通过；
        服务器可能给出大写的十六进制串，比较时统一转成小写。
        """
        if not expected:
            return True
        actual = await FileVerifier.calc_sha256(file_path)
        return actual is not None and actual == str(expected).strip().lower()

    @staticmethod
    def exists(file_path: str) -> bool:
        """路径是普通文件（目录不算）"""
        return os.path.isfile(file_path)

    @staticmethod
    def get_size(file_path: str) -> int:
        """文件大小，不存在时为 0，续传偏移直接使用这个值"""
        try:
            return os.path.getsize(file_path)
        except OSError:
            return 0

    @staticmethod
    async def is_valid(
        file_path: str, expected: Optional[str] = None, expected_size: int = 0
    ) -> bool:
        """
        判断本地文件能否直接复用

        Args:
            file_path: 文件路径
            expected: 预期的 SHA256，空值表示只检查存在与大小
            expected_size: 预期大小，0 表示未知，不比较

        Returns:
            文件存在、大小一致且哈希匹配时为 True
        """
        if not FileVerifier.exists(file_path):
            return False
        if expected_size > 0 and FileVerifier.get_size(file_path) != expected_size:
            return False
        return await FileVerifier.verify_sha256(file_path, expected)

    @staticmethod
    def remove(file_path: str) -> None:
        """删除文件，不存在时忽略"""
        try:
            os.remove(file_path)
        except FileNotFoundError:
            pass
