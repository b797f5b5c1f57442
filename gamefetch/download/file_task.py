"""
单个清单条目的下载任务

普通文件：下载到 path.download，校验后原子重命名。
分片文件：并行下载 path.partN，返回延迟执行的合并与校验，
调用方可以在合并的同时开始下一个文件的下载。
"""

import asyncio
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

import aiofiles
from loguru import logger

from gamefetch.download.cancel import CancelToken
from gamefetch.download.progress import ProgressReporter
from gamefetch.download.session import DownloadSession
from gamefetch.download.transfer import Transfer
from gamefetch.download.verifier import FileVerifier
from gamefetch.exceptions import (
    DownloadCancelledError,
    DownloadChecksumError,
    DownloadFileError,
)
from gamefetch.models import DownloadConfig, EventType, FileEntry, normalize_relative


@dataclass
class FileResult:
    """FileTask 的执行结果"""

    entry: FileEntry
    target_path: str
    skipped: bool = False
    # 分片文件：合并并校验，完成后文件才算完成
    merge_and_verify: Optional[Callable[[], Awaitable[None]]] = None


class _ByteCounter:
    """记录一次尝试计入全局的字节数，失败时整体回滚"""

    def __init__(self, reporter: ProgressReporter):
        self._reporter = reporter
        self._high_water = 0
        self.counted = 0

    async def update(self, received: int) -> None:
        # 从头重下时 received 会变小，只在超过已计数的位置后继续累加
        if received <= self._high_water:
            return
        delta = received - self._high_water
        self._high_water = received
        self.counted += delta
        await self._reporter.add_bytes(delta)

    async def rollback(self) -> None:
        if self.counted > 0:
            await self._reporter.add_bytes(-self.counted)
        self.counted = 0
        self._high_water = 0


def target_path_for(install_dir: str, entry: FileEntry) -> str:
    """清单路径对应的本地文件路径"""
    return os.path.join(install_dir, *entry.relative_path.split("/"))


def part_path_for(target_path: str, index: int) -> str:
    return f"{target_path}.part{index}"


def remove_part_residue(target_path: str) -> None:
    """删除 target_path.part* 残留"""
    directory = os.path.dirname(target_path) or "."
    prefix = os.path.basename(target_path) + ".part"
    try:
        names = os.listdir(directory)
    except FileNotFoundError:
        return
    for name in names:
        if name.startswith(prefix):
            FileVerifier.remove(os.path.join(directory, name))


class FileTask:
    """单个 FileEntry 的下载"""

    def __init__(
        self,
        session: DownloadSession,
        entry: FileEntry,
        reporter: ProgressReporter,
        token: CancelToken,
        config: Optional[DownloadConfig] = None,
    ):
        self.config = config or session.config
        self.entry = entry
        self.reporter = reporter
        self.token = token
        self.transfer = Transfer(session, self.config)
        self.target_path = target_path_for(self.config.install_dir, entry)

    @property
    def download_path(self) -> str:
        return f"{self.target_path}.download"

    def url_for(self, remote_path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}/{normalize_relative(remote_path)}"

    async def run(self) -> FileResult:
        """
        下载该条目

        Returns:
            FileResult；分片文件带有 merge_and_verify

        Raises:
            DownloadCancelledError: 已取消
            DownloadChecksumError: 普通文件多次校验失败
        """
        entry = self.entry
        os.makedirs(os.path.dirname(self.target_path) or ".", exist_ok=True)

        if await FileVerifier.is_valid(self.target_path, entry.checksum, entry.size):
            await self.reporter.emit(
                EventType.SKIP, path=entry.path, size=entry.expected_bytes
            )
            return FileResult(entry, self.target_path, skipped=True)

        self.token.raise_if_cancelled()

        if entry.is_multipart:
            return await self._download_parts()

        await self._download_single()
        return FileResult(entry, self.target_path)

    async def _download_single(self) -> None:
        entry = self.entry
        url = self.url_for(entry.path)
        tmp = self.download_path
        expected = entry.size
        attempts = self.config.single_file_attempts

        for attempt in range(1, attempts + 1):
            counter = _ByteCounter(self.reporter)
            existing = FileVerifier.get_size(tmp)
            if expected > 0 and existing > expected:
                FileVerifier.remove(tmp)
                existing = 0

            async def on_progress(received: int, total: int) -> None:
                await counter.update(received)
                size = expected or total
                await self.reporter.emit(
                    EventType.FILE,
                    path=entry.path,
                    received=min(received, size) if size else received,
                    size=size,
                )

            try:
                await self.transfer.download(
                    url, tmp, on_progress, self.token, existing, expected
                )
            except Exception:
                await counter.rollback()
                raise

            if await FileVerifier.verify_sha256(tmp, entry.checksum):
                break

            FileVerifier.remove(tmp)
            await counter.rollback()
            if attempt >= attempts:
                raise DownloadChecksumError(
                    f"Checksum mismatch for {entry.path}",
                    context={"file": entry.path, "expected": entry.checksum},
                )
            logger.warning(
                f"[重试] '{entry.path}' SHA256 校验失败 (第 {attempt} 次)，重新下载"
            )

        await self.reporter.emit(EventType.VERIFY, path=entry.path)
        os.replace(tmp, self.target_path)

    async def _download_parts(self) -> FileResult:
        parts = self.entry.parts or []
        part_paths: List[Optional[str]] = [None] * len(parts)
        counted = [0] * len(parts)
        # 共享游标：每个索引只会被一个工作协程领取
        cursor = iter(range(len(parts)))

        async def part_worker():
            for index in cursor:
                part_paths[index] = await self._fetch_part(index, counted)

        workers = [
            asyncio.create_task(part_worker(), name=f"part-{self.entry.path}-{i}")
            for i in range(max(1, min(self.config.part_concurrency, len(parts))))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        async def merge_and_verify() -> None:
            await self._merge_and_verify(part_paths, sum(counted))

        return FileResult(self.entry, self.target_path, merge_and_verify=merge_and_verify)

    async def _fetch_part(self, index: int, counted: List[int]) -> str:
        """下载一个分片直到校验通过（无上限重试，只有取消能终止）"""
        entry = self.entry
        part = entry.parts[index]
        total_parts = len(entry.parts)
        tmp = part_path_for(self.target_path, index)
        url = self.url_for(part.path)

        if FileVerifier.exists(tmp):
            if await FileVerifier.verify_sha256(tmp, part.checksum):
                logger.debug(f"[跳过] '{entry.path}' 分片 {index} 已存在且校验通过")
                await self.reporter.emit(
                    EventType.PART,
                    path=entry.path,
                    part=index,
                    total_parts=total_parts,
                    received=part.size,
                    size=part.size,
                )
                return tmp
            # 比预期小的残留可以续传，其余情况重新下载
            if not (part.size > 0 and FileVerifier.get_size(tmp) < part.size):
                FileVerifier.remove(tmp)

        attempt = 0
        while True:
            self.token.raise_if_cancelled()
            attempt += 1
            counter = _ByteCounter(self.reporter)
            existing = FileVerifier.get_size(tmp)
            if part.size > 0 and existing > part.size:
                FileVerifier.remove(tmp)
                existing = 0

            async def on_progress(received: int, total: int) -> None:
                await counter.update(received)
                size = part.size or total
                await self.reporter.emit(
                    EventType.PART,
                    path=entry.path,
                    part=index,
                    total_parts=total_parts,
                    received=min(received, size) if size else received,
                    size=size,
                )

            try:
                await self.transfer.download(
                    url, tmp, on_progress, self.token, existing, part.size
                )
            except DownloadCancelledError:
                raise
            except Exception as e:
                logger.warning(
                    f"[重试] '{entry.path}' 分片 {index} 下载失败 (第 {attempt} 次): {e}"
                )
                await self._reset_part(index, tmp, counter, attempt)
                continue

            if await FileVerifier.verify_sha256(tmp, part.checksum):
                counted[index] = counter.counted
                return tmp

            logger.warning(
                f"[重试] '{entry.path}' 分片 {index} SHA256 校验失败 (第 {attempt} 次)"
            )
            await self._reset_part(index, tmp, counter, attempt)

    async def _reset_part(
        self, index: int, tmp: str, counter: _ByteCounter, attempt: int
    ) -> None:
        FileVerifier.remove(tmp)
        await counter.rollback()
        await self.reporter.emit(
            EventType.PART_RESET,
            path=self.entry.path,
            part=index,
            total_parts=len(self.entry.parts),
        )
        delay = min(self.config.part_retry_delay * attempt, self.config.part_retry_cap)
        await self.token.sleep(delay)

    async def _merge_and_verify(
        self, part_paths: List[Optional[str]], counted_bytes: int
    ) -> None:
        """按索引顺序合并分片到目标文件并校验"""
        entry = self.entry
        total_parts = len(part_paths)
        await self.reporter.emit(
            EventType.MERGE_START, path=entry.path, total_parts=total_parts
        )

        try:
            async with aiofiles.open(self.target_path, "wb") as out:
                for index, part_file in enumerate(part_paths):
                    if not part_file or not FileVerifier.exists(part_file):
                        raise DownloadFileError(
                            f"Part {index} missing for {entry.path}",
                            context={"file": entry.path, "part": index},
                        )
                    await self.reporter.emit(
                        EventType.MERGE_PART,
                        path=entry.path,
                        part=index,
                        total_parts=total_parts,
                    )
                    async with aiofiles.open(part_file, "rb") as src:
                        while True:
                            data = await src.read(1024 * 1024)
                            if not data:
                                break
                            await out.write(data)
                    FileVerifier.remove(part_file)
        except BaseException:
            FileVerifier.remove(self.target_path)
            await self.reporter.add_bytes(-counted_bytes)
            raise

        await self.reporter.emit(EventType.MERGE_DONE, path=entry.path)
        await self.reporter.emit(EventType.VERIFY, path=entry.path)

        if not await FileVerifier.verify_sha256(self.target_path, entry.checksum):
            FileVerifier.remove(self.target_path)
            await self.reporter.add_bytes(-counted_bytes)
            raise DownloadChecksumError(
                f"Checksum mismatch for {entry.path}",
                context={"file": entry.path, "expected": entry.checksum},
            )

        remove_part_residue(self.target_path)
