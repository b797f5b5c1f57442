"""
主协调器

根据清单编排整个下载流程：筛选条目、分阶段下载、暂停/继续/取消。
"""

import os
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from gamefetch.download import (
    CancelToken,
    DownloadManager,
    DownloadSession,
    DownloadStats,
    ProgressReporter,
    ProgressSink,
)
from gamefetch.download.file_task import target_path_for
from gamefetch.exceptions import DownloadCancelledError
from gamefetch.models import (
    DownloadConfig,
    DownloadMode,
    EventType,
    FileEntry,
    FileState,
    Manifest,
    path_key,
)
from gamefetch.services import ManifestClient


class GameFetchOrchestrator:
    """GameFetch 主协调器"""

    def __init__(
        self,
        config: DownloadConfig,
        sink: Optional[ProgressSink] = None,
        session: Optional[DownloadSession] = None,
        token: Optional[CancelToken] = None,
        is_paused: Optional[Callable[[], bool]] = None,
    ):
        self.config = config
        self.session = session or DownloadSession(config)
        self._owned_session = session is None
        self.token = token or CancelToken()
        self.stats = DownloadStats()
        self.states: Dict[str, FileState] = {}
        self.reporter = ProgressReporter(sink, self.stats, self.states)
        self._external_paused = is_paused
        self._paused = False

    def is_paused(self) -> bool:
        if self._paused:
            return True
        return bool(self._external_paused and self._external_paused())

    async def run(self) -> DownloadStats:
        """获取清单并下载全部文件"""
        logger.info("开始 GameFetch 下载任务...")
        try:
            client = ManifestClient(
                self.session.session, timeout=self.config.manifest_timeout
            )
            manifest = await client.fetch(self.config.base_url)
            stats = await self.download_all(manifest)
        finally:
            if self._owned_session:
                await self.session.close()

        if stats.failed:
            logger.warning(
                f"任务结束: 完成 {stats.completed}，跳过 {stats.skipped}，失败 {stats.failed}"
            )
        else:
            logger.success(
                f"GameFetch 任务完成! 下载 {stats.completed}，跳过 {stats.skipped}"
            )
        return stats

    async def download_all(self, manifest: Manifest) -> DownloadStats:
        """
        下载清单中的所有文件

        Returns:
            DownloadStats

        Raises:
            DownloadCancelledError: 已取消
        """
        # 每次调用独立统计，同一协调器可重复执行（如修复模式）
        self.stats = DownloadStats()
        self.reporter.stats = self.stats
        self.states.clear()

        entries = self._select_entries(manifest.files)
        singles, multis = self._partition(entries)

        self.stats.total = len(entries)
        self.stats.total_bytes = sum(entry.expected_bytes for entry in entries)
        for entry in entries:
            self.states.setdefault(entry.key, FileState.PENDING)
        await self.reporter.emit(
            EventType.BYTES_TOTAL, total_bytes=self.stats.total_bytes
        )
        logger.info(
            f"[信息] {len(singles)} 个普通文件，{len(multis)} 个分片文件，"
            f"共 {self.stats.total_bytes / (1024 * 1024):.2f} MB"
        )

        manager = DownloadManager(
            self.session,
            self.reporter,
            self.token,
            is_paused=self.is_paused,
            config=self.config,
            total=len(entries),
        )

        try:
            await manager.run_group(singles, 0, self.config.concurrency)
            # 普通文件阶段的在途重试全部结束后才开始分片阶段
            await self.session.drain_inflight()
            self.token.raise_if_cancelled()
            await manager.run_group(multis, len(singles), 1, overlap_merge=True)
        except DownloadCancelledError:
            logger.warning("[取消] 下载已中止")
            raise

        return self.stats

    def _select_entries(self, files: List[FileEntry]) -> List[FileEntry]:
        """过滤可选文件和需保留的文件，并按路径键去重（先出现者优先）"""
        preserved = {path_key(p) for p in self.config.preserve_paths}
        selected: List[FileEntry] = []
        seen = set()

        for entry in files:
            key = entry.key
            if not key or key in seen:
                continue
            if entry.optional and not self.config.include_optional:
                continue
            if (
                self.config.mode is not DownloadMode.INSTALL
                and key in preserved
                and os.path.exists(target_path_for(self.config.install_dir, entry))
            ):
                logger.info(f"[保留] '{entry.path}' 保留本地文件")
                continue
            seen.add(key)
            selected.append(entry)

        return selected

    @staticmethod
    def _partition(
        entries: List[FileEntry],
    ) -> Tuple[List[FileEntry], List[FileEntry]]:
        singles = [entry for entry in entries if not entry.is_multipart]
        multis = [entry for entry in entries if entry.is_multipart]
        return singles, multis

    async def pause(self) -> None:
        """暂停：不再开始新的文件"""
        self._paused = True
        await self.reporter.emit(EventType.PAUSED)

    async def resume(self) -> None:
        self._paused = False
        await self.reporter.emit(EventType.RESUMED)

    async def cancel(self) -> None:
        """取消：中止所有进行中的请求"""
        self.token.cancel()
        self._paused = False
        await self.reporter.emit(EventType.CANCELLED)
