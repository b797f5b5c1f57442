"""
下载管理器

运行一个阶段的工作协程池：从 FileQueue 领取条目，交给 FileTask 下载，
维护完成计数并发出 START/DONE/ERROR 事件。
"""

import asyncio
from typing import Callable, List, Optional, Sequence

from loguru import logger

from gamefetch.download.cancel import CancelToken
from gamefetch.download.file_task import (
    FileTask,
    remove_part_residue,
    target_path_for,
)
from gamefetch.download.progress import ProgressReporter
from gamefetch.download.queue import FileQueue, QueuedFile
from gamefetch.download.session import DownloadSession
from gamefetch.download.verifier import FileVerifier
from gamefetch.exceptions import DownloadCancelledError
from gamefetch.models import DownloadConfig, EventType, FileEntry


class DownloadManager:
    """下载管理器"""

    # 一个条目最多完整处理两次（首次 + 清理后重试一次）
    ENTRY_ATTEMPTS = 2

    def __init__(
        self,
        session: DownloadSession,
        reporter: ProgressReporter,
        token: CancelToken,
        is_paused: Optional[Callable[[], bool]] = None,
        config: Optional[DownloadConfig] = None,
        total: int = 0,
    ):
        self.session = session
        self.reporter = reporter
        self.token = token
        self.config = config or session.config
        self.total = total
        self._is_paused = is_paused or (lambda: False)

    @property
    def stats(self):
        return self.reporter.stats

    @property
    def processed(self) -> int:
        """已结束（完成或跳过）的条目数，用于 DONE 事件的 completed 字段"""
        return self.stats.completed + self.stats.skipped

    async def run_group(
        self,
        entries: Sequence[FileEntry],
        offset: int = 0,
        concurrency: int = 1,
        overlap_merge: bool = False,
    ) -> None:
        """
        处理一组条目

        Args:
            entries: 条目列表
            offset: 组内第一个条目的全局序号
            concurrency: 工作协程数
            overlap_merge: 分片文件的合并校验与下一个文件的下载重叠进行

        Raises:
            DownloadCancelledError: 已取消
        """
        queue = FileQueue()
        for i, entry in enumerate(entries):
            queue.put(entry, offset + i)
        if queue.empty():
            return

        pending: List[asyncio.Task] = []
        workers = [
            asyncio.create_task(
                self._worker(queue, overlap_merge, pending), name=f"worker-{offset}-{i}"
            )
            for i in range(max(1, min(concurrency, queue.qsize())))
        ]
        logger.debug(f"[启动] {len(workers)} 个工作协程处理 {queue.qsize()} 个文件")

        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers + pending:
                task.cancel()
            await asyncio.gather(*workers, *pending, return_exceptions=True)
            raise

        if pending:
            logger.debug(f"[合并] 等待 {len(pending)} 个合并校验结束")
            results = await asyncio.gather(*pending, return_exceptions=True)
            for result in results:
                if isinstance(result, (DownloadCancelledError, asyncio.CancelledError)):
                    raise DownloadCancelledError()
        self.token.raise_if_cancelled()

    async def _worker(
        self, queue: FileQueue, overlap_merge: bool, pending: List[asyncio.Task]
    ) -> None:
        while True:
            await self._wait_if_paused()
            self.token.raise_if_cancelled()
            item = queue.claim()
            if item is None:
                return
            await self._process(item, overlap_merge, pending)

    async def _process(
        self, item: QueuedFile, overlap_merge: bool, pending: List[asyncio.Task]
    ) -> None:
        entry = item.entry
        # 对方被取消后可能已有另一个等待者接手，每次都重新检查
        while True:
            existing = self.session.get_inflight(entry.key)
            if existing is None:
                break
            logger.debug(f"[等待] '{entry.path}' 正由其他任务下载")
            if await self._await_shared(item, existing):
                return

        parts_ready = asyncio.Event()
        task = asyncio.create_task(
            self._run_entry(item, parts_ready), name=f"entry-{entry.path}"
        )
        self.session.set_inflight(entry.key, task)

        if not overlap_merge:
            await task
            return

        ready_waiter = asyncio.create_task(parts_ready.wait())
        try:
            await asyncio.wait({task, ready_waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            ready_waiter.cancel()

        if task.done():
            # 取消与异常在这里向上抛出
            task.result()
        else:
            pending.append(task)

    async def _await_shared(self, item: QueuedFile, task: asyncio.Task) -> bool:
        """
        等待其他调用的在途任务

        Returns:
            True 如果已由对方处理完毕；False 如果对方被取消，需要自己下载
        """
        entry = item.entry
        while not task.done():
            self.token.raise_if_cancelled()
            await asyncio.wait({task}, timeout=self.config.pause_poll_interval)

        if task.cancelled() or isinstance(task.exception(), DownloadCancelledError):
            self.token.raise_if_cancelled()
            return False

        if task.exception() is None and task.result():
            self.stats.completed += 1
            await self.reporter.emit(
                EventType.DONE,
                index=item.index,
                total=self.total,
                path=entry.path,
                completed=self.processed,
            )
        else:
            self._record_failure(entry)
            await self.reporter.emit(
                EventType.DONE,
                index=item.index,
                total=self.total,
                path=entry.path,
                completed=self.processed,
                error=True,
            )
        return True

    async def _run_entry(self, item: QueuedFile, parts_ready: asyncio.Event) -> bool:
        """
        下载一个条目（含分片合并校验），失败时清理后重试一次

        Returns:
            True 如果成功，False 如果最终失败（已发出 ERROR 与 DONE(error)）
        """
        entry = item.entry
        last_error: Optional[BaseException] = None
        await self.reporter.emit(
            EventType.START,
            index=item.index,
            total=self.total,
            path=entry.path,
            completed=self.processed,
        )

        for attempt in range(1, self.ENTRY_ATTEMPTS + 1):
            try:
                result = await FileTask(
                    self.session, entry, self.reporter, self.token, self.config
                ).run()
                if result.merge_and_verify is not None:
                    parts_ready.set()
                    await result.merge_and_verify()
            except (DownloadCancelledError, asyncio.CancelledError):
                raise
            except Exception as e:
                self.token.raise_if_cancelled()
                last_error = e
                if attempt < self.ENTRY_ATTEMPTS:
                    logger.warning(f"[重试] '{entry.path}' 处理失败: {e}，清理后重试")
                    self._discard_partial(entry)
                continue

            if result.skipped:
                self.stats.skipped += 1
            else:
                self.stats.completed += 1
            await self.reporter.emit(
                EventType.DONE,
                index=item.index,
                total=self.total,
                path=entry.path,
                completed=self.processed,
            )
            return True

        logger.error(f"[错误] '{entry.path}' 最终失败: {last_error}")
        self._record_failure(entry)
        if entry.is_multipart:
            remove_part_residue(target_path_for(self.config.install_dir, entry))
        await self.reporter.emit(EventType.ERROR, path=entry.path, message=str(last_error))
        await self.reporter.emit(
            EventType.DONE,
            index=item.index,
            total=self.total,
            path=entry.path,
            completed=self.processed,
            error=True,
        )
        return False

    def _record_failure(self, entry: FileEntry) -> None:
        self.stats.failed += 1
        self.stats.failed_paths.append(entry.path)

    def _discard_partial(self, entry: FileEntry) -> None:
        """删除条目的临时文件、目标文件与分片残留"""
        target = target_path_for(self.config.install_dir, entry)
        FileVerifier.remove(f"{target}.download")
        FileVerifier.remove(target)
        remove_part_residue(target)

    async def _wait_if_paused(self) -> None:
        while self._is_paused():
            self.token.raise_if_cancelled()
            await asyncio.sleep(self.config.pause_poll_interval)
