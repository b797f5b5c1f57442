"""
下载会话

持有共享的 HTTP 连接池、在途任务映射和全局限速器。
多个并发的 download_all 调用共享同一个会话时，同一路径最多只有一个下载在进行。
"""

import asyncio
from typing import Dict, List, Optional

import aiohttp
from loguru import logger

from gamefetch.download.rate_limiter import RateLimiter
from gamefetch.models import DownloadConfig


class DownloadSession:
    """下载会话"""

    def __init__(
        self,
        config: Optional[DownloadConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or DownloadConfig()
        self._session = session
        self._owned_session = session is None
        self.rate_limiter = RateLimiter(self.config.max_speed)
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def session(self) -> aiohttp.ClientSession:
        """获取或创建 aiohttp session"""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.config.connection_limit,
                keepalive_timeout=60,
                enable_cleanup_closed=True,
            )
            timeout = aiohttp.ClientTimeout(
                total=None,
                sock_connect=self.config.connect_timeout,
                sock_read=self.config.read_timeout,
            )
            # 按原始字节传输，Range 偏移与 Content-Length 才有意义
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={"Accept-Encoding": "identity"},
                auto_decompress=False,
            )
            self._owned_session = True
            logger.debug(
                f"[会话] 创建连接池 (limit={self.config.connection_limit})"
            )
        return self._session

    def get_inflight(self, key: str) -> Optional[asyncio.Task]:
        """获取该路径正在进行的任务，已结束的任务视为不存在"""
        task = self._inflight.get(key)
        if task is None or task.done():
            return None
        return task

    def set_inflight(self, key: str, task: asyncio.Task) -> None:
        """登记在途任务，任务结束时自动移除"""
        self._inflight[key] = task

        def _release(done: asyncio.Task) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_release)

    def inflight_tasks(self) -> List[asyncio.Task]:
        return list(self._inflight.values())

    async def drain_inflight(self) -> None:
        """等待所有在途任务结束，忽略其结果"""
        tasks = self.inflight_tasks()
        if tasks:
            logger.debug(f"[会话] 等待 {len(tasks)} 个在途任务结束")
            await asyncio.gather(
                *(asyncio.shield(t) for t in tasks), return_exceptions=True
            )

    async def close(self):
        """关闭连接池"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        """异步上下文管理器入口"""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """异步上下文管理器出口"""
        await self.close()
