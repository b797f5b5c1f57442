"""
协作式取消

一次 download_all 调用中所有传输共享同一个 CancelToken。
"""

import asyncio
from typing import Set

import aiohttp
from loguru import logger

from gamefetch.exceptions import DownloadCancelledError


class CancelToken:
    """取消令牌"""

    def __init__(self):
        self.cancelled = False
        self._live: Set[aiohttp.ClientResponse] = set()

    def register(self, response: aiohttp.ClientResponse) -> None:
        """登记一个进行中的响应；已取消时立即关闭"""
        if self.cancelled:
            response.close()
            return
        self._live.add(response)

    def unregister(self, response: aiohttp.ClientResponse) -> None:
        self._live.discard(response)

    @property
    def live_count(self) -> int:
        return len(self._live)

    def cancel(self) -> None:
        """取消：设置标记并强制关闭所有进行中的响应（幂等）"""
        if not self.cancelled:
            logger.info(f"[取消] 正在中止 {len(self._live)} 个进行中的请求")
        self.cancelled = True
        for response in list(self._live):
            response.close()
        self._live.clear()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise DownloadCancelledError()

    async def sleep(self, delay: float, step: float = 0.5) -> None:
        """可被取消打断的等待，每 step 秒检查一次"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while True:
            self.raise_if_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, step))
