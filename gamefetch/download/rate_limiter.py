"""
全局限速器

令牌桶算法，限制同一会话中所有传输的总下载速度。
"""

import asyncio

from loguru import logger


class RateLimiter:
    """令牌桶限速器，0 表示不限速"""

    def __init__(self, max_bytes_per_second: int = 0):
        self._lock = asyncio.Lock()
        self._rate = 0
        self._tokens = 0.0
        self._last_refill = 0.0
        self.set_max_speed(max_bytes_per_second)

    @property
    def max_bytes_per_second(self) -> int:
        return self._rate

    def set_max_speed(self, max_bytes_per_second: int) -> None:
        """运行时调整上限，从下一个数据块开始生效"""
        self._rate = max(0, int(max_bytes_per_second))
        self._tokens = float(self._rate)
        self._last_refill = 0.0
        if self._rate:
            logger.debug(f"[限速] 全局下载速度上限: {self._rate / 1024:.0f} KB/s")

    async def consume(self, nbytes: int) -> None:
        """等待直到可以在当前上限内交付 nbytes 字节"""
        if self._rate <= 0:
            return

        async with self._lock:
            loop = asyncio.get_running_loop()
            now = loop.time()
            if self._last_refill:
                elapsed = now - self._last_refill
                self._tokens = min(self._rate, self._tokens + elapsed * self._rate)
            self._last_refill = now

            if nbytes > self._tokens:
                deficit = nbytes - self._tokens
                await asyncio.sleep(deficit / self._rate)
                self._tokens = 0.0
                self._last_refill = loop.time()
            else:
                self._tokens -= nbytes
