"""
可续传的单请求下载

把一个 URL 下载到本地文件：支持 Range 续传、停滞检测、指数退避重试，
以及服务器忽略 Range 时的整文件重下。
"""

import asyncio
import errno
import os
import random
import socket
from typing import Awaitable, Callable, Optional

import aiofiles
import aiohttp
from loguru import logger

from gamefetch.download.cancel import CancelToken
from gamefetch.download.session import DownloadSession
from gamefetch.download.verifier import FileVerifier
from gamefetch.exceptions import (
    DownloadCancelledError,
    DownloadHTTPError,
    DownloadNetworkError,
    DownloadStallError,
)
from gamefetch.models import DownloadConfig

ProgressCallback = Callable[[int, int], Awaitable[None]]

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

RETRYABLE_ERRNOS = frozenset(
    getattr(errno, name)
    for name in (
        "ECONNRESET",
        "ETIMEDOUT",
        "ECONNABORTED",
        "ENETRESET",
        "EHOSTUNREACH",
        "ENETUNREACH",
        "EPIPE",
        "ECONNREFUSED",
        "EHOSTDOWN",
        "ENETDOWN",
    )
    if hasattr(errno, name)
)

RETRYABLE_DNS_ERRORS = frozenset(
    getattr(socket, name)
    for name in ("EAI_AGAIN", "EAI_NONAME")
    if hasattr(socket, name)
)


def is_retryable(exc: BaseException) -> bool:
    """判断传输错误是否可以续传重试"""
    if isinstance(exc, (DownloadNetworkError, aiohttp.ClientPayloadError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerDisconnectedError)):
        return True
    if isinstance(exc, aiohttp.ClientConnectorError):
        os_error = exc.os_error
        if isinstance(os_error, socket.gaierror):
            return os_error.errno in RETRYABLE_DNS_ERRORS
        return os_error.errno in RETRYABLE_ERRNOS
    if isinstance(exc, OSError) and exc.errno is not None:
        return exc.errno in RETRYABLE_ERRNOS
    # 连接被关闭等没有 errno 的连接错误
    return isinstance(exc, aiohttp.ClientConnectionError)


class _RestartFromZero(Exception):
    """服务器忽略了 Range（200）或无法满足（416），需要从头下载"""

    def __init__(self, status: int):
        super().__init__(f"HTTP {status} for ranged request")
        self.status = status


class _RetryableStatus(Exception):
    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


class Transfer:
    """单请求到文件的传输原语"""

    def __init__(self, session: DownloadSession, config: Optional[DownloadConfig] = None):
        self._session = session
        self.config = config or session.config

    def backoff_delay(self, attempt: int) -> float:
        """网络错误的退避时间（带抖动）"""
        base = min(
            self.config.backoff_base * (1.5 ** attempt), self.config.backoff_cap
        )
        return base + random.uniform(0, self.config.backoff_jitter)

    def status_delay(self, attempt: int) -> float:
        """状态码重试和 Range 回退的退避时间"""
        return min(self.config.range_retry_delay * attempt, self.config.range_retry_cap)

    async def download(
        self,
        url: str,
        dest: str,
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancelToken] = None,
        resume_from: int = 0,
        expected_total: int = 0,
    ) -> None:
        """
        下载 url 到 dest

        Args:
            url: 下载地址
            dest: 目标文件（续传时以追加方式打开）
            on_progress: 进度回调 (已接收总量, 总大小)
            token: 取消令牌
            resume_from: 起始偏移
            expected_total: 预期总大小，0 表示以 Content-Length 为准

        Raises:
            DownloadCancelledError: 已取消
            DownloadHTTPError: 不可恢复的状态码
            aiohttp.ClientError / OSError: 重试次数耗尽或不可重试的错误
        """
        token = token or CancelToken()
        os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
        name = os.path.basename(dest)

        attempt = 1
        while True:
            token.raise_if_cancelled()

            if expected_total > 0 and resume_from >= expected_total:
                if resume_from == expected_total:
                    # 已经完整，交给调用方校验；已有字节照常上报
                    if on_progress is not None:
                        await on_progress(resume_from, expected_total)
                    return
                FileVerifier.remove(dest)
                resume_from = 0

            try:
                await self._attempt(
                    url, dest, on_progress, token, attempt, resume_from, expected_total
                )
                return
            except DownloadCancelledError:
                raise
            except _RestartFromZero as e:
                if attempt >= self.config.max_attempts:
                    raise DownloadHTTPError(
                        f"HTTP {e.status} for {url}", status=e.status, context={"url": url}
                    )
                logger.warning(
                    f"[重试] '{name}' 服务器未按 Range 返回 (HTTP {e.status})，从头开始下载"
                )
                FileVerifier.remove(dest)
                resume_from = 0
                delay = self.status_delay(attempt)
            except _RetryableStatus as e:
                if attempt >= self.config.status_attempts:
                    FileVerifier.remove(dest)
                    raise DownloadHTTPError(
                        f"HTTP {e.status} for {url}", status=e.status, context={"url": url}
                    )
                resume_from = FileVerifier.get_size(dest)
                delay = self.status_delay(attempt)
                logger.warning(
                    f"[重试] '{name}' HTTP {e.status} (第 {attempt} 次). {delay:.1f}s 后重试..."
                )
            except DownloadHTTPError:
                FileVerifier.remove(dest)
                raise
            except Exception as e:
                if token.cancelled:
                    raise DownloadCancelledError() from e
                if attempt >= self.config.max_attempts or not is_retryable(e):
                    raise
                resume_from = FileVerifier.get_size(dest)
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"[重试] '{name}' 传输中断 (第 {attempt} 次): {e!r}. "
                    f"{delay:.1f}s 后从 {resume_from} 字节处续传..."
                )

            await token.sleep(delay)
            attempt += 1

    async def _attempt(
        self,
        url: str,
        dest: str,
        on_progress: Optional[ProgressCallback],
        token: CancelToken,
        attempt: int,
        resume_from: int,
        expected_total: int,
    ) -> None:
        headers = {}
        if resume_from > 0:
            headers["Range"] = f"bytes={resume_from}-"

        async with self._session.session.get(url, headers=headers) as response:
            token.register(response)
            try:
                token.raise_if_cancelled()
                status = response.status
                if status == 206 or (status == 200 and resume_from == 0):
                    pass
                elif resume_from > 0 and status in (200, 416):
                    raise _RestartFromZero(status)
                elif status in RETRYABLE_STATUSES:
                    raise _RetryableStatus(status)
                else:
                    raise DownloadHTTPError(
                        f"HTTP {status} for {url}", status=status, context={"url": url}
                    )

                await self._stream(
                    response, dest, on_progress, token, attempt, resume_from, expected_total
                )
            finally:
                token.unregister(response)

    async def _stream(
        self,
        response: aiohttp.ClientResponse,
        dest: str,
        on_progress: Optional[ProgressCallback],
        token: CancelToken,
        attempt: int,
        resume_from: int,
        expected_total: int,
    ) -> None:
        content_length = response.content_length or 0
        if expected_total > 0:
            total = expected_total
        elif content_length:
            total = resume_from + content_length
        else:
            total = 0

        stall_timeout = (
            self.config.stall_timeout if attempt <= 2 else self.config.stall_timeout_late
        )
        interval = min(self.config.watchdog_interval, stall_timeout)
        loop = asyncio.get_running_loop()
        last_progress_at = loop.time()
        received = 0

        async with aiofiles.open(dest, "ab" if resume_from > 0 else "wb") as f:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        response.content.read(self.config.chunk_size), timeout=interval
                    )
                except aiohttp.ServerTimeoutError:
                    raise
                except asyncio.TimeoutError:
                    # 看门狗：定期醒来检查取消与停滞
                    token.raise_if_cancelled()
                    if loop.time() - last_progress_at > stall_timeout:
                        response.close()
                        raise DownloadStallError(
                            f"no data for {stall_timeout:.0f}s",
                            context={"file": dest, "received": received},
                        )
                    continue

                if not chunk:
                    break

                await f.write(chunk)
                received += len(chunk)
                last_progress_at = loop.time()
                await self._session.rate_limiter.consume(len(chunk))

                if on_progress is not None:
                    current = resume_from + received
                    await on_progress(min(current, total) if total else current, total)

        token.raise_if_cancelled()
        if content_length and received < content_length:
            raise DownloadNetworkError(
                "response aborted",
                context={"file": dest, "received": received, "expected": content_length},
            )
