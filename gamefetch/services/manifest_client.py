"""
清单客户端

从源站获取 checksums.json 并解析为 Manifest。
"""

import asyncio
import json
from typing import Optional

import aiohttp
from loguru import logger

from gamefetch.exceptions import ManifestError
from gamefetch.models import Manifest


MANIFEST_NAME = "checksums.json"


class ManifestClient:
    """清单客户端"""

    def __init__(
        self, session: Optional[aiohttp.ClientSession] = None, timeout: float = 30
    ):
        self._session = session
        self._owned_session = session is None
        self.timeout = timeout

    @property
    def session(self) -> aiohttp.ClientSession:
        """获取或创建 aiohttp session"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owned_session = True
        return self._session

    @staticmethod
    def manifest_url(base_url: str) -> str:
        return f"{base_url.rstrip('/')}/{MANIFEST_NAME}"

    async def fetch(self, base_url: str) -> Manifest:
        """
        获取并解析清单

        Raises:
            ManifestError: 请求失败、状态码非 200 或内容无法解析
        """
        url = self.manifest_url(base_url)
        logger.info(f"[清单] 获取 {url}")
        try:
            async with self.session.get(
                url, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status != 200:
                    raise ManifestError(
                        f"清单请求失败 (状态码: {response.status})",
                        context={"url": url, "status": response.status},
                    )
                data = await response.json(content_type=None)
            manifest = Manifest.from_dict(data)
        except ManifestError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ManifestError(
                f"清单请求失败: {e}", context={"url": url, "error": str(e)}
            ) from e
        except (json.JSONDecodeError, ValueError, TypeError, KeyError) as e:
            raise ManifestError(
                f"清单格式错误: {e}", context={"url": url, "error": str(e)}
            ) from e

        logger.info(
            f"[清单] 版本 {manifest.game_version or '未知'}，共 {len(manifest.files)} 个文件"
        )
        return manifest

    async def close(self):
        """关闭 session"""
        if self._owned_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
