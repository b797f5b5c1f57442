"""
GameFetch 服务层

包含与源站交互的客户端。
"""

from gamefetch.services.manifest_client import ManifestClient

__all__ = [
    "ManifestClient",
]
