"""
GameFetch 统一异常体系

提供分层的异常结构，支持错误代码、上下文信息和 JSON 序列化。
"""

from typing import Any, Dict, Optional


class GameFetchError(Exception):
    """GameFetch 基础异常类"""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self._get_default_code()
        self.context = context or {}

    def _get_default_code(self) -> str:
        """获取默认错误代码"""
        return "E000"

    def to_dict(self) -> Dict[str, Any]:
        """将异常转换为字典格式"""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "type": self.__class__.__name__,
        }

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message


class ConfigError(GameFetchError):
    """配置相关错误"""

    def _get_default_code(self) -> str:
        return "E100"


class ConfigParseError(ConfigError):
    """配置解析错误"""

    def _get_default_code(self) -> str:
        return "E101"


class ConfigValidationError(ConfigError):
    """配置验证错误"""

    def _get_default_code(self) -> str:
        return "E102"


class ManifestError(GameFetchError):
    """清单获取或解析失败，整个任务无法继续"""

    def _get_default_code(self) -> str:
        return "E200"


class DownloadError(GameFetchError):
    """下载相关错误"""

    def _get_default_code(self) -> str:
        return "E300"


class DownloadNetworkError(DownloadError):
    """下载网络错误（可重试）"""

    def _get_default_code(self) -> str:
        return "E301"


class DownloadChecksumError(DownloadError):
    """下载校验错误"""

    def _get_default_code(self) -> str:
        return "E302"


class DownloadFileError(DownloadError):
    """下载文件操作错误"""

    def _get_default_code(self) -> str:
        return "E303"


class DownloadStallError(DownloadNetworkError):
    """传输停滞：超过阈值时间没有收到任何数据"""

    def _get_default_code(self) -> str:
        return "E304"


class DownloadHTTPError(DownloadError):
    """服务器返回了无法处理的状态码"""

    def __init__(
        self,
        message: str,
        status: int,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code, context)
        self.status = status
        self.context["status"] = status

    def _get_default_code(self) -> str:
        return "E305"


class DownloadCancelledError(DownloadError):
    """下载已被取消，绕过所有重试逻辑"""

    def __init__(self, message: str = "cancelled", **kwargs):
        super().__init__(message, **kwargs)

    def _get_default_code(self) -> str:
        return "E399"


__all__ = [
    # 基础异常
    "GameFetchError",
    # 配置异常
    "ConfigError",
    "ConfigParseError",
    "ConfigValidationError",
    # 清单异常
    "ManifestError",
    # 下载异常
    "DownloadError",
    "DownloadNetworkError",
    "DownloadChecksumError",
    "DownloadFileError",
    "DownloadStallError",
    "DownloadHTTPError",
    "DownloadCancelledError",
]
