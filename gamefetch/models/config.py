"""
下载配置模型

定义下载引擎的全部可调参数，以及从字典（TOML/JSON/YAML）构建配置的方法。
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List

from gamefetch.exceptions import ConfigValidationError


class DownloadMode(Enum):
    """下载模式"""

    INSTALL = "install"
    REPAIR = "repair"
    UPDATE = "update"


@dataclass
class DownloadConfig:
    """下载配置"""

    base_url: str = ""
    install_dir: str = ""
    include_optional: bool = False
    concurrency: int = 4
    part_concurrency: int = 4
    mode: DownloadMode = DownloadMode.INSTALL
    # 修复/更新模式下，本地已存在时不覆盖的文件
    preserve_paths: List[str] = field(default_factory=lambda: ["mods/mods.vdf"])

    # 传输层
    max_attempts: int = 8
    status_attempts: int = 5
    backoff_base: float = 1.0
    backoff_cap: float = 15.0
    backoff_jitter: float = 1.0
    range_retry_delay: float = 2.0
    range_retry_cap: float = 10.0
    stall_timeout: float = 30.0
    stall_timeout_late: float = 45.0
    watchdog_interval: float = 10.0
    chunk_size: int = 64 * 1024
    max_speed: int = 0  # 字节/秒，0 表示不限速

    # 文件层
    single_file_attempts: int = 2
    part_retry_delay: float = 2.0
    part_retry_cap: float = 10.0

    # 调度与连接
    pause_poll_interval: float = 0.1
    connection_limit: int = 64
    connect_timeout: float = 15.0
    read_timeout: float = 90.0
    manifest_timeout: float = 30.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadConfig":
        """
        从字典构建配置，未知键会被忽略

        Raises:
            ConfigValidationError: 值的类型或范围不合法
        """
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            key = key.replace("-", "_")
            if key not in known or value is None:
                continue
            if key == "mode":
                try:
                    value = DownloadMode(str(value).lower())
                except ValueError:
                    raise ConfigValidationError(
                        f"mode 必须为 install/repair/update: {value}",
                        context={"mode": value},
                    )
            elif key == "preserve_paths":
                if not isinstance(value, (list, tuple)):
                    raise ConfigValidationError("preserve_paths 必须为列表")
                value = [str(v) for v in value]
            else:
                default = known[key].default
                try:
                    if isinstance(default, bool):
                        if isinstance(value, str):
                            value = value.strip().lower() in ("1", "true", "yes")
                        else:
                            value = bool(value)
                    elif isinstance(default, int):
                        value = int(value)
                    elif isinstance(default, float):
                        value = float(value)
                    else:
                        value = str(value)
                except (TypeError, ValueError):
                    raise ConfigValidationError(
                        f"配置项 {key} 的值无效: {value!r}",
                        context={"key": key, "value": value},
                    )
            values[key] = value

        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        """验证配置"""
        if self.concurrency < 1:
            raise ConfigValidationError("concurrency 必须大于 0")
        if self.part_concurrency < 1:
            raise ConfigValidationError("part_concurrency 必须大于 0")
        if self.max_attempts < 1 or self.status_attempts < 1:
            raise ConfigValidationError("重试次数必须大于 0")
        if self.single_file_attempts < 1:
            raise ConfigValidationError("single_file_attempts 必须大于 0")
        if self.chunk_size < 1:
            raise ConfigValidationError("chunk_size 必须大于 0")
        if self.max_speed < 0:
            raise ConfigValidationError("max_speed 不能为负数")
        if self.watchdog_interval <= 0:
            raise ConfigValidationError("watchdog_interval 必须大于 0")
