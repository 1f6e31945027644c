"""客户端配置中心

所有可配置的客户端参数应在此定义，支持从环境变量覆盖。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _get_env_float(key: str, default: float) -> float:
    """从环境变量获取浮点数配置"""
    value = os.environ.get(key)
    if value is not None:
        try:
            return float(value)
        except ValueError:
            pass
    return default


def _get_env_int(key: str, default: int) -> int:
    """从环境变量获取整数配置"""
    value = os.environ.get(key)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            pass
    return default


def _get_env_bool(key: str, default: bool) -> bool:
    """从环境变量获取布尔配置"""
    value = os.environ.get(key, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    elif value in ("false", "0", "no", "off"):
        return False
    return default


@dataclass(frozen=True)
class ClientConfig:
    """客户端配置类 (不可变)

    所有配置项支持通过环境变量覆盖：
    - CODEGAME_REQUEST_TIMEOUT: HTTP 请求超时秒数
    - CODEGAME_OPEN_TIMEOUT: WebSocket 握手超时秒数
    - CODEGAME_MAX_MESSAGE_SIZE: 单条入站消息最大字节数
    - CODEGAME_GAMES_DIR: 会话文件目录
    - CODEGAME_SECRET_IN_HEADER: 通过请求头而非查询串传递玩家密钥
    """

    # ==================== HTTP ====================
    request_timeout: float = field(
        default_factory=lambda: _get_env_float("CODEGAME_REQUEST_TIMEOUT", 10.0)
    )

    # ==================== WebSocket ====================
    open_timeout: float = field(
        default_factory=lambda: _get_env_float("CODEGAME_OPEN_TIMEOUT", 10.0)
    )
    max_message_size: int = field(
        default_factory=lambda: _get_env_int("CODEGAME_MAX_MESSAGE_SIZE", 1_048_576)
    )
    secret_in_header: bool = field(
        default_factory=lambda: _get_env_bool("CODEGAME_SECRET_IN_HEADER", False)
    )

    # ==================== 会话存储 ====================
    # 空字符串表示使用平台默认数据目录
    games_dir: str = field(
        default_factory=lambda: os.environ.get("CODEGAME_GAMES_DIR", "")
    )

    # ==================== 日志 ====================
    log_level: str = field(
        default_factory=lambda: os.environ.get("CODEGAME_LOG_LEVEL", "INFO")
    )

    @classmethod
    def from_env(cls) -> ClientConfig:
        """从环境变量创建配置实例"""
        return cls()


_config: ClientConfig | None = None


def get_config() -> ClientConfig:
    """获取全局配置实例（懒加载）"""
    global _config
    if _config is None:
        _config = ClientConfig.from_env()
    return _config


def reset_config() -> None:
    """重置配置（用于测试）"""
    global _config
    _config = None
