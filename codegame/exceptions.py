"""客户端异常模块
定义 CodeGame 客户端的各类异常，提供明确的错误类型和信息
"""

from __future__ import annotations


class CodeGameError(Exception):
    """客户端异常基类

    所有客户端相关的异常都应该继承此类，
    提供统一的异常处理接口。
    """

    def __init__(self, message: str, details: dict | None = None):
        """初始化客户端异常

        Args:
            message: 错误消息
            details: 额外的错误详情（可选）
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# ==================== 连接状态相关异常 ====================


class ClientStateError(CodeGameError):
    """连接状态异常

    当客户端处于不允许某操作的状态时抛出
    """

    def __init__(
        self,
        message: str | None = None,
        current_state: str | None = None,
        expected_state: str | None = None,
    ):
        if message is None:
            message = "Operation not allowed in the current connection state."
        details = {}
        if current_state:
            details["current_state"] = current_state
        if expected_state:
            details["expected_state"] = expected_state
        super().__init__(message, details)
        self.current_state = current_state
        self.expected_state = expected_state


class AlreadyConnectedError(ClientStateError):
    """已连接异常

    在已绑定会话的 socket 上再次 join/connect/spectate 时抛出
    """

    def __init__(self, message: str | None = None, current_state: str | None = None):
        if message is None:
            message = "This socket is already connected to a game."
        super().__init__(message, current_state, expected_state="unbound")


class NotConnectedError(ClientStateError):
    """未连接异常

    未连接到玩家（未连接或仅观战）时发送命令抛出
    """

    def __init__(self, message: str | None = None, current_state: str | None = None):
        if message is None:
            message = "The socket is not connected to a player."
        super().__init__(message, current_state, expected_state="connected")


# ==================== 事件相关异常 ====================


class TypeMismatchError(CodeGameError):
    """事件类型不一致异常

    同一事件名下注册了不同数据类型的回调时抛出
    """

    def __init__(
        self,
        event_name: str,
        expected_type: object = None,
        given_type: object = None,
        message: str | None = None,
    ):
        if message is None:
            message = f"Wrong event listener type for event '{event_name}'."
        details = {"event_name": event_name}
        if expected_type is not None:
            details["expected_type"] = _type_name(expected_type)
        if given_type is not None:
            details["given_type"] = _type_name(given_type)
        super().__init__(message, details)
        self.event_name = event_name
        self.expected_type = expected_type
        self.given_type = given_type


class EventEncodeError(CodeGameError):
    """命令编码异常

    命令数据无法被 pydantic 序列化为 JSON 时抛出
    """

    def __init__(self, command_name: str, data_type: object = None, message: str | None = None):
        if message is None:
            message = f"Failed to encode data for command '{command_name}'."
        details = {"command_name": command_name}
        if data_type is not None:
            details["data_type"] = _type_name(data_type)
        super().__init__(message, details)
        self.command_name = command_name
        self.data_type = data_type


# ==================== 会话相关异常 ====================


class InvalidSessionError(CodeGameError):
    """会话无效异常

    会话文件缺少字段，或保存不完整的会话时抛出
    """

    def __init__(
        self,
        message: str | None = None,
        game_url: str | None = None,
        username: str | None = None,
        missing: list[str] | None = None,
    ):
        if message is None:
            message = "Incomplete session."
        details: dict = {}
        if game_url:
            details["game_url"] = game_url
        if username:
            details["username"] = username
        if missing:
            details["missing"] = missing
        super().__init__(message, details)
        self.game_url = game_url
        self.username = username
        self.missing = missing or []


class SessionNotFoundError(InvalidSessionError):
    """会话不存在异常

    指定服务器与用户名下没有会话文件时抛出
    """

    def __init__(
        self,
        message: str | None = None,
        game_url: str | None = None,
        username: str | None = None,
    ):
        if message is None:
            message = "Session does not exist."
        super().__init__(message, game_url, username)


# ==================== 网络相关异常 ====================


class TransportError(CodeGameError):
    """WebSocket 传输异常

    打开、发送或关闭消息流失败时抛出
    """

    def __init__(self, message: str | None = None, url: str | None = None):
        if message is None:
            message = "WebSocket transport failure."
        details = {}
        if url:
            details["url"] = url
        super().__init__(message, details)
        self.url = url


class UpstreamError(CodeGameError):
    """HTTP 上游异常

    游戏服务器返回非成功状态码时抛出
    """

    def __init__(
        self,
        message: str | None = None,
        endpoint: str | None = None,
        status: int | None = None,
    ):
        if message is None:
            message = f"Failed to read response from {endpoint} endpoint"
            if status is not None:
                message += f": unexpected response code: {status}"
        details: dict = {}
        if endpoint:
            details["endpoint"] = endpoint
        if status is not None:
            details["status"] = status
        super().__init__(message, details)
        self.endpoint = endpoint
        self.status = status


def _type_name(tp: object) -> str:
    """类型的可读名称（兼容 list[int] 等泛型别名）"""
    if isinstance(tp, type) and getattr(tp, "__origin__", None) is None:
        return tp.__qualname__
    return repr(tp)
