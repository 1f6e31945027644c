"""CodeGame 客户端
基于 WebSocket 的实时游戏协议客户端
"""

from .api import Api
from .client import ConnectionState, GameSocket
from .config import ClientConfig, get_config
from .exceptions import (
    AlreadyConnectedError,
    CodeGameError,
    EventEncodeError,
    InvalidSessionError,
    NotConnectedError,
    SessionNotFoundError,
    TransportError,
    TypeMismatchError,
    UpstreamError,
)
from .protocol import Event, GameData, GameInfo, PlayerData
from .registry import CallbackRegistry
from .session import Session, SessionStore
from .transport import MessageTransport
from .version import CG_VERSION, is_version_compatible

__all__ = [
    "GameSocket", "ConnectionState", "Api",
    "CallbackRegistry", "MessageTransport",
    "Session", "SessionStore",
    "Event", "GameInfo", "GameData", "PlayerData",
    "ClientConfig", "get_config",
    "CG_VERSION", "is_version_compatible",
    "CodeGameError", "AlreadyConnectedError", "NotConnectedError",
    "TypeMismatchError", "EventEncodeError", "InvalidSessionError", "SessionNotFoundError",
    "TransportError", "UpstreamError",
]
