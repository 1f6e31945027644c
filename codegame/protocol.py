"""CodeGame 协议定义
基于 WebSocket 的 JSON 消息格式 + HTTP API 的请求/响应模型

协议设计:
- 所有 WebSocket 消息 (事件与命令) 使用同一信封:
  {"name": "<事件名>", "data": <任意 JSON>}
- data 的具体结构由订阅时声明的类型决定，由 pydantic 负责校验/序列化
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PydanticSchemaGenerationError,
    ValidationError,
)
from pydantic_core import PydanticSerializationError

from .exceptions import EventEncodeError

T = TypeVar("T")

# ==================== 消息信封 ====================


class EventHeader(BaseModel):
    """只解析事件名的轻量信封

    用于分发层在不知道 data 类型时快速判断事件名
    """

    model_config = ConfigDict(extra="ignore")

    name: str


class Event(BaseModel, Generic[T]):
    """事件 / 命令信封

    格式:
    {
        "name": "tick",
        "data": 5
    }
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    data: T


def encode_event(name: str, data: Any) -> str:
    """将命令名与数据打包为 JSON 字符串

    按 data 的运行时类型参数化 Event，与入站解码对称。

    Raises:
        EventEncodeError: data 的类型无法被 pydantic 序列化
    """
    data_type = Any if data is None else type(data)
    try:
        return Event[data_type](name=name, data=data).model_dump_json()
    except (PydanticSchemaGenerationError, PydanticSerializationError, ValidationError) as e:
        raise EventEncodeError(
            name, data_type, f"Failed to encode data for command '{name}': {e}"
        ) from e


def decode_event_name(raw: str | bytes) -> str:
    """仅解析消息的事件名

    Raises:
        pydantic.ValidationError: 不是合法的 JSON 信封
    """
    return EventHeader.model_validate_json(raw).name


# ==================== HTTP API 模型 ====================


class GameInfo(BaseModel):
    """GET /api/info 响应"""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    cg_version: str = ""
    display_name: str = ""
    description: str = ""
    version: str = ""
    repository_url: str = ""


class GameData(BaseModel):
    """POST /api/games 响应"""

    model_config = ConfigDict(extra="ignore")

    game_id: str
    join_secret: str = ""


class CreateGameRequest(BaseModel):
    """POST /api/games 请求"""

    public: bool = False
    protected: bool = False
    config: Any = None


class PlayerData(BaseModel):
    """POST /api/games/{id}/players 响应"""

    model_config = ConfigDict(extra="ignore")

    player_id: str = Field(min_length=1)
    player_secret: str = Field(min_length=1)


class CreatePlayerRequest(BaseModel):
    """POST /api/games/{id}/players 请求"""

    username: str
    join_secret: str = ""


class UsernameResponse(BaseModel):
    """GET /api/games/{id}/players/{player_id} 响应"""

    model_config = ConfigDict(extra="ignore")

    username: str


class GameConfigResponse(BaseModel, Generic[T]):
    """GET /api/games/{id} 响应"""

    model_config = ConfigDict(extra="ignore")

    config: T | None = None
