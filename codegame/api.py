"""CodeGame HTTP API 客户端

对 aiohttp.ClientSession 的薄封装，实现游戏服务器的 REST 接口:
服务器信息、创建游戏、创建玩家、查询玩家名，以及打开 WebSocket 消息流。
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, TypeVar

import aiohttp
from pydantic import BaseModel, TypeAdapter, ValidationError

from .config import ClientConfig, get_config
from .exceptions import UpstreamError
from .protocol import (
    CreateGameRequest,
    CreatePlayerRequest,
    GameConfigResponse,
    GameData,
    GameInfo,
    PlayerData,
    UsernameResponse,
)
from .transport import MessageTransport, OnClose, OnText

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PLAYERS_ADAPTER: TypeAdapter[dict[str, str]] = TypeAdapter(dict[str, str])


# ==================== URL 工具 ====================


def trim_url(url: str) -> str:
    """去掉协议前缀与末尾的 '/'

    >>> trim_url("https://example.com/")
    'example.com'
    """
    if url.endswith("/"):
        url = url[:-1]
    _, sep, rest = url.partition("://")
    return rest if sep else url


def base_url(protocol: str, tls: bool, trimmed_url: str) -> str:
    """拼接带协议的基础地址，tls 为真时使用 https / wss"""
    if tls:
        return f"{protocol}s://{trimmed_url}"
    return f"{protocol}://{trimmed_url}"


async def is_tls(http: aiohttp.ClientSession, trimmed_url: str) -> bool:
    """探测服务器是否支持 TLS (能否通过 https 访问 /api/info)"""
    try:
        async with http.get(base_url("http", True, trimmed_url) + "/api/info") as resp:
            await resp.read()
            return True
    except (aiohttp.ClientError, TimeoutError, OSError):
        return False


# ==================== API ====================


class Api:
    """游戏服务器 REST API

    通过 Api.create() 创建 (会探测 TLS)；也可以直接传入已知的 tls 与 session。

    Args:
        url: 不含协议的服务器地址
        tls: 是否使用 https / wss
        http: aiohttp 会话 (None 则自动创建并在 close() 时关闭)
        config: 客户端配置
    """

    def __init__(
        self,
        url: str,
        tls: bool = False,
        http: aiohttp.ClientSession | None = None,
        config: ClientConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        self.url = trim_url(url)
        self.tls = tls
        self.base_url = base_url("http", tls, self.url)
        self._http = http
        self._owns_http = http is None

    @classmethod
    async def create(
        cls,
        url: str,
        config: ClientConfig | None = None,
        http: aiohttp.ClientSession | None = None,
    ) -> Api:
        config = config or get_config()
        api = cls(url, False, http, config)
        api.tls = await is_tls(api.http, api.url)
        api.base_url = base_url("http", api.tls, api.url)
        logger.info("Game server: %s (tls=%s)", api.url, api.tls)
        return api

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout)
            )
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        """关闭自行创建的 HTTP 会话"""
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()

    # ==================== 服务器 / 游戏 ====================

    async def fetch_info(self) -> GameInfo:
        """GET /api/info"""
        return await self._get_json("/api/info", GameInfo)

    async def fetch_game_config(self, game_id: str, config_type: Any = Any) -> Any:
        """GET /api/games/{game_id}，返回游戏配置"""
        response = await self._get_json(f"/api/games/{game_id}", GameConfigResponse[config_type])
        return response.config

    async def create_game(self, public: bool, protected: bool, config: Any = None) -> GameData:
        """POST /api/games

        Returns:
            游戏 ID 与 (protected 为真时) 加入密钥
        """
        request = CreateGameRequest(public=public, protected=protected, config=config)
        return await self._post_json("/api/games", request, GameData)

    # ==================== 玩家 ====================

    async def create_player(self, game_id: str, username: str, join_secret: str = "") -> PlayerData:
        """POST /api/games/{game_id}/players"""
        request = CreatePlayerRequest(username=username, join_secret=join_secret)
        return await self._post_json(f"/api/games/{game_id}/players", request, PlayerData)

    async def fetch_username(self, game_id: str, player_id: str) -> str:
        """GET /api/games/{game_id}/players/{player_id}"""
        response = await self._get_json(
            f"/api/games/{game_id}/players/{player_id}", UsernameResponse
        )
        return response.username

    async def fetch_players(self, game_id: str) -> dict[str, str]:
        """GET /api/games/{game_id}/players，返回 player_id → username"""
        return await self._get_json(f"/api/games/{game_id}/players", _PLAYERS_ADAPTER)

    # ==================== WebSocket ====================

    async def connect_websocket(
        self,
        endpoint: str,
        on_text: OnText,
        on_close: OnClose,
        headers: Mapping[str, str] | None = None,
    ) -> MessageTransport:
        """打开到 endpoint 的 WebSocket 消息流"""
        return await MessageTransport.open(
            base_url("ws", self.tls, self.url) + endpoint,
            on_text,
            on_close,
            headers=headers,
            open_timeout=self.config.open_timeout,
            max_size=self.config.max_message_size,
        )

    # ==================== 内部 ====================

    async def _get_json(self, endpoint: str, response_type: type[T] | TypeAdapter[T]) -> T:
        try:
            async with self.http.get(
                self.base_url + endpoint, headers={"Accept": "application/json"}
            ) as resp:
                if resp.status != 200:
                    raise UpstreamError(endpoint=endpoint, status=resp.status)
                body = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise UpstreamError(f"Request to {endpoint} failed: {e}", endpoint=endpoint) from e
        return _parse(endpoint, body, response_type)

    async def _post_json(
        self, endpoint: str, request: BaseModel, response_type: type[T] | TypeAdapter[T]
    ) -> T:
        logger.debug("POST %s", endpoint)
        try:
            async with self.http.post(
                self.base_url + endpoint,
                data=request.model_dump_json(),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            ) as resp:
                if resp.status not in (200, 201):
                    raise UpstreamError(endpoint=endpoint, status=resp.status)
                body = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as e:
            raise UpstreamError(f"Request to {endpoint} failed: {e}", endpoint=endpoint) from e
        return _parse(endpoint, body, response_type)


def _parse(endpoint: str, body: bytes, response_type: type[T] | TypeAdapter[T]) -> T:
    adapter = response_type if isinstance(response_type, TypeAdapter) else TypeAdapter(response_type)
    try:
        return adapter.validate_json(body)
    except ValidationError as e:
        raise UpstreamError(
            f"Invalid response from {endpoint} endpoint: {e.error_count()} validation error(s)",
            endpoint=endpoint,
        ) from e
