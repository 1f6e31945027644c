"""CodeGame WebSocket 游戏客户端

功能:
- 连接服务端 (加入 / 直接连接 / 观战 / 恢复会话)
- 按事件名注册类型化回调，接收并分发服务端事件
- 发送玩家命令
- 会话持久化，支持显式重新加入
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
from enum import Enum
from typing import Any, TypeVar
from urllib.parse import urlencode

from .api import Api
from .config import ClientConfig, get_config
from .exceptions import (
    AlreadyConnectedError,
    InvalidSessionError,
    NotConnectedError,
    SessionNotFoundError,
    TransportError,
)
from .protocol import GameData, GameInfo, encode_event
from .registry import CallbackRegistry, EventCallback
from .session import Session, SessionStore
from .transport import MessageTransport
from .version import CG_VERSION, is_version_compatible

logger = logging.getLogger(__name__)

T = TypeVar("T")

# secret_in_header 开启时携带玩家密钥的请求头
PLAYER_SECRET_HEADER = "CG-Player-Secret"


class ConnectionState(Enum):
    """连接状态"""

    UNBOUND = "unbound"  # 未连接任何游戏
    CONNECTING = "connecting"  # 正在握手 / 拉取玩家列表
    CONNECTED = "connected"  # 已连接 (玩家或观战)
    CLOSED = "closed"  # 连接已关闭 (终态)


class GameSocket:
    """CodeGame 客户端

    职责:
    1. 维护与游戏服务器的 WebSocket 连接及连接状态
    2. 管理事件回调并分发入站事件
    3. 发送玩家命令
    4. 保存 / 恢复玩家会话

    推荐通过 GameSocket.create() 创建，它会检查服务端协议版本::

        async with await GameSocket.create("localhost:8080") as socket:
            socket.on("tick", int, on_tick)
            await socket.join(game_id, "alice")
            await socket.listen()
    """

    def __init__(
        self,
        api: Api,
        store: SessionStore | None = None,
        config: ClientConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        self.server_info: GameInfo | None = None

        self._api = api
        self._store = store or SessionStore(self.config.games_dir or None)
        self._registry = CallbackRegistry()

        self._state = ConnectionState.UNBOUND
        self._session: Session | None = None
        self._transport: MessageTransport | None = None
        self._closed = asyncio.Event()
        # 每次打开连接递增，旧连接的关闭通知被忽略
        self._generation = 0

        self._usernames: dict[str, str] = {}
        self._usernames_lock = threading.Lock()

    @classmethod
    async def create(
        cls,
        url: str,
        *,
        config: ClientConfig | None = None,
        store: SessionStore | None = None,
    ) -> GameSocket:
        """创建客户端并检查服务端协议版本

        Args:
            url: 游戏服务器地址，协议前缀可省略

        Raises:
            UpstreamError: 服务器信息获取失败
        """
        api = await Api.create(url, config)
        socket = cls(api, store, config)
        try:
            await socket.check_version()
        except Exception:
            await api.close()
            raise
        return socket

    async def check_version(self) -> bool:
        """获取服务器信息并比较协议版本；不兼容时仅记录警告"""
        info = await self._api.fetch_info()
        self.server_info = info
        compatible = is_version_compatible(info.cg_version, CG_VERSION)
        if not compatible:
            logger.warning(
                "CodeGame version mismatch. Server: v%s, client: v%s",
                info.cg_version,
                CG_VERSION,
            )
        return compatible

    # ==================== 属性 ====================

    @property
    def api(self) -> Api:
        return self._api

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def session(self) -> Session | None:
        """当前会话，未连接时为 None"""
        return self._session

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_player(self) -> bool:
        """是否以玩家身份连接 (可以发送命令)"""
        return self.is_connected and self._session is not None and bool(self._session.player_id)

    # ==================== 事件回调注册 ====================

    def on(self, event_name: str, data_type: type[T] | Any, handler: EventCallback[T]) -> str:
        """注册事件回调，每次收到该事件都会触发

        Returns:
            回调 ID，可用于 remove_callback()
        """
        return self._registry.on(event_name, data_type, handler)

    def once(self, event_name: str, data_type: type[T] | Any, handler: EventCallback[T]) -> str:
        """注册一次性事件回调，下次收到该事件时触发后自动移除"""
        return self._registry.once(event_name, data_type, handler)

    def remove_callback(self, event_name: str, reg_id: str) -> None:
        """移除事件回调"""
        self._registry.remove(event_name, reg_id)

    @property
    def callbacks(self) -> CallbackRegistry:
        return self._registry

    # ==================== 游戏管理 ====================

    async def create_game(self, public: bool, protected: bool, config: Any = None) -> GameData:
        """在服务器上创建新游戏"""
        return await self._api.create_game(public, protected, config)

    async def game_config(self, config_type: Any = Any) -> Any:
        """当前游戏的配置"""
        if self._session is None:
            raise NotConnectedError("The socket is not connected to a game.")
        return await self._api.fetch_game_config(self._session.game_id, config_type)

    # ==================== 连接管理 ====================

    async def join(self, game_id: str, username: str, join_secret: str = "") -> None:
        """在游戏中创建新玩家并连接

        Raises:
            AlreadyConnectedError: 已连接到游戏
            UpstreamError: 创建玩家失败
            TransportError: WebSocket 连接失败
        """
        self._require_unbound()
        player = await self._api.create_player(game_id, username, join_secret)
        await self.connect(game_id, player.player_id, player.player_secret)

    async def connect(self, game_id: str, player_id: str, player_secret: str) -> None:
        """以已有玩家身份连接，并保存会话

        会话保存失败只记录日志，不影响连接。
        """
        self._require_unbound()
        params = {"player_id": player_id}
        headers = None
        if self.config.secret_in_header:
            headers = {PLAYER_SECRET_HEADER: player_secret}
        else:
            params["player_secret"] = player_secret
        endpoint = f"/api/games/{game_id}/connect?{urlencode(params)}"

        await self._open(endpoint, headers)
        try:
            self._session = Session(
                game_url=self._api.url,
                game_id=game_id,
                player_id=player_id,
                player_secret=player_secret,
            )
            await self._seed_usernames(game_id)
        except BaseException:
            await self._abort()
            raise

        self._session = Session(
            game_url=self._api.url,
            username=self._cached_username(player_id) or "",
            game_id=game_id,
            player_id=player_id,
            player_secret=player_secret,
        )
        try:
            self._store.save(self._session)
        except (InvalidSessionError, OSError) as e:
            logger.error("Failed to save session: %s", e)

        if self._state == ConnectionState.CONNECTING:
            self._state = ConnectionState.CONNECTED
        logger.info("Connected to game %s as player %s", game_id, player_id)

    async def spectate(self, game_id: str) -> None:
        """以观战者身份连接 (只读事件流，不保存会话)"""
        self._require_unbound()
        await self._open(f"/api/games/{game_id}/spectate", None)
        try:
            self._session = Session(game_url=self._api.url, game_id=game_id)
            await self._seed_usernames(game_id)
        except BaseException:
            await self._abort()
            raise

        if self._state == ConnectionState.CONNECTING:
            self._state = ConnectionState.CONNECTED
        logger.info("Spectating game %s", game_id)

    async def restore_session(self, username: str) -> None:
        """从磁盘加载会话并重新连接

        会话文件损坏或连接失败时删除该会话文件后重新抛出异常。

        Raises:
            SessionNotFoundError: 没有该用户名的会话
            InvalidSessionError: 会话文件不完整
        """
        self._require_unbound()
        try:
            session = self._store.load(self._api.url, username)
        except SessionNotFoundError:
            raise
        except InvalidSessionError:
            self._store.delete(self._api.url, username)
            raise

        try:
            await self.connect(session.game_id, session.player_id, session.player_secret)
        except Exception:
            logger.info("Restoring session failed, removing it: user=%s", username)
            self._store.remove(session)
            raise

    async def listen(self) -> None:
        """等待直到连接关闭"""
        if self._transport is None and self._state != ConnectionState.CLOSED:
            raise NotConnectedError("The socket is not connected to a game.")
        await self._closed.wait()

    async def close(self) -> None:
        """发送正常关闭帧并等待连接关闭"""
        if self._state == ConnectionState.CLOSED:
            return
        if self._transport is None:
            raise NotConnectedError("The socket is not connected to a game.")
        await self._transport.close()
        await self.listen()

    async def __aenter__(self) -> GameSocket:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if self._transport is not None and self._state != ConnectionState.CLOSED:
                await self.close()
        finally:
            await self._api.close()

    # ==================== 消息发送 ====================

    async def send(self, command_name: str, data: Any) -> None:
        """向服务端发送命令

        Raises:
            NotConnectedError: 未以玩家身份连接
            EventEncodeError: data 无法序列化
            TransportError: 发送失败
        """
        if not self.is_player or self._transport is None:
            raise NotConnectedError(current_state=self._state.value)
        await self._transport.send(encode_event(command_name, data))

    # ==================== 玩家名 ====================

    async def username(self, player_id: str) -> str:
        """查询玩家名，优先使用缓存，未命中时向服务器请求"""
        cached = self._cached_username(player_id)
        if cached is not None:
            return cached
        if self._session is None:
            raise NotConnectedError("The socket is not connected to a game.")
        name = await self._api.fetch_username(self._session.game_id, player_id)
        with self._usernames_lock:
            self._usernames[player_id] = name
        return name

    @property
    def usernames(self) -> dict[str, str]:
        """玩家名缓存的快照"""
        with self._usernames_lock:
            return dict(self._usernames)

    def _cached_username(self, player_id: str) -> str | None:
        with self._usernames_lock:
            return self._usernames.get(player_id)

    async def _seed_usernames(self, game_id: str) -> None:
        players = await self._api.fetch_players(game_id)
        with self._usernames_lock:
            self._usernames = dict(players)

    # ==================== 内部 ====================

    def _require_unbound(self) -> None:
        if self._state != ConnectionState.UNBOUND:
            raise AlreadyConnectedError(current_state=self._state.value)

    async def _open(self, endpoint: str, headers: dict[str, str] | None) -> None:
        self._state = ConnectionState.CONNECTING
        self._generation += 1
        self._closed = asyncio.Event()
        on_close = functools.partial(self._handle_close, self._generation)
        try:
            self._transport = await self._api.connect_websocket(
                endpoint, self._handle_message, on_close, headers
            )
        except BaseException:
            self._state = ConnectionState.UNBOUND
            raise

    async def _abort(self) -> None:
        """撤销未完成的连接，回到 UNBOUND"""
        self._generation += 1
        transport, self._transport = self._transport, None
        self._session = None
        self._state = ConnectionState.UNBOUND
        with self._usernames_lock:
            self._usernames.clear()
        if transport is not None:
            try:
                await transport.close()
            except TransportError as e:
                logger.debug("Ignoring close error while aborting: %s", e)

    async def _handle_message(self, raw: str) -> None:
        await self._registry.dispatch(raw)

    def _handle_close(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._state = ConnectionState.CLOSED
        self._closed.set()
        logger.info("Connection closed")
