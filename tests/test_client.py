"""
客户端测试
使用伪造的 HTTP API 与消息传输，覆盖连接状态机、会话持久化与命令发送
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import pytest
from pydantic import BaseModel

from codegame.client import PLAYER_SECRET_HEADER, ConnectionState, GameSocket
from codegame.config import ClientConfig
from codegame.exceptions import (
    AlreadyConnectedError,
    EventEncodeError,
    InvalidSessionError,
    NotConnectedError,
    SessionNotFoundError,
    TransportError,
    UpstreamError,
)
from codegame.protocol import GameData, GameInfo, PlayerData
from codegame.session import Session, SessionStore

SERVER = "localhost:8080"


class Move(BaseModel):
    x: int
    y: int


class Opaque:
    pass


class FakeTransport:
    def __init__(self, on_text, on_close):
        self.on_text = on_text
        self.on_close = on_close
        self.sent: list[str] = []
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise TransportError("closed")
        self.sent.append(text)

    async def close(self, reason: str = "Normal closure.") -> None:
        if not self.closed:
            self.closed = True
            self.on_close()

    async def deliver(self, raw: str) -> None:
        await self.on_text(raw)


class FakeApi:
    def __init__(self, players=None, cg_version="0.7"):
        self.url = SERVER
        self.players = {"p1": "alice"} if players is None else players
        self.transport: FakeTransport | None = None
        self.endpoints: list[str] = []
        self.headers: list = []
        self.fail_connect: Exception | None = None

        self.fetch_info = AsyncMock(return_value=GameInfo(name="test", cg_version=cg_version))
        self.create_player = AsyncMock(
            return_value=PlayerData(player_id="p1", player_secret="s1")
        )
        self.fetch_players = AsyncMock(side_effect=lambda game_id: dict(self.players))
        self.fetch_username = AsyncMock(return_value="bob")
        self.create_game = AsyncMock(return_value=GameData(game_id="g9", join_secret="js"))
        self.fetch_game_config = AsyncMock(return_value={"width": 10})
        self.close = AsyncMock()

    async def connect_websocket(self, endpoint, on_text, on_close, headers=None):
        self.endpoints.append(endpoint)
        self.headers.append(headers)
        if self.fail_connect is not None:
            raise self.fail_connect
        self.transport = FakeTransport(on_text, on_close)
        return self.transport


def _socket(tmp_path, api=None, **config) -> GameSocket:
    return GameSocket(api or FakeApi(), SessionStore(tmp_path), ClientConfig(**config))


async def _connected(tmp_path, **config) -> GameSocket:
    socket = _socket(tmp_path, **config)
    await socket.join("g1", "alice")
    return socket


class TestGameSocketInit:
    def test_initial_state(self, tmp_path):
        socket = _socket(tmp_path)
        assert socket.state == ConnectionState.UNBOUND
        assert socket.session is None
        assert socket.is_connected is False
        assert socket.is_player is False

    @pytest.mark.asyncio
    async def test_check_version_compatible(self, tmp_path):
        socket = _socket(tmp_path)
        assert await socket.check_version() is True
        assert socket.server_info.name == "test"

    @pytest.mark.asyncio
    async def test_check_version_mismatch_only_warns(self, tmp_path, caplog):
        socket = _socket(tmp_path, FakeApi(cg_version="0.8"))
        with caplog.at_level(logging.WARNING, logger="codegame.client"):
            assert await socket.check_version() is False
        assert "version mismatch" in caplog.text

    @pytest.mark.asyncio
    async def test_create_checks_version(self, tmp_path, monkeypatch):
        api = FakeApi()
        monkeypatch.setattr("codegame.client.Api.create", AsyncMock(return_value=api))
        socket = await GameSocket.create(SERVER, store=SessionStore(tmp_path))
        assert socket.api is api
        api.fetch_info.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_create_closes_api_on_failure(self, tmp_path, monkeypatch):
        api = FakeApi()
        api.fetch_info.side_effect = UpstreamError(endpoint="/api/info", status=500)
        monkeypatch.setattr("codegame.client.Api.create", AsyncMock(return_value=api))
        with pytest.raises(UpstreamError):
            await GameSocket.create(SERVER, store=SessionStore(tmp_path))
        api.close.assert_awaited_once()


class TestJoinAndConnect:
    @pytest.mark.asyncio
    async def test_join(self, tmp_path):
        socket = _socket(tmp_path)
        await socket.join("g1", "alice", "js")

        socket.api.create_player.assert_awaited_once_with("g1", "alice", "js")
        assert socket.api.endpoints == ["/api/games/g1/connect?player_id=p1&player_secret=s1"]
        assert socket.state == ConnectionState.CONNECTED
        assert socket.is_player is True
        assert socket.session == Session(SERVER, "alice", "g1", "p1", "s1")

    @pytest.mark.asyncio
    async def test_connect_saves_session(self, tmp_path):
        socket = await _connected(tmp_path)
        assert socket.store.load(SERVER, "alice") == socket.session

    @pytest.mark.asyncio
    async def test_connect_seeds_username_cache(self, tmp_path):
        socket = await _connected(tmp_path)
        assert socket.usernames == {"p1": "alice"}
        socket.api.fetch_players.assert_awaited_once_with("g1")

    @pytest.mark.asyncio
    async def test_secret_in_header(self, tmp_path):
        socket = _socket(tmp_path, secret_in_header=True)
        await socket.connect("g1", "p1", "s1")
        assert socket.api.endpoints == ["/api/games/g1/connect?player_id=p1"]
        assert socket.api.headers == [{PLAYER_SECRET_HEADER: "s1"}]

    @pytest.mark.asyncio
    async def test_save_failure_is_not_fatal(self, tmp_path, caplog):
        # 玩家列表中没有自己 → 用户名为空 → 会话不完整，无法保存
        socket = _socket(tmp_path, FakeApi(players={}))
        with caplog.at_level(logging.ERROR, logger="codegame.client"):
            await socket.connect("g1", "p1", "s1")
        assert socket.state == ConnectionState.CONNECTED
        assert "Failed to save session" in caplog.text
        assert list(tmp_path.rglob("*.json")) == []

    @pytest.mark.asyncio
    async def test_transport_failure_returns_to_unbound(self, tmp_path):
        api = FakeApi()
        api.fail_connect = TransportError("refused")
        socket = _socket(tmp_path, api)

        with pytest.raises(TransportError):
            await socket.connect("g1", "p1", "s1")
        assert socket.state == ConnectionState.UNBOUND
        assert socket.session is None

        api.fail_connect = None
        await socket.connect("g1", "p1", "s1")
        assert socket.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_player_fetch_failure_aborts(self, tmp_path):
        api = FakeApi()
        api.fetch_players.side_effect = UpstreamError(endpoint="/players", status=500)
        socket = _socket(tmp_path, api)

        with pytest.raises(UpstreamError):
            await socket.connect("g1", "p1", "s1")
        assert socket.state == ConnectionState.UNBOUND
        assert socket.session is None
        assert api.transport.closed is True

    @pytest.mark.asyncio
    async def test_join_upstream_failure(self, tmp_path):
        api = FakeApi()
        api.create_player.side_effect = UpstreamError(endpoint="/players", status=403)
        socket = _socket(tmp_path, api)
        with pytest.raises(UpstreamError):
            await socket.join("g1", "alice")
        assert api.endpoints == []
        assert socket.state == ConnectionState.UNBOUND


class TestSpectate:
    @pytest.mark.asyncio
    async def test_spectate(self, tmp_path):
        socket = _socket(tmp_path)
        await socket.spectate("g1")

        assert socket.api.endpoints == ["/api/games/g1/spectate"]
        assert socket.state == ConnectionState.CONNECTED
        assert socket.session.is_spectator
        assert socket.is_player is False
        assert socket.usernames == {"p1": "alice"}

    @pytest.mark.asyncio
    async def test_spectate_not_persisted(self, tmp_path):
        socket = _socket(tmp_path)
        await socket.spectate("g1")
        assert socket.store.list_servers() == []

    @pytest.mark.asyncio
    async def test_send_as_spectator_fails(self, tmp_path):
        socket = _socket(tmp_path)
        await socket.spectate("g1")
        with pytest.raises(NotConnectedError):
            await socket.send("move", {"x": 1})
        assert socket.api.transport.sent == []


class TestAlreadyConnected:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "call",
        [
            lambda s: s.join("g2", "bob"),
            lambda s: s.connect("g2", "p2", "s2"),
            lambda s: s.spectate("g2"),
            lambda s: s.restore_session("alice"),
        ],
    )
    async def test_rejected_when_connected(self, tmp_path, call):
        socket = await _connected(tmp_path)
        with pytest.raises(AlreadyConnectedError):
            await call(socket)
        assert socket.api.endpoints == ["/api/games/g1/connect?player_id=p1&player_secret=s1"]

    @pytest.mark.asyncio
    async def test_rejected_when_closed(self, tmp_path):
        socket = await _connected(tmp_path)
        await socket.close()
        with pytest.raises(AlreadyConnectedError):
            await socket.spectate("g1")


class TestRestoreSession:
    @pytest.mark.asyncio
    async def test_restore(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(Session(SERVER, "alice", "g7", "p1", "s7"))
        socket = GameSocket(FakeApi(), store, ClientConfig())

        await socket.restore_session("alice")

        assert socket.api.endpoints == ["/api/games/g7/connect?player_id=p1&player_secret=s7"]
        assert socket.state == ConnectionState.CONNECTED
        assert socket.session.game_id == "g7"

    @pytest.mark.asyncio
    async def test_restore_missing(self, tmp_path):
        socket = _socket(tmp_path)
        with pytest.raises(SessionNotFoundError):
            await socket.restore_session("alice")
        assert socket.state == ConnectionState.UNBOUND

    @pytest.mark.asyncio
    async def test_restore_failure_removes_session(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(Session(SERVER, "alice", "g7", "p1", "stale"))
        api = FakeApi()
        api.fail_connect = TransportError("403 Forbidden")
        socket = GameSocket(api, store, ClientConfig())

        with pytest.raises(TransportError):
            await socket.restore_session("alice")
        assert not store.exists(SERVER, "alice")
        assert socket.state == ConnectionState.UNBOUND

    @pytest.mark.asyncio
    async def test_restore_incomplete_file_removed(self, tmp_path):
        store = SessionStore(tmp_path)
        path = store.path_for(SERVER, "alice")
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"game_id": "g7", "player_id": "p1"}), encoding="utf-8")
        socket = GameSocket(FakeApi(), store, ClientConfig())

        with pytest.raises(InvalidSessionError):
            await socket.restore_session("alice")
        assert not path.exists()
        assert socket.api.endpoints == []


class TestSend:
    @pytest.mark.asyncio
    async def test_send_before_connect(self, tmp_path):
        socket = _socket(tmp_path)
        with pytest.raises(NotConnectedError):
            await socket.send("move", {"x": 1})

    @pytest.mark.asyncio
    async def test_send_dict(self, tmp_path):
        socket = await _connected(tmp_path)
        await socket.send("move", {"x": 1})
        assert json.loads(socket.api.transport.sent[0]) == {"name": "move", "data": {"x": 1}}

    @pytest.mark.asyncio
    async def test_send_model(self, tmp_path):
        socket = await _connected(tmp_path)
        await socket.send("move", Move(x=1, y=2))
        sent = json.loads(socket.api.transport.sent[0])
        assert sent == {"name": "move", "data": {"x": 1, "y": 2}}

    @pytest.mark.asyncio
    async def test_send_from_handler(self, tmp_path):
        socket = await _connected(tmp_path)

        async def on_ping(data):
            await socket.send("pong", data)

        socket.on("ping", int, on_ping)
        await socket.api.transport.deliver(json.dumps({"name": "ping", "data": 3}))
        assert json.loads(socket.api.transport.sent[0]) == {"name": "pong", "data": 3}

    @pytest.mark.asyncio
    async def test_send_unserializable(self, tmp_path):
        socket = await _connected(tmp_path)
        with pytest.raises(EventEncodeError):
            await socket.send("move", Opaque())
        assert socket.api.transport.sent == []
        assert socket.is_connected

    @pytest.mark.asyncio
    async def test_send_after_close(self, tmp_path):
        socket = await _connected(tmp_path)
        await socket.close()
        with pytest.raises(NotConnectedError):
            await socket.send("move", {})


class TestEventsAndClose:
    @pytest.mark.asyncio
    async def test_inbound_event_dispatched(self, tmp_path):
        socket = await _connected(tmp_path)
        received = []
        socket.on("tick", int, received.append)

        await socket.api.transport.deliver(json.dumps({"name": "tick", "data": 5}))
        assert received == [5]

    @pytest.mark.asyncio
    async def test_once_and_remove_callback(self, tmp_path):
        socket = await _connected(tmp_path)
        once, always = [], []
        socket.once("tick", int, once.append)
        reg_id = socket.on("tick", int, always.append)

        await socket.api.transport.deliver(json.dumps({"name": "tick", "data": 1}))
        socket.remove_callback("tick", reg_id)
        await socket.api.transport.deliver(json.dumps({"name": "tick", "data": 2}))

        assert once == [1]
        assert always == [1]

    @pytest.mark.asyncio
    async def test_close(self, tmp_path):
        socket = await _connected(tmp_path)
        await asyncio.wait_for(socket.close(), timeout=1)
        assert socket.state == ConnectionState.CLOSED
        assert socket.api.transport.closed is True
        # 再次关闭与等待均立即返回
        await asyncio.wait_for(socket.close(), timeout=1)
        await asyncio.wait_for(socket.listen(), timeout=1)

    @pytest.mark.asyncio
    async def test_remote_close_releases_listeners(self, tmp_path):
        socket = await _connected(tmp_path)
        waiters = [asyncio.create_task(socket.listen()) for _ in range(3)]
        await asyncio.sleep(0)
        assert not any(w.done() for w in waiters)

        socket.api.transport.on_close()
        await asyncio.wait_for(asyncio.gather(*waiters), timeout=1)
        assert socket.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_before_connect(self, tmp_path):
        socket = _socket(tmp_path)
        with pytest.raises(NotConnectedError):
            await socket.close()
        with pytest.raises(NotConnectedError):
            await socket.listen()

    @pytest.mark.asyncio
    async def test_async_context_manager(self, tmp_path):
        api = FakeApi()
        async with _socket(tmp_path, api) as socket:
            await socket.join("g1", "alice")
        assert socket.state == ConnectionState.CLOSED
        api.close.assert_awaited_once()


class TestUsernames:
    @pytest.mark.asyncio
    async def test_cached_username(self, tmp_path):
        socket = await _connected(tmp_path)
        assert await socket.username("p1") == "alice"
        socket.api.fetch_username.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_username_fetched_once(self, tmp_path):
        socket = await _connected(tmp_path)
        assert await socket.username("p2") == "bob"
        assert await socket.username("p2") == "bob"
        socket.api.fetch_username.assert_awaited_once_with("g1", "p2")
        assert socket.usernames == {"p1": "alice", "p2": "bob"}

    @pytest.mark.asyncio
    async def test_username_before_connect(self, tmp_path):
        socket = _socket(tmp_path)
        with pytest.raises(NotConnectedError):
            await socket.username("p1")


class TestGameManagement:
    @pytest.mark.asyncio
    async def test_create_game(self, tmp_path):
        socket = _socket(tmp_path)
        game = await socket.create_game(True, True, {"width": 10})
        assert game.game_id == "g9"
        socket.api.create_game.assert_awaited_once_with(True, True, {"width": 10})

    @pytest.mark.asyncio
    async def test_game_config(self, tmp_path):
        socket = await _connected(tmp_path)
        assert await socket.game_config() == {"width": 10}

    @pytest.mark.asyncio
    async def test_game_config_before_connect(self, tmp_path):
        socket = _socket(tmp_path)
        with pytest.raises(NotConnectedError):
            await socket.game_config()
