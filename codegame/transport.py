"""WebSocket 消息传输层

功能:
- 打开到服务端的单条双工消息流
- 在独立的接收任务中按到达顺序逐条投递文本消息
- 丢弃二进制消息 (协议中不携带事件语义)
- 连接结束时恰好通知一次关闭
- 并发安全的发送 (每次 send 原子)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from .exceptions import TransportError

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

OnText = Callable[[str], "Awaitable[None] | None"]
OnClose = Callable[[], None]

NORMAL_CLOSURE = 1000


def redact_url(url: str) -> str:
    """去掉查询串 (可能包含玩家密钥) 后的 URL，用于日志"""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class MessageTransport:
    """单条 WebSocket 连接的封装

    通过 MessageTransport.open() 创建；创建后即开始向 on_text 投递消息，
    直到本地或远端关闭连接，此时调用一次 on_close。
    """

    def __init__(
        self,
        ws: ClientConnection,
        on_text: OnText,
        on_close: OnClose,
        url: str = "",
    ) -> None:
        self.url = url
        self._ws = ws
        self._on_text = on_text
        self._on_close = on_close
        self._send_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._closed = False

    @classmethod
    async def open(
        cls,
        url: str,
        on_text: OnText,
        on_close: OnClose,
        headers: Mapping[str, str] | None = None,
        open_timeout: float = 10.0,
        max_size: int | None = 1_048_576,
    ) -> MessageTransport:
        """建立连接并启动接收任务

        Raises:
            TransportError: 握手失败或超时
        """
        safe_url = redact_url(url)
        try:
            ws = await connect(
                url,
                additional_headers=dict(headers) if headers else None,
                open_timeout=open_timeout,
                max_size=max_size,
            )
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.warning("WebSocket connection failed: %s (%s)", safe_url, e)
            raise TransportError(f"Failed to open WebSocket: {e}", url=safe_url) from e

        logger.info("WebSocket connected: %s", safe_url)
        transport = cls(ws, on_text, on_close, url=safe_url)
        transport.start()
        return transport

    def start(self) -> None:
        """启动接收任务 (open() 已自动调用)"""
        if self._task is None:
            self._task = asyncio.create_task(self._receive_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    # ==================== 收发 ====================

    async def send(self, text: str) -> None:
        """发送一条文本消息，直到底层接受该帧后返回

        Raises:
            TransportError: 连接已关闭或写入失败
        """
        if self._closed:
            raise TransportError("WebSocket is closed.", url=self.url)
        async with self._send_lock:
            try:
                await self._ws.send(text)
            except ConnectionClosed as e:
                raise TransportError(f"Send failed: {e}", url=self.url) from e

    async def close(self, reason: str = "Normal closure.") -> None:
        """发送正常关闭帧 (1000)，关闭握手完成后通知 on_close

        可以在 on_text 回调 (即接收任务) 内调用。
        """
        try:
            await self._ws.close(code=NORMAL_CLOSURE, reason=reason)
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Close failed: {e}", url=self.url) from e
        # 接收任务可能正阻塞在调用本方法的回调里，不能只依赖它的 finally
        self._notify_closed()

    async def wait_closed(self) -> None:
        """等待接收任务结束"""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _receive_loop(self) -> None:
        """消息接收循环"""
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    logger.debug("Discarding binary frame (%d bytes)", len(message))
                    continue
                result = self._on_text(message)
                if inspect.isawaitable(result):
                    await result
        except ConnectionClosed as e:
            logger.warning("WebSocket closed abnormally: %s", e)
        except Exception:
            logger.exception("Receive loop aborted")
        finally:
            self._notify_closed()

    def _notify_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.info("WebSocket closed: %s", self.url)
        try:
            self._on_close()
        except Exception:
            logger.exception("Close callback raised")
