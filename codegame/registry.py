"""事件回调注册表
按事件名分桶保存回调，每个桶绑定唯一的数据类型，入站消息按桶类型解码后分发
"""

from __future__ import annotations

import inspect
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import ValidationError

from .exceptions import TypeMismatchError
from .protocol import Event, decode_event_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 事件回调类型: 接收解码后的 data，可为普通函数或协程函数
EventCallback = Callable[[T], "Awaitable[None] | None"]


@dataclass
class Registration(Generic[T]):
    """单个回调注册"""

    id: str
    event_name: str
    handler: EventCallback[T]
    once: bool = False


@dataclass
class _Bucket:
    """同一事件名下的全部回调，共享同一数据类型"""

    data_type: Any
    model: type[Event]
    registrations: dict[str, Registration] = field(default_factory=dict)


class CallbackRegistry:
    """事件回调注册表

    职责:
    1. 按事件名注册/移除回调 (on / once / remove)
    2. 保证同一事件名只绑定一种数据类型
    3. 将入站原始消息解码并按注册顺序分发给回调

    线程安全: 所有修改都在 RLock 下进行，分发前先取快照，
    回调内部可以再注册或移除回调。
    """

    def __init__(self) -> None:
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.RLock()

    # ==================== 注册 ====================

    def on(self, event_name: str, data_type: type[T] | Any, handler: EventCallback[T]) -> str:
        """注册每次收到事件都会触发的回调

        Args:
            event_name: 事件名
            data_type: 事件数据类型 (任何 pydantic 可校验的类型)
            handler: 回调函数

        Returns:
            回调 ID，可用于 remove()

        Raises:
            TypeMismatchError: 该事件名已绑定其他数据类型
        """
        return self._add(event_name, data_type, handler, once=False)

    def once(self, event_name: str, data_type: type[T] | Any, handler: EventCallback[T]) -> str:
        """注册只在下一次收到事件时触发的回调"""
        return self._add(event_name, data_type, handler, once=True)

    def _add(self, event_name: str, data_type: Any, handler: EventCallback, once: bool) -> str:
        with self._lock:
            bucket = self._buckets.get(event_name)
            if bucket is None:
                bucket = _Bucket(data_type=data_type, model=Event[data_type])
                self._buckets[event_name] = bucket
            elif bucket.data_type != data_type:
                raise TypeMismatchError(event_name, bucket.data_type, data_type)

            reg_id = str(uuid.uuid4())
            bucket.registrations[reg_id] = Registration(
                id=reg_id, event_name=event_name, handler=handler, once=once
            )
        return reg_id

    def remove(self, event_name: str, reg_id: str) -> None:
        """移除回调 (事件名或 ID 不存在时忽略)"""
        with self._lock:
            bucket = self._buckets.get(event_name)
            if bucket is not None:
                bucket.registrations.pop(reg_id, None)

    def clear(self) -> None:
        """清除所有回调与类型绑定"""
        with self._lock:
            for bucket in self._buckets.values():
                bucket.registrations.clear()
            self._buckets.clear()

    # ==================== 查询 ====================

    def has(self, event_name: str) -> bool:
        with self._lock:
            return event_name in self._buckets

    def count(self, event_name: str) -> int:
        """某事件名下当前注册的回调数"""
        with self._lock:
            bucket = self._buckets.get(event_name)
            return len(bucket.registrations) if bucket else 0

    def data_type(self, event_name: str) -> Any:
        """某事件名绑定的数据类型，未绑定时返回 None"""
        with self._lock:
            bucket = self._buckets.get(event_name)
            return bucket.data_type if bucket else None

    # ==================== 分发 ====================

    async def dispatch(self, raw: str | bytes) -> int:
        """解码并分发一条入站消息

        未注册的事件名静默丢弃；格式错误的消息记录日志后丢弃；
        单个回调抛出的异常不影响其余回调。

        Returns:
            实际调用的回调数
        """
        try:
            name = decode_event_name(raw)
        except ValidationError as e:
            logger.warning("Dropping malformed message: %s", e)
            return 0

        with self._lock:
            bucket = self._buckets.get(name)
            if bucket is None:
                logger.debug("No callbacks for event: %s", name)
                return 0
            model = bucket.model
            snapshot = list(bucket.registrations.values())

        try:
            event = model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Dropping event %s with invalid data: %s", name, e)
            return 0

        called = 0
        for reg in snapshot:
            if not self._claim(bucket, reg):
                continue
            called += 1
            try:
                result = reg.handler(event.data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Callback for event %s raised", name)
        return called

    def _claim(self, bucket: _Bucket, reg: Registration) -> bool:
        """回调是否仍可执行；一次性回调在执行前移除"""
        with self._lock:
            if bucket.registrations.get(reg.id) is not reg:
                return False
            if reg.once:
                del bucket.registrations[reg.id]
            return True
