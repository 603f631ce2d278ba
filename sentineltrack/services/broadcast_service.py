import asyncio
import logging
import threading
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from config.settings import Settings, settings
from sentineltrack.errors import BroadcastDeliveryFailure

def _setup_logger():
    logger = logging.getLogger('SentinelTrack.BroadcastService')
    logger.setLevel(logging.DEBUG)
    return logger

logger = _setup_logger()


class Subscriber:
    """一个实时查看端，持有有界的发送缓冲区

    同步消费者用 get() 等待消息；绑定了事件循环的订阅者用 next_message()
    在循环内等待，发布线程通过 call_soon_threadsafe 唤醒它，不占用线程池。
    """

    def __init__(self, buffer_size: int, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.id = uuid.uuid4().hex
        self.buffer_size = buffer_size
        self._buffer: Deque[Dict[str, Any]] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = False  # 因推送失败被移除
        self._loop = loop
        self._ready = asyncio.Event() if loop is not None else None
        self._closed_event = asyncio.Event() if loop is not None else None

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: Dict[str, Any]):
        """非阻塞投递，缓冲区已满或订阅者已关闭时抛出 BroadcastDeliveryFailure"""
        with self._cond:
            if self._closed:
                raise BroadcastDeliveryFailure(self.id, "订阅者已关闭")
            if len(self._buffer) >= self.buffer_size:
                raise BroadcastDeliveryFailure(self.id, "发送缓冲区已满")
            self._buffer.append(message)
            self._cond.notify_all()
        self._wake(self._ready)

    def get(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """取出下一条消息，超时或已关闭且缓冲区为空时返回 None"""
        with self._cond:
            self._cond.wait_for(lambda: self._buffer or self._closed, timeout=timeout)
            return self._buffer.popleft() if self._buffer else None

    async def next_message(self) -> Optional[Dict[str, Any]]:
        """在事件循环内等待下一条消息，关闭且缓冲区为空时返回 None"""
        self._require_loop()
        while True:
            with self._cond:
                if self._buffer:
                    return self._buffer.popleft()
                if self._closed:
                    return None
                self._ready.clear()
            await self._ready.wait()

    async def wait_closed(self):
        self._require_loop()
        await self._closed_event.wait()

    def pending(self) -> int:
        with self._cond:
            return len(self._buffer)

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        self._wake(self._ready)
        self._wake(self._closed_event)

    def drop(self):
        """因推送失败移除：丢弃未发送的消息并关闭"""
        with self._cond:
            self.dropped = True
            self._buffer.clear()
        self.close()

    def _require_loop(self):
        if self._loop is None:
            raise RuntimeError(f"订阅者 {self.id} 未绑定事件循环")

    def _wake(self, event: Optional[asyncio.Event]):
        if event is None:
            return
        try:
            self._loop.call_soon_threadsafe(event.set)
        except RuntimeError as e:
            # 事件循环已关闭
            logger.debug(f"无法唤醒订阅者 {self.id}: {e}")


class BroadcastService:
    """订阅者注册表，向所有在线订阅者扇出事件

    publish 不会等待任何订阅者：锁只用于复制或修改订阅者集合，
    投递失败的订阅者会被移除并关闭，不影响其它订阅者。
    """

    EVENT_TYPES = ("process_sample", "connection_sample", "system_stats", "alert")

    def __init__(self, config: Settings = settings):
        self.buffer_size = config.SUBSCRIBER_BUFFER_SIZE
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscriber:
        subscriber = Subscriber(self.buffer_size, loop)
        with self._lock:
            self._subscribers[subscriber.id] = subscriber
        logger.info(f"新订阅者接入: {subscriber.id}")
        return subscriber

    def unsubscribe(self, subscriber: Subscriber):
        with self._lock:
            removed = self._subscribers.pop(subscriber.id, None)
        subscriber.close()
        if removed is not None:
            logger.info(f"订阅者已断开: {subscriber.id}")

    def publish(self, event_type: str, payload: Any) -> int:
        """向所有订阅者推送 {"type", "data"}，返回成功投递的数量"""
        message = {"type": event_type, "data": payload}
        with self._lock:
            targets: List[Subscriber] = list(self._subscribers.values())

        delivered = 0
        failed: List[Subscriber] = []
        for subscriber in targets:
            try:
                subscriber.offer(message)
                delivered += 1
            except BroadcastDeliveryFailure as e:
                logger.warning(e.message)
                failed.append(subscriber)

        if failed:
            with self._lock:
                for subscriber in failed:
                    self._subscribers.pop(subscriber.id, None)
            for subscriber in failed:
                subscriber.drop()
        return delivered

    def close_all(self):
        """关闭全部订阅者（服务停止时调用）"""
        with self._lock:
            subscribers = list(self._subscribers.values())
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber.close()
        logger.info(f"已关闭 {len(subscribers)} 个订阅者")
