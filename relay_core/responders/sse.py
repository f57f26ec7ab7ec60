"""SSE（Server-Sent Events）推送。

每个订阅者持有一个有界帧队列；广播只做非阻塞入队，
跟不上的订阅者会被直接断开，不会拖慢编排器 worker。
"""

import json
import queue
import threading
from typing import Any, Dict, Iterator, List, Optional

from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent
from relay_core.infrastructure.logging.logger import logger


KEEPALIVE_FRAME = ": keep-alive\n\n"


def format_sse(event_type: str, data: Any) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class SseSubscription:
    """一个已连接的 SSE 客户端：有界帧队列加关闭标记。"""

    def __init__(self, max_frames: int):
        self._frames: "queue.Queue[str]" = queue.Queue(maxsize=max_frames)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, frame: str) -> bool:
        """非阻塞入队；队列已满时返回 False。"""

        try:
            self._frames.put_nowait(frame)
            return True
        except queue.Full:
            return False

    def close(self) -> None:
        self._closed.set()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        try:
            return self._frames.get(timeout=timeout)
        except queue.Empty:
            return None

    def frames(self, keepalive: float = 15.0) -> Iterator[str]:
        """持续产出帧直到关闭，空闲时产出保活注释。"""

        while not self.closed:
            frame = self.get(timeout=keepalive)
            if frame is None:
                if not self.closed:
                    yield KEEPALIVE_FRAME
                continue
            yield frame
        # 关闭前已入队的帧照常发出
        while True:
            frame = self.get(timeout=0)
            if frame is None:
                return
            yield frame


class SseResponder:
    """把每个 ChatEvent 转成 SSE 帧推送给所有订阅者的 Responder。"""

    def __init__(self, history: HistoryBuffer, max_frames: int = 256):
        self._history = history
        self._max_frames = max_frames
        self._subscribers: List[SseSubscription] = []
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> SseSubscription:
        """新建订阅，队列中的第一帧是完整历史。

        快照、历史帧入队与加入订阅列表在同一把锁内完成，
        并发广播的事件不会丢失，也不会先于历史帧到达。
        """

        sub = SseSubscription(self._max_frames)
        with self._lock:
            history: List[Dict[str, Any]] = [e.to_dict() for e in self._history.snapshot()]
            sub.offer(format_sse("history", history))
            self._subscribers.append(sub)
        logger.info("SSE subscriber connected", extra={"extra": {"subscribers": self.subscriber_count}})
        return sub

    def unsubscribe(self, sub: SseSubscription) -> None:
        sub.close()
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def broadcast_user_message(self, event: ChatEvent) -> None:
        self._publish(event)

    def broadcast_ai_chunk(self, event: ChatEvent) -> None:
        self._publish(event)

    def broadcast_ai_end(self, event: ChatEvent) -> None:
        self._publish(event)

    def broadcast_error(self, event: ChatEvent) -> None:
        self._publish(event)

    def _publish(self, event: ChatEvent) -> None:
        data = event.to_dict()
        frame = format_sse(data["type"], data)
        with self._lock:
            subscribers = list(self._subscribers)
        for sub in subscribers:
            if not sub.offer(frame):
                logger.warning("SSE subscriber too slow, disconnecting")
                self.unsubscribe(sub)
