import threading
from collections import deque
from typing import Deque, List

from relay_core.domain.exceptions import ValidationError
from relay_core.domain.models import ChatEvent


DEFAULT_HISTORY_SIZE = 50


class HistoryBuffer:
    """有界、按插入顺序、线程安全的聊天记录。

    超出容量时从头部淘汰最旧的事件。append 与 snapshot 共用同一把锁，
    新连接的前端读取快照时不会看到写了一半的状态。
    """

    def __init__(self, max_size: int = DEFAULT_HISTORY_SIZE):
        if max_size < 1:
            raise ValidationError(code="INVALID_HISTORY_SIZE", message=f"history size must be >= 1, got {max_size}")
        self._max_size = max_size
        self._events: Deque[ChatEvent] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._max_size

    def append(self, event: ChatEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> List[ChatEvent]:
        """返回当前内容的独立副本，之后遍历无需持锁。"""

        with self._lock:
            return list(self._events)

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
