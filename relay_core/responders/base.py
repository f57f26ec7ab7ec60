"""Responder 抽象接口。

编排器不直接依赖任何具体传输（浏览器 WebSocket、SSE、Discord、GitHub），
而是依赖此协议：

- 每种前端实现一个 Responder。
- 负责：把 ChatEvent 转成各自传输上的动作（推送帧、回复消息、发评论等）。

实现必须尽快返回；慢速 I/O（例如调用外部聊天服务的 REST 接口）
应放到适配器自己的后台线程里执行，不能阻塞编排器的 worker。
"""

from typing import List, Protocol

from relay_core.domain.models import ChatEvent


class Responder(Protocol):
    """聊天事件接收方协议。"""

    def broadcast_user_message(self, event: ChatEvent) -> None:
        ...

    def broadcast_ai_chunk(self, event: ChatEvent) -> None:
        ...

    def broadcast_ai_end(self, event: ChatEvent) -> None:
        ...

    def broadcast_error(self, event: ChatEvent) -> None:
        ...


def split_message(text: str, limit: int) -> List[str]:
    """按字符数把长文本切成若干段（聊天平台通常有单条消息长度上限）。"""

    if limit < 1:
        raise ValueError("limit must be >= 1")
    if not text:
        return []
    return [text[i:i + limit] for i in range(0, len(text), limit)]
