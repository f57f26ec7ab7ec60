"""统一的事件与任务数据模型。

本模块定义了中继核心在前端适配器、编排器与流式交换之间共享的数据结构：

- ChatEvent: 一条聊天事件（用户消息 / AI 增量 / AI 结束 / 错误）。
- StreamingJob: 提交后排队、由后台 worker 恰好消费一次的任务。
- ExchangeState / ExchangePhase: 单次流式交换的可变状态与阶段。

同一个 prompt 产生的所有事件共享一个 id（correlation id）：
一条 user_message → 零或多条 ai_chunk → 恰好一条 ai_end 或 error。
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class EventKind(str, Enum):
    """事件类型，取值即为前端 JSON 中的 type 字段。"""

    USER_MESSAGE = "user_message"
    AI_CHUNK = "ai_chunk"
    AI_END = "ai_end"
    ERROR = "error"

    @property
    def durable(self) -> bool:
        """是否写入共享历史；ai_chunk 与 error 只做实时广播。"""

        return self in (EventKind.USER_MESSAGE, EventKind.AI_END)

    @property
    def terminal(self) -> bool:
        return self in (EventKind.AI_END, EventKind.ERROR)


def _freeze(data: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class ChatEvent:
    """一条不可变的聊天事件。

    - kind: 事件类型。
    - id: correlation id，把用户消息与其最终回答串起来。
    - payload: 事件内容（文本、作者、错误信息等）。
    - context: 前端传入的路由提示（如回复目标），核心层只透传不解释。
    """

    kind: EventKind
    id: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", _freeze(self.payload))
        object.__setattr__(self, "context", _freeze(self.context))

    @property
    def text(self) -> str:
        return str(self.payload.get("text") or "")

    @property
    def source(self) -> Optional[str]:
        return self.context.get("source") or self.payload.get("source")

    def to_dict(self) -> Dict[str, Any]:
        """转换为前端使用的 JSON 结构。"""

        return {
            "type": self.kind.value,
            "payload": dict(self.payload),
            "context": dict(self.context),
        }

    @classmethod
    def user_message(cls, payload: Mapping[str, Any], context: Mapping[str, Any]) -> "ChatEvent":
        return cls(EventKind.USER_MESSAGE, str(payload["id"]), payload, context)

    @classmethod
    def ai_chunk(cls, message_id: str, text: str, context: Mapping[str, Any]) -> "ChatEvent":
        return cls(EventKind.AI_CHUNK, message_id, {"id": message_id, "text": text}, context)

    @classmethod
    def ai_end(cls, message_id: str, text: str, context: Mapping[str, Any]) -> "ChatEvent":
        return cls(EventKind.AI_END, message_id, {"id": message_id, "text": text}, context)

    @classmethod
    def error(cls, message_id: str, message: str, code: str, context: Mapping[str, Any]) -> "ChatEvent":
        return cls(
            EventKind.ERROR,
            message_id,
            {"id": message_id, "message": message, "code": code},
            context,
        )


@dataclass
class StreamingJob:
    """一次排队中的流式任务，所有权经由队列从提交方转移给 worker。"""

    prompt: str
    id: str
    context: Mapping[str, Any] = field(default_factory=dict)


class ExchangePhase(str, Enum):
    """流式交换的阶段，FINISHED 为终态。"""

    CONNECTING = "connecting"
    AWAITING_READY = "awaiting_ready"
    SENDING = "sending"
    STREAMING = "streaming"
    FINISHED = "finished"


@dataclass
class ExchangeState:
    """单次交换内的可变状态，由交换级锁保护。

    finished 是一个闩锁：第一个把它从 False 置为 True 的触发者
    （stream_end / 传输错误 / 超时）独占终止事件的发送与连接关闭。
    """

    finished: bool = False
    sent_prompt: bool = False
    accumulated_text: str = ""
    phase: ExchangePhase = ExchangePhase.CONNECTING
