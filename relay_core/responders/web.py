"""浏览器 WebSocket 网关。

与具体的 WebSocket 服务器实现解耦：注册进来的客户端只要有 send(text) 方法即可，
HTTP 层（api/app.py）负责把 FastAPI 的 WebSocket 包装成这样的客户端。
"""

import json
import threading
from typing import TYPE_CHECKING, Any, List, Optional, Protocol

from relay_core.domain.exceptions import ValidationError
from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent
from relay_core.infrastructure.logging.logger import logger

if TYPE_CHECKING:
    from relay_core.orchestrator import ChatOrchestrator


class SocketClient(Protocol):
    def send(self, text: str) -> Any:
        ...


class WebGateway:
    """浏览器端 Responder。

    - register(): 新连接加入时先推送一帧完整历史。
    - handle_message(): 解析浏览器发来的 user_message 并提交给编排器。
    - broadcast_*: 每个事件序列化一次，推送给所有连接。
    """

    def __init__(self, history: HistoryBuffer, orchestrator: Optional["ChatOrchestrator"] = None):
        self._history = history
        self._orchestrator = orchestrator
        self._clients: List[SocketClient] = []
        self._lock = threading.Lock()

    def bind(self, orchestrator: "ChatOrchestrator") -> None:
        self._orchestrator = orchestrator

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    def register(self, client: SocketClient) -> bool:
        """加入一个连接，返回是否注册成功。

        读取快照、发送历史帧与加入连接列表都在网关锁内完成：
        并发广播要么已包含在历史帧中，要么排在历史帧之后送达。
        client.send 必须是非阻塞的。
        """

        logger.info("WebSocket connection opened")
        with self._lock:
            frame = json.dumps(
                {"type": "history", "payload": [e.to_dict() for e in self._history.snapshot()]},
                ensure_ascii=False,
            )
            try:
                client.send(frame)
            except Exception as e:
                logger.warning("Failed to send history frame", extra={"extra": {"error": str(e)}})
                return False
            self._clients.append(client)
        return True

    def unregister(self, client: SocketClient) -> None:
        with self._lock:
            if client in self._clients:
                self._clients.remove(client)
        logger.info("WebSocket connection closed")

    def handle_message(self, raw: str) -> Optional[str]:
        """处理一帧浏览器消息，返回提交后的 correlation id；无效消息返回 None。"""

        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            data = None
        payload = data.get("payload") if isinstance(data, dict) else None
        if not isinstance(data, dict) or data.get("type") != "user_message" or not isinstance(payload, dict):
            logger.warning("Invalid message format", extra={"extra": {"raw": str(raw)[:200]}})
            return None
        if self._orchestrator is None:
            logger.error("WebGateway is not bound to an orchestrator")
            return None
        payload = {**payload, "source": payload.get("source") or "web"}
        try:
            return self._orchestrator.submit(payload, context={"source": "web"})
        except ValidationError as e:
            logger.warning("Rejected web message", extra={"extra": {"code": e.code, "reason": e.message}})
            return None

    # ---- Responder ----

    def broadcast_user_message(self, event: ChatEvent) -> None:
        self._broadcast(event)

    def broadcast_ai_chunk(self, event: ChatEvent) -> None:
        self._broadcast(event)

    def broadcast_ai_end(self, event: ChatEvent) -> None:
        self._broadcast(event)

    def broadcast_error(self, event: ChatEvent) -> None:
        self._broadcast(event)

    def _broadcast(self, event: ChatEvent) -> None:
        frame = json.dumps(event.to_dict(), ensure_ascii=False)
        logger.debug("Broadcasting", extra={"extra": {"type": event.kind.value, "correlation_id": event.id}})
        with self._lock:
            clients = list(self._clients)
        for client in clients:
            self._send(client, frame)

    def _send(self, client: SocketClient, frame: str) -> None:
        try:
            client.send(frame)
        except Exception as e:
            logger.warning("Dropping web client after send failure", extra={"extra": {"error": str(e)}})
            self.unregister(client)
