"""Relay Core 顶层包。

该包把多个前端（浏览器 WebSocket、SSE、Discord、GitHub Webhook）的 prompt
中继到同一个流式对话后端，并把增量回答扇出给所有订阅的前端，
同时维护一份有界的共享聊天记录。
"""

from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent, EventKind
from relay_core.orchestrator import ChatOrchestrator

__all__ = ["ChatEvent", "ChatOrchestrator", "EventKind", "HistoryBuffer"]
