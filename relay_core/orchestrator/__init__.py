"""Prompt 编排（提交、单 worker 串行处理、事件扇出）。"""

from .chat_orchestrator import ChatOrchestrator

__all__ = ["ChatOrchestrator"]
