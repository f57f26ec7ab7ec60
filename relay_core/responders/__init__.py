"""前端适配器（Responder）层。

该包下的模块负责：
- 定义 Responder 抽象接口 (base)。
- 浏览器 WebSocket 网关 (web) 与 SSE 推送 (sse)。
- Discord 与 GitHub 集成 (discord、github)。
"""

from relay_core.responders.base import Responder, split_message
from relay_core.responders.discord import DiscordResponder
from relay_core.responders.github import GithubGateway
from relay_core.responders.sse import SseResponder
from relay_core.responders.web import WebGateway

__all__ = [
    "Responder",
    "split_message",
    "WebGateway",
    "SseResponder",
    "DiscordResponder",
    "GithubGateway",
]
