"""Discord 适配器。

入站：handle_message() 接收 Discord 网关推送的 MESSAGE_CREATE 数据（dict），
支持 !history 命令与普通消息提交。网关长连接本身由外部的机器人进程维护。

出站：通过 Discord REST API 发消息。所有 HTTP 调用都放在本适配器自己的
单线程 executor 中执行，保证顺序且不阻塞编排器 worker。
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

import httpx

from relay_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent, EventKind
from relay_core.infrastructure.logging.logger import logger
from relay_core.responders.base import split_message

if TYPE_CHECKING:
    from relay_core.orchestrator import ChatOrchestrator


DISCORD_MESSAGE_LIMIT = 2000
WEB_EMBED_COLOR = 0x7289DA
HISTORY_COMMAND = "!history"


class DiscordRestClient:
    """Discord REST 客户端（只实现本服务需要的发消息接口）。"""

    def __init__(self, token: str, api_base: str = "https://discord.com/api/v10", timeout: float = 30.0):
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def post_message(
        self,
        channel_id: str,
        content: Optional[str] = None,
        *,
        reply_to: Optional[str] = None,
        embed: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if content:
            body["content"] = content
        if embed:
            body["embeds"] = [embed]
        if reply_to:
            body["message_reference"] = {"message_id": reply_to, "fail_if_not_exists": False}
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.post(
                    f"{self._api_base}/channels/{channel_id}/messages",
                    json=body,
                    headers={
                        "Authorization": f"Bot {self._token}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Discord rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return resp.json()


def format_history(events: Iterable[ChatEvent]) -> str:
    """把历史事件格式化为纯文本记录。"""

    lines: List[str] = []
    for event in events:
        p = event.payload
        if event.kind == EventKind.USER_MESSAGE:
            lines.append(f"[{p.get('source')}/{p.get('author')}] {p.get('text')}")
        elif event.kind in (EventKind.AI_END, EventKind.AI_CHUNK):
            lines.append(f"\n[AI] {p.get('text')}\n")
    return "\n".join(lines)


class DiscordResponder:
    """Discord Responder + 入站消息处理。

    - Discord 来源的 prompt：AI 回答以回复形式发回原频道。
    - Web 来源的 prompt：用户消息以 embed 镜像到指定频道，AI 回答也发到指定频道。
    """

    def __init__(
        self,
        history: HistoryBuffer,
        client: DiscordRestClient,
        channel_id: Optional[str] = None,
        orchestrator: Optional["ChatOrchestrator"] = None,
    ):
        self._history = history
        self._client = client
        self._channel_id = str(channel_id) if channel_id else None
        self._orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="discord")

    @classmethod
    def from_settings(cls, settings, history: HistoryBuffer) -> "DiscordResponder":
        client = DiscordRestClient(
            settings.discord_token,
            api_base=settings.discord_api_base,
            timeout=settings.http_timeout,
        )
        return cls(history, client, channel_id=settings.discord_channel_id)

    def bind(self, orchestrator: "ChatOrchestrator") -> None:
        self._orchestrator = orchestrator

    # ---- 入站 ----

    def handle_message(self, message: Dict[str, Any]) -> bool:
        """处理一条 Discord 消息，返回是否被本适配器消费。"""

        author = message.get("author") or {}
        if author.get("bot"):
            return False
        return self._handle_history_command(message) or self._handle_regular_message(message)

    def _handle_history_command(self, message: Dict[str, Any]) -> bool:
        if (message.get("content") or "").strip() != HISTORY_COMMAND:
            return False
        logger.info("Received !history command")
        history_text = format_history(self._history.snapshot()) or "No history yet."
        channel_id = str(message.get("channel_id"))
        # 代码块包裹占 8 个字符
        for chunk in split_message(history_text, DISCORD_MESSAGE_LIMIT - 8):
            self._offload(self._client.post_message, channel_id, f"```\n{chunk}\n```")
        return True

    def _handle_regular_message(self, message: Dict[str, Any]) -> bool:
        channel_id = str(message.get("channel_id") or "")
        is_target_channel = bool(self._channel_id) and channel_id == self._channel_id
        is_dm = not message.get("guild_id")
        if not (is_target_channel or is_dm):
            return False
        if self._orchestrator is None:
            logger.error("DiscordResponder is not bound to an orchestrator")
            return False

        author = message.get("author") or {}
        author_name = author.get("global_name") or author.get("username") or "unknown"
        logger.info("Received message from Discord", extra={"extra": {"author": author_name}})
        payload = {
            "id": str(message.get("id")) if message.get("id") else None,
            "source": "discord",
            "author": author_name,
            "text": message.get("content") or "",
        }
        context = {"source": "discord", "channel_id": channel_id, "message_id": payload["id"]}
        try:
            self._orchestrator.submit(payload, context=context)
        except ValidationError as e:
            logger.warning("Rejected Discord message", extra={"extra": {"code": e.code}})
            return False
        return True

    # ---- Responder ----

    def broadcast_user_message(self, event: ChatEvent) -> None:
        if event.source != "web" or not self._channel_id:
            return
        embed = {
            "description": event.payload.get("text") or "",
            "color": WEB_EMBED_COLOR,
            "author": {"name": str(event.payload.get("author") or "anonymous")},
            "footer": {"text": "via Web UI"},
        }
        self._offload(self._client.post_message, self._channel_id, embed=embed)

    def broadcast_ai_chunk(self, event: ChatEvent) -> None:
        return None

    def broadcast_ai_end(self, event: ChatEvent) -> None:
        text = event.text
        if not text:
            return
        target, reply_to = self._reply_target(event)
        if not target:
            return
        logger.info("Posting AI response to Discord", extra={"extra": {"channel_id": target, "correlation_id": event.id}})
        for i, chunk in enumerate(split_message(text, DISCORD_MESSAGE_LIMIT)):
            self._offload(self._client.post_message, target, chunk, reply_to=reply_to if i == 0 else None)

    def broadcast_error(self, event: ChatEvent) -> None:
        if event.context.get("source") != "discord":
            return
        target, reply_to = self._reply_target(event)
        if not target:
            return
        content = f"AI backend error: {event.payload.get('message')}"[:DISCORD_MESSAGE_LIMIT]
        self._offload(self._client.post_message, target, content, reply_to=reply_to)

    def _reply_target(self, event: ChatEvent):
        source = event.context.get("source")
        if source == "discord":
            return event.context.get("channel_id"), event.context.get("message_id")
        if source == "web":
            return self._channel_id, None
        return None, None

    # ---- 后台执行 ----

    def _offload(self, fn, *args, **kwargs) -> Future:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(f"Discord post failed: {exc}", extra={"extra": {"error": type(exc).__name__}})

    def flush(self, timeout: Optional[float] = None) -> None:
        """等待此前提交的所有发送完成。"""

        self._executor.submit(lambda: None).result(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
