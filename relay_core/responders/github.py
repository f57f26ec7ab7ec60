"""GitHub Webhook 适配器。

入站：校验 X-Hub-Signature-256 签名后，从 issue_comment /
pull_request_review_comment 事件中取出评论并提交给编排器。
出站：GitHub 来源的 prompt 得到 AI 回答或失败后，在原 issue / PR 下发表评论。
"""

import hashlib
import hmac
import json
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import httpx

from relay_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from relay_core.domain.models import ChatEvent
from relay_core.infrastructure.logging.logger import logger

if TYPE_CHECKING:
    from relay_core.orchestrator import ChatOrchestrator


def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """校验 GitHub 的 sha256 HMAC 签名（常量时间比较）。"""

    if not signature_header or not secret:
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), signature_header.encode("utf-8"))


def extract_comment(event_type: Optional[str], payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """从 webhook 负载中取出评论信息；不是新建评论事件时返回 None。"""

    if not isinstance(payload, dict) or payload.get("action") != "created":
        return None
    comment = payload.get("comment")
    repository = payload.get("repository") or {}
    if not isinstance(comment, dict) or not repository.get("full_name"):
        return None

    repo = repository["full_name"]
    if event_type == "issue_comment":
        issue = payload.get("issue")
        if not isinstance(issue, dict):
            return None
        number = issue.get("number")
        prefix = "github-pr" if "pull_request" in issue else "github-issue"
    elif event_type == "pull_request_review_comment":
        pull_request = payload.get("pull_request")
        if not isinstance(pull_request, dict):
            return None
        number = pull_request.get("number")
        prefix = "github-pr"
    else:
        return None

    return {
        "repo": repo,
        "number": number,
        "body": comment.get("body") or "",
        "comment_id": comment.get("id"),
        "commenter": (comment.get("user") or {}).get("login"),
        "session_key": f"{prefix}-{repo}-{number}",
    }


class GithubRestClient:
    """GitHub REST 客户端（评论与当前用户查询）。"""

    def __init__(self, token: str, api_base: str = "https://api.github.com", timeout: float = 30.0):
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def _request(self, method: str, path: str, json_body: Optional[dict] = None) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.request(
                    method,
                    f"{self._api_base}{path}",
                    json=json_body,
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Accept": "application/vnd.github+json",
                    },
                )
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="GitHub rate limit")
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        return resp.json()

    def current_login(self) -> str:
        return self._request("GET", "/user").get("login") or ""

    def add_comment(self, repo: str, number: int, body: str) -> Dict[str, Any]:
        return self._request("POST", f"/repos/{repo}/issues/{number}/comments", {"body": body})


class GithubGateway:
    """GitHub 入站 webhook 处理 + Responder。"""

    def __init__(
        self,
        client: GithubRestClient,
        webhook_secret: str,
        bot_login: Optional[str] = None,
        orchestrator: Optional["ChatOrchestrator"] = None,
    ):
        self._client = client
        self._webhook_secret = webhook_secret
        self._bot_login = bot_login
        self._login_lock = threading.Lock()
        self._orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="github")

    @classmethod
    def from_settings(cls, settings) -> "GithubGateway":
        client = GithubRestClient(settings.github_token, api_base=settings.github_api_base, timeout=settings.http_timeout)
        return cls(client, settings.github_webhook_secret, bot_login=settings.github_bot_login)

    def bind(self, orchestrator: "ChatOrchestrator") -> None:
        self._orchestrator = orchestrator

    @property
    def bot_login(self) -> Optional[str]:
        with self._login_lock:
            if self._bot_login is None:
                try:
                    self._bot_login = self._client.current_login()
                except (NetworkError, ApiError, RateLimitError) as e:
                    logger.warning(f"Could not resolve GitHub bot login: {e.message}")
            return self._bot_login

    def handle_webhook(self, event_type: Optional[str], signature: Optional[str], body: bytes) -> Tuple[int, str]:
        """处理一次 webhook 投递，返回 (HTTP 状态码, 说明)。"""

        if not verify_signature(self._webhook_secret, body, signature):
            logger.warning("GitHub webhook signature mismatch")
            return 401, "Unauthorized"
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to parse webhook payload: {e}")
            return 400, "Bad Request"

        data = extract_comment(event_type, payload)
        if data is None:
            return 200, "Event ignored: Not a comment event or invalid payload"
        if data["commenter"] and data["commenter"] == self.bot_login:
            return 200, "Ignoring own comment"
        if self._orchestrator is None:
            logger.error("GithubGateway is not bound to an orchestrator")
            return 503, "Service Unavailable"

        payload = {
            "source": "github",
            "author": data["commenter"],
            "text": data["body"],
        }
        context = {
            "source": "github",
            "repo": data["repo"],
            "number": data["number"],
            "session_key": data["session_key"],
        }
        try:
            self._orchestrator.submit(payload, context=context)
        except ValidationError:
            return 200, "Event ignored: empty comment"
        logger.info("Accepted GitHub comment", extra={"extra": {"repo": data["repo"], "number": data["number"]}})
        return 200, "OK"

    # ---- Responder ----

    def broadcast_user_message(self, event: ChatEvent) -> None:
        return None

    def broadcast_ai_chunk(self, event: ChatEvent) -> None:
        return None

    def broadcast_ai_end(self, event: ChatEvent) -> None:
        if event.context.get("source") != "github" or not event.text:
            return
        repo = event.context.get("repo")
        number = event.context.get("number")
        future = self._executor.submit(self._client.add_comment, repo, number, event.text)
        future.add_done_callback(self._log_result(repo, number))

    def broadcast_error(self, event: ChatEvent) -> None:
        if event.context.get("source") != "github":
            return
        repo = event.context.get("repo")
        number = event.context.get("number")
        logger.warning(
            "AI response failed for GitHub comment",
            extra={"extra": {"repo": repo, "number": number, "reason": event.payload.get("message")}},
        )
        body = f"AI backend error: {event.payload.get('message')}"
        future = self._executor.submit(self._client.add_comment, repo, number, body)
        future.add_done_callback(self._log_result(repo, number))

    @staticmethod
    def _log_result(repo, number):
        def _done(future: Future) -> None:
            exc = future.exception()
            if exc is not None:
                logger.error(f"Failed to post comment: {exc}", extra={"extra": {"repo": repo, "number": number}})
            else:
                logger.info("Posted comment", extra={"extra": {"repo": repo, "number": number}})
        return _done

    def flush(self, timeout: Optional[float] = None) -> None:
        self._executor.submit(lambda: None).result(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
