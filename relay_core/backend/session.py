"""后端会话创建。

每次流式交换前向后端的会话接口发起一次 POST，取回 sessionId。
这里不做重试：是否重试由调用方决定。
"""

import httpx

from relay_core.domain.exceptions import SessionCreationFailed
from relay_core.infrastructure.logging.logger import logger


class SessionProvisioner:
    """后端会话申请客户端。

    - url: 会话创建接口地址。
    - connect_timeout / read_timeout: 连接与读取超时（秒）。
    """

    def __init__(self, url: str, connect_timeout: float = 5.0, read_timeout: float = 30.0):
        self._url = url
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)

    @classmethod
    def from_settings(cls, settings) -> "SessionProvisioner":
        return cls(
            settings.session_url,
            connect_timeout=settings.http_connect_timeout,
            read_timeout=settings.http_timeout,
        )

    @property
    def url(self) -> str:
        return self._url

    def create_session(self) -> str:
        """申请一个新会话并返回其 ID。

        Raises:
            SessionCreationFailed: 网络失败、非 2xx 响应或响应体中没有 sessionId。
        """

        try:
            with httpx.Client(timeout=self._timeout, trust_env=False) as client:
                resp = client.post(self._url)
        except httpx.RequestError as e:
            logger.error(f"Session creation exception: {e}", extra={"extra": {"url": self._url}})
            raise SessionCreationFailed(code="SESSION_NETWORK_ERROR", message=str(e))
        if not 200 <= resp.status_code < 300:
            logger.error(
                f"Session creation failed: {resp.status_code}",
                extra={"extra": {"url": self._url, "body": resp.text[:200]}},
            )
            raise SessionCreationFailed(
                code="SESSION_HTTP_ERROR",
                message=f"Session endpoint returned {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise SessionCreationFailed(code="SESSION_MALFORMED_RESPONSE", message=f"invalid JSON: {e}")
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        if not session_id or not isinstance(session_id, str):
            raise SessionCreationFailed(
                code="SESSION_MALFORMED_RESPONSE",
                message="Session response did not contain a sessionId",
            )
        logger.debug("Created backend session", extra={"extra": {"session_id": session_id}})
        return session_id
