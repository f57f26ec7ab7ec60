"""单次流式交换的状态机。

一次交换对应一个 prompt：申请会话 → 建立 WebSocket → 发送 init →
收到 ready 后发送 prompt → 转发内容增量 → 结束。

结束有三个相互竞争的触发源（后端 stream_end / error 消息、传输层错误、
超时定时器），它们可能分别在消息线程、定时器线程与错误回调中同时发生。
所有触发源都经过 _finish()：在交换级锁内对 finished 做 test-and-set，
只有把它从 False 置为 True 的那一个负责发送终止事件并关闭连接，
其余调用直接返回。因此每次交换恰好发出一条 ai_end 或 error，
连接也恰好关闭一次。
"""

import threading
from typing import Any, Callable, Mapping, Optional

import websocket

from relay_core.backend import messages
from relay_core.backend.session import SessionProvisioner
from relay_core.domain.exceptions import (
    BackendReportedError,
    BackendTransportError,
    BusinessError,
    ExchangeTimeout,
    MalformedBackendMessage,
)
from relay_core.domain.models import ChatEvent, ExchangePhase, ExchangeState
from relay_core.infrastructure.logging.logger import logger


EventSink = Callable[[ChatEvent], None]

DEFAULT_EXCHANGE_TIMEOUT = 120.0


class StreamingExchange:
    """驱动一次后端流式对话。

    run() 在调用线程中阻塞，直到终止事件已经发出。WebSocket 的收发跑在
    独立的守护线程上，超时由 threading.Timer 负责。
    """

    def __init__(
        self,
        ws_url: str,
        provisioner: SessionProvisioner,
        prompt: str,
        message_id: str,
        context: Optional[Mapping[str, Any]],
        emit: EventSink,
        timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
    ):
        self._ws_url = ws_url
        self._provisioner = provisioner
        self._prompt = prompt
        self._message_id = message_id
        self._context = dict(context or {})
        self._emit = emit
        self._timeout = timeout

        self._state = ExchangeState()
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self._app: Optional[websocket.WebSocketApp] = None
        self._session_id: Optional[str] = None

    @property
    def phase(self) -> ExchangePhase:
        with self._lock:
            return self._state.phase

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._state.finished

    @property
    def accumulated_text(self) -> str:
        with self._lock:
            return self._state.accumulated_text

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def run(self) -> None:
        """执行交换并阻塞到结束。

        Raises:
            SessionCreationFailed: 会话申请失败，此时不会发出任何事件，
                由调用方决定如何处理。
        """

        self._session_id = self._provisioner.create_session()
        self._log("Connecting to backend", url=self._ws_url, session_id=self._session_id)
        try:
            self._app = websocket.WebSocketApp(
                self._ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )
        except Exception as e:
            self._finish(BackendTransportError(f"Backend WebSocket connection error: {e}"))
            return

        self._timer = threading.Timer(self._timeout, self._on_timeout)
        self._timer.daemon = True
        self._timer.start()

        thread = threading.Thread(
            target=self._run_connection,
            name=f"exchange-{self._message_id[:8]}",
            daemon=True,
        )
        thread.start()
        self._done.wait()

    def _run_connection(self) -> None:
        try:
            self._app.run_forever()
        except Exception as e:
            self._finish(BackendTransportError(f"Backend WebSocket connection error: {e}"))
            return
        # 连接已关闭；若此前没有任何终止信号，则视为传输错误
        self._finish(BackendTransportError("Backend connection closed before the response finished"))

    # ---- WebSocket 回调 ----

    def _on_open(self, ws) -> None:
        with self._lock:
            if self._state.finished:
                return
            self._state.phase = ExchangePhase.AWAITING_READY
        ws.send(messages.init_message(self._session_id))

    def _on_message(self, ws, raw) -> None:
        try:
            msg = messages.parse_message(raw)
        except MalformedBackendMessage as e:
            self._log("Dropped malformed backend message", debug=True, reason=e.message)
            return

        kind = msg["type"]
        if kind == messages.READY:
            self._send_prompt(ws)
        elif kind == messages.STREAM_CHUNK:
            self._handle_chunk(msg)
        elif kind == messages.STREAM_END:
            self._finish()
        elif kind == messages.ERROR:
            self._finish(BackendReportedError(messages.error_text(msg)))
        else:
            self._log("Ignored backend message", debug=True, type=kind)

    def _on_error(self, ws, error) -> None:
        # 主动关闭连接也可能触发 on_error；闩锁保证这里不会重复上报
        self._finish(BackendTransportError(f"Backend WebSocket connection error: {error}"))

    def _on_close(self, ws, close_status_code=None, close_msg=None) -> None:
        self._log("Backend connection closed", debug=True, code=close_status_code, reason=close_msg)

    def _on_timeout(self) -> None:
        self._finish(ExchangeTimeout(f"Backend did not finish within {self._timeout:g}s"))

    # ---- 状态迁移 ----

    def _send_prompt(self, ws) -> None:
        with self._lock:
            if self._state.finished or self._state.sent_prompt:
                return
            self._state.sent_prompt = True
            self._state.phase = ExchangePhase.SENDING
        ws.send(messages.prompt_message(self._prompt))

    def _handle_chunk(self, msg: dict) -> None:
        text = messages.content_text(msg)
        if not text:
            return
        # 在锁内发出增量，保证所有 ai_chunk 都先于终止事件
        with self._lock:
            if self._state.finished:
                return
            self._state.phase = ExchangePhase.STREAMING
            self._state.accumulated_text += text
            self._emit(ChatEvent.ai_chunk(self._message_id, text, self._context))

    def _finish(self, error: Optional[BusinessError] = None) -> bool:
        """终止交换；只有第一个调用者生效，返回是否由本次调用完成。"""

        with self._lock:
            if self._state.finished:
                return False
            self._state.finished = True
            self._state.phase = ExchangePhase.FINISHED
            full_text = self._state.accumulated_text

        if self._timer is not None:
            self._timer.cancel()
        try:
            if error is None:
                self._log("Stream ended", chars=len(full_text))
                self._emit(ChatEvent.ai_end(self._message_id, full_text, self._context))
            else:
                self._log("Exchange failed", error=True, code=error.code, reason=error.message)
                self._emit(ChatEvent.error(self._message_id, error.message, error.code, self._context))
        finally:
            self._close()
            self._done.set()
        return True

    def _close(self) -> None:
        if self._app is None:
            return
        try:
            self._app.close()
        except Exception as e:
            self._log("Failed to close backend connection", debug=True, reason=str(e))

    def _log(self, msg: str, debug: bool = False, error: bool = False, **fields) -> None:
        extra = {"correlation_id": self._message_id, **fields}
        if error:
            logger.error(msg, extra={"extra": extra})
        elif debug:
            logger.debug(msg, extra={"extra": extra})
        else:
            logger.info(msg, extra={"extra": extra})
