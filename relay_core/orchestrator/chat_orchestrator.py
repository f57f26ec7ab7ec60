"""聊天编排器。

前端适配器通过 submit() 提交 prompt：同步写入历史并广播用户消息，
随后把任务放入队列立即返回。唯一的后台 worker 按提交顺序逐个取出任务，
驱动一次 StreamingExchange 直到终止事件发出后，才处理下一个任务。
这样后端在任意时刻最多只处理一个对话回合。
"""

import queue
import threading
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from relay_core.backend.exchange import DEFAULT_EXCHANGE_TIMEOUT, StreamingExchange
from relay_core.backend.session import SessionProvisioner
from relay_core.domain.exceptions import SessionCreationFailed, ValidationError
from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent, EventKind, StreamingJob
from relay_core.infrastructure.logging.logger import logger
from relay_core.responders.base import Responder


ExchangeFactory = Callable[..., StreamingExchange]

_BROADCAST_METHODS: Dict[EventKind, str] = {
    EventKind.USER_MESSAGE: "broadcast_user_message",
    EventKind.AI_CHUNK: "broadcast_ai_chunk",
    EventKind.AI_END: "broadcast_ai_end",
    EventKind.ERROR: "broadcast_error",
}

_STOP = object()


class ChatOrchestrator:
    """接收任意前端的 prompt，串行驱动后端交换并向所有 Responder 扇出事件。

    Responder 列表在构造后只读；需要反向调用 submit() 的适配器
    在构造编排器之后再 bind()。
    """

    def __init__(
        self,
        ws_url: str,
        provisioner: SessionProvisioner,
        history: HistoryBuffer,
        responders: Iterable[Responder] = (),
        exchange_timeout: float = DEFAULT_EXCHANGE_TIMEOUT,
        notify_session_failure: bool = True,
        exchange_factory: Optional[ExchangeFactory] = None,
    ):
        self._ws_url = ws_url
        self._provisioner = provisioner
        self._history = history
        self._responders: Tuple[Responder, ...] = tuple(responders)
        self._exchange_timeout = exchange_timeout
        self._notify_session_failure = notify_session_failure
        self._exchange_factory = exchange_factory or StreamingExchange

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._stop_requested = False
        self._lifecycle_lock = threading.Lock()
        # 写历史、广播用户消息与入队三步对提交方整体原子
        self._submit_lock = threading.Lock()

    @property
    def history(self) -> HistoryBuffer:
        return self._history

    @property
    def responders(self) -> Sequence[Responder]:
        return self._responders

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ---- 提交 ----

    def submit(self, payload: Mapping[str, Any], context: Optional[Mapping[str, Any]] = None) -> str:
        """提交一条用户消息，返回其 correlation id。

        Args:
            payload: {id?, source, author, text}
            context: 仅用于回复路由的透传数据

        Raises:
            ValidationError: text 缺失或为空。
        """

        full_payload = dict(payload or {})
        text = full_payload.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(code="EMPTY_PROMPT", message="payload.text must be a non-empty string")
        message_id = str(full_payload.get("id") or uuid4())
        full_payload["id"] = message_id
        ctx = dict(context or {})

        with self._submit_lock:
            self._dispatch(ChatEvent.user_message(full_payload, ctx))
            self._queue.put(StreamingJob(prompt=text, id=message_id, context=ctx))
        logger.info(
            "Queued prompt",
            extra={"extra": {
                "correlation_id": message_id,
                "source": full_payload.get("source"),
                "pending": self._queue.qsize(),
            }},
        )
        return message_id

    # ---- worker 生命周期 ----

    def start(self) -> None:
        """启动后台 worker（重复调用无副作用）。"""

        with self._lifecycle_lock:
            if self.running:
                if self._stop_requested:
                    logger.warning("Orchestrator worker is still stopping, start ignored")
                return
            self._stop_requested = False
            self._worker = threading.Thread(target=self._worker_loop, name="relay-worker", daemon=True)
            self._worker.start()
        logger.info("Orchestrator worker started", extra={"extra": {"backend_ws": self._ws_url}})

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        """停止 worker：已在队列中的任务会先处理完。

        超时返回时保留 worker 句柄，线程确认退出之前不会启动新的 worker，
        再次调用 stop() 只会继续等待，不会重复投递停止信号。
        """

        with self._lifecycle_lock:
            worker = self._worker
            if worker is None:
                return
            if not self._stop_requested:
                self._queue.put(_STOP)
                self._stop_requested = True
        worker.join(timeout)
        if worker.is_alive():
            logger.warning("Orchestrator worker did not stop in time", extra={"extra": {"timeout": timeout}})
            return
        with self._lifecycle_lock:
            if self._worker is worker:
                self._worker = None
                self._stop_requested = False
        logger.info("Orchestrator worker stopped")

    def join(self) -> None:
        """阻塞直到队列中所有任务处理完毕。"""

        self._queue.join()

    def _worker_loop(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                self._process(job)
            except Exception:
                logger.exception(
                    "Unexpected failure while processing job",
                    extra={"extra": {"correlation_id": getattr(job, "id", None)}},
                )
            finally:
                self._queue.task_done()

    def _process(self, job: StreamingJob) -> None:
        exchange = self._exchange_factory(
            ws_url=self._ws_url,
            provisioner=self._provisioner,
            prompt=job.prompt,
            message_id=job.id,
            context=job.context,
            emit=self._dispatch,
            timeout=self._exchange_timeout,
        )
        try:
            exchange.run()
        except SessionCreationFailed as e:
            if not self._notify_session_failure:
                logger.warning(
                    "Dropped job: backend session could not be created",
                    extra={"extra": {"correlation_id": job.id, "code": e.code}},
                )
                return
            self._dispatch(
                ChatEvent.error(
                    job.id,
                    f"Failed to create backend session: {e.message}",
                    "SESSION_CREATION_FAILED",
                    job.context,
                )
            )

    # ---- 事件分发 ----

    def _dispatch(self, event: ChatEvent) -> None:
        if event.kind.durable:
            self._history.append(event)
        method_name = _BROADCAST_METHODS[event.kind]
        for responder in self._responders:
            try:
                getattr(responder, method_name)(event)
            except Exception:
                logger.exception(
                    "Responder failed",
                    extra={"extra": {
                        "responder": type(responder).__name__,
                        "event": event.kind.value,
                        "correlation_id": event.id,
                    }},
                )
