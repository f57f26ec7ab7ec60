"""FastAPI 应用。

RelayRuntime 之上的薄 HTTP 层：浏览器 WebSocket、SSE 推送、
GitHub Webhook，以及查询历史 / 提交消息的少量 REST 接口。
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterator, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from relay_core.api.service import RelayRuntime, build_runtime
from relay_core.domain.exceptions import BusinessError
from relay_core.infrastructure.logging.logger import logger


class SubmitRequest(BaseModel):
    """REST 提交请求体（与浏览器端 payload 结构一致）。"""

    id: Optional[str] = None
    source: str = "api"
    author: str = "anonymous"
    text: str = Field(..., min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class QueuedSocketClient:
    """把 worker 线程的广播桥接到一个 FastAPI WebSocket 上。

    send() 可在任意线程调用，帧交给事件循环后由 pump() 按顺序写出。
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._frames: asyncio.Queue[str] = asyncio.Queue()

    def send(self, text: str) -> None:
        self._loop.call_soon_threadsafe(self._frames.put_nowait, text)

    async def pump(self, websocket: WebSocket) -> None:
        while True:
            frame = await self._frames.get()
            await websocket.send_text(frame)


def create_app(runtime: Optional[RelayRuntime] = None) -> FastAPI:
    runtime = runtime or build_runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime.start()
        try:
            yield
        finally:
            await run_in_threadpool(runtime.stop)

    app = FastAPI(title="relay-core", lifespan=lifespan)
    app.state.runtime = runtime

    # =========================================================================
    # Error handlers
    # =========================================================================

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": exc.code, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"[ERROR] {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "INTERNAL_ERROR", "message": str(exc)},
        )

    # =========================================================================
    # REST
    # =========================================================================

    @app.get("/")
    async def index() -> Dict[str, Any]:
        return {
            "status": "ok",
            "worker_running": runtime.orchestrator.running,
            "pending": runtime.orchestrator.pending,
            "history": len(runtime.history),
            "web_clients": runtime.web.client_count,
            "sse_subscribers": runtime.sse.subscriber_count,
        }

    @app.get("/history")
    async def history() -> list:
        return [e.to_dict() for e in runtime.history.snapshot()]

    @app.post("/api/messages", status_code=status.HTTP_202_ACCEPTED)
    async def submit_message(body: SubmitRequest) -> Dict[str, str]:
        payload = body.model_dump(exclude={"context"}, exclude_none=True)
        context = {"source": body.source, **body.context}
        message_id = runtime.orchestrator.submit(payload, context=context)
        return {"id": message_id}

    @app.post("/webhooks/github")
    async def github_webhook(request: Request):
        if runtime.github is None:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": "NOT_CONFIGURED", "message": "GitHub integration is not configured"},
            )
        body = await request.body()
        status_code, message = await run_in_threadpool(
            runtime.github.handle_webhook,
            request.headers.get("X-GitHub-Event"),
            request.headers.get("X-Hub-Signature-256"),
            body,
        )
        return PlainTextResponse(message, status_code=status_code)

    # =========================================================================
    # Streaming
    # =========================================================================

    @app.get("/events")
    async def events() -> StreamingResponse:
        subscription = runtime.sse.subscribe()

        def frames() -> Iterator[str]:
            try:
                yield from subscription.frames(keepalive=runtime.settings.sse_keepalive)
            finally:
                runtime.sse.unsubscribe(subscription)

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await websocket.accept()
        client = QueuedSocketClient(asyncio.get_running_loop())
        writer = asyncio.create_task(client.pump(websocket))
        runtime.web.register(client)
        try:
            while True:
                raw = await websocket.receive_text()
                runtime.web.handle_message(raw)
        except WebSocketDisconnect as e:
            logger.info("WebSocket disconnected", extra={"extra": {"code": e.code}})
        finally:
            runtime.web.unregister(client)
            writer.cancel()

    return app
