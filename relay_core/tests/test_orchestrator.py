import json
import threading
import time

import pytest

from relay_core.domain.exceptions import SessionCreationFailed, ValidationError
from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent, EventKind
from relay_core.orchestrator import ChatOrchestrator


READY = json.dumps({"type": "ready"})
END = json.dumps({"type": "stream_end"})


def chunk(text):
    return json.dumps({"type": "stream_chunk", "data": {"type": "content", "data": text}})


class FakeProvisioner:
    def __init__(self, fail=False):
        self.fail = fail

    def create_session(self):
        if self.fail:
            raise SessionCreationFailed(code="SESSION_NETWORK_ERROR", message="refused")
        return "s-1"


class RecordingResponder:
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def _record(self, event):
        with self._lock:
            self.events.append(event)

    broadcast_user_message = _record
    broadcast_ai_chunk = _record
    broadcast_ai_end = _record
    broadcast_error = _record


class ExplodingResponder:
    def _boom(self, event):
        raise RuntimeError("responder down")

    broadcast_user_message = _boom
    broadcast_ai_chunk = _boom
    broadcast_ai_end = _boom
    broadcast_error = _boom


def recording_factory(log):
    """构造一个不访问网络的交换替身：记录开始/结束并立即回答 prompt。"""

    class RecordingExchange:
        def __init__(self, **kwargs):
            self.kwargs = kwargs

        def run(self):
            kw = self.kwargs
            log.append(("start", kw["prompt"]))
            kw["provisioner"].create_session()
            kw["emit"](ChatEvent.ai_chunk(kw["message_id"], kw["prompt"].lower(), kw["context"]))
            kw["emit"](ChatEvent.ai_end(kw["message_id"], kw["prompt"].lower(), kw["context"]))
            log.append(("end", kw["prompt"]))

    return RecordingExchange


def _orchestrator(responders, log=None, provisioner=None, **kwargs):
    factory = kwargs.pop("exchange_factory", None) or recording_factory(log if log is not None else [])
    return ChatOrchestrator(
        ws_url="ws://backend/",
        provisioner=provisioner or FakeProvisioner(),
        history=HistoryBuffer(50),
        responders=responders,
        exchange_timeout=5.0,
        exchange_factory=factory,
        **kwargs,
    )


def _run(orch, *texts):
    orch.start()
    try:
        ids = [orch.submit({"text": t, "source": "web", "author": "u"}) for t in texts]
        orch.join()
    finally:
        orch.stop(timeout=5)
    return ids


def test_jobs_are_processed_strictly_in_order():
    log = []
    responder = RecordingResponder()
    orch = _orchestrator([responder], log=log)
    _run(orch, "A", "B", "C")

    assert log == [("start", "A"), ("end", "A"), ("start", "B"), ("end", "B"), ("start", "C"), ("end", "C")]
    ends = [e.text for e in responder.events if e.kind == EventKind.AI_END]
    assert ends == ["a", "b", "c"]


def test_submit_broadcasts_user_message_before_returning():
    responder = RecordingResponder()
    orch = _orchestrator([responder])
    message_id = orch.submit({"id": "fixed", "text": "hi", "source": "web", "author": "u"}, {"replyTo": "c1"})

    assert message_id == "fixed"
    assert len(responder.events) == 1
    event = responder.events[0]
    assert event.kind == EventKind.USER_MESSAGE
    assert event.context["replyTo"] == "c1"
    assert orch.pending == 1
    assert [e.id for e in orch.history.snapshot()] == ["fixed"]


def test_submit_generates_id_when_missing():
    orch = _orchestrator([])
    message_id = orch.submit({"text": "hi"})
    assert message_id
    assert orch.history.snapshot()[0].payload["id"] == message_id


@pytest.mark.parametrize("payload", [{}, {"text": ""}, {"text": "   "}, {"text": 3}])
def test_submit_rejects_empty_prompt(payload):
    responder = RecordingResponder()
    orch = _orchestrator([responder])
    with pytest.raises(ValidationError) as ei:
        orch.submit(payload)
    assert ei.value.code == "EMPTY_PROMPT"
    assert responder.events == []
    assert orch.pending == 0


def test_history_holds_only_durable_events():
    responder = RecordingResponder()
    orch = _orchestrator([responder])
    _run(orch, "One", "Two")

    kinds = [e.kind for e in orch.history.snapshot()]
    assert kinds == [EventKind.USER_MESSAGE, EventKind.USER_MESSAGE, EventKind.AI_END, EventKind.AI_END] or kinds == [
        EventKind.USER_MESSAGE,
        EventKind.AI_END,
        EventKind.USER_MESSAGE,
        EventKind.AI_END,
    ]
    assert EventKind.AI_CHUNK in [e.kind for e in responder.events]


def test_context_round_trips_through_real_exchange(install_app):
    install_app([READY, chunk("He"), chunk("llo"), END])
    responder = RecordingResponder()
    orch = ChatOrchestrator(
        ws_url="ws://backend/",
        provisioner=FakeProvisioner(),
        history=HistoryBuffer(10),
        responders=[responder],
        exchange_timeout=5.0,
    )
    orch.start()
    try:
        message_id = orch.submit({"text": "hello", "source": "discord"}, {"source": "discord", "channel_id": "42"})
        orch.join()
    finally:
        orch.stop(timeout=5)

    kinds = [e.kind for e in responder.events]
    assert kinds == [EventKind.USER_MESSAGE, EventKind.AI_CHUNK, EventKind.AI_CHUNK, EventKind.AI_END]
    assert all(e.id == message_id for e in responder.events)
    assert all(e.context["channel_id"] == "42" for e in responder.events)
    assert responder.events[-1].text == "Hello"


def test_session_failure_notifies_by_default():
    responder = RecordingResponder()
    orch = _orchestrator([responder], provisioner=FakeProvisioner(fail=True))
    _run(orch, "hi")

    errors = [e for e in responder.events if e.kind == EventKind.ERROR]
    assert len(errors) == 1
    assert errors[0].payload["code"] == "SESSION_CREATION_FAILED"
    assert [e.kind for e in orch.history.snapshot()] == [EventKind.USER_MESSAGE]


def test_session_failure_can_be_dropped_silently():
    responder = RecordingResponder()
    orch = _orchestrator([responder], provisioner=FakeProvisioner(fail=True), notify_session_failure=False)
    _run(orch, "hi", "again")

    assert [e.kind for e in responder.events] == [EventKind.USER_MESSAGE, EventKind.USER_MESSAGE]


def test_failing_responder_does_not_block_others():
    good = RecordingResponder()
    orch = _orchestrator([ExplodingResponder(), good])
    _run(orch, "X")

    assert [e.kind for e in good.events] == [EventKind.USER_MESSAGE, EventKind.AI_CHUNK, EventKind.AI_END]


def test_worker_survives_unexpected_exchange_failure():
    calls = []

    class FlakyExchange:
        def __init__(self, **kwargs):
            self.kwargs = kwargs

        def run(self):
            calls.append(self.kwargs["prompt"])
            if self.kwargs["prompt"] == "bad":
                raise RuntimeError("unexpected")
            self.kwargs["emit"](ChatEvent.ai_end(self.kwargs["message_id"], "ok", self.kwargs["context"]))

    responder = RecordingResponder()
    orch = _orchestrator([responder], exchange_factory=FlakyExchange)
    _run(orch, "bad", "good")

    assert calls == ["bad", "good"]
    assert [e.text for e in responder.events if e.kind == EventKind.AI_END] == ["ok"]


def test_start_and_stop_are_idempotent():
    orch = _orchestrator([])
    assert not orch.running
    orch.start()
    orch.start()
    assert orch.running
    orch.stop(timeout=5)
    assert not orch.running
    orch.stop(timeout=5)


def test_timed_out_stop_keeps_the_draining_worker():
    release = threading.Event()
    started = threading.Event()
    done = []
    workers = []

    class BlockingExchange:
        def __init__(self, **kwargs):
            self.kwargs = kwargs

        def run(self):
            workers.append(threading.current_thread())
            started.set()
            release.wait(5)
            self.kwargs["emit"](ChatEvent.ai_end(self.kwargs["message_id"], "ok", self.kwargs["context"]))
            done.append(self.kwargs["prompt"])

    orch = _orchestrator([], exchange_factory=BlockingExchange)
    orch.start()
    orch.submit({"text": "slow"})
    assert started.wait(5)

    orch.stop(timeout=0.05)
    assert orch.running
    orch.start()
    orch.stop(timeout=0.05)
    assert orch.running

    release.set()
    orch.stop(timeout=5)
    assert not orch.running
    assert not workers[0].is_alive()
    assert done == ["slow"]

    orch.start()
    try:
        orch.submit({"text": "after"})
        for _ in range(500):
            if len(done) == 2:
                break
            time.sleep(0.01)
    finally:
        orch.stop(timeout=5)
    assert done == ["slow", "after"]
    assert workers[1] is not workers[0]
    assert not orch.running


def test_concurrent_submissions_keep_history_in_processing_order():
    log = []
    orch = ChatOrchestrator(
        ws_url="ws://backend/",
        provisioner=FakeProvisioner(),
        history=HistoryBuffer(500),
        exchange_factory=recording_factory(log),
    )
    barrier = threading.Barrier(8)

    def submitter(n):
        barrier.wait()
        for i in range(10):
            orch.submit({"text": f"p{n}-{i}"})

    orch.start()
    try:
        threads = [threading.Thread(target=submitter, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        orch.join()
    finally:
        orch.stop(timeout=5)

    history_order = [e.text for e in orch.history.snapshot() if e.kind == EventKind.USER_MESSAGE]
    processing_order = [prompt for step, prompt in log if step == "start"]
    assert len(processing_order) == 80
    assert history_order == processing_order
