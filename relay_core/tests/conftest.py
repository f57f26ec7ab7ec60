import json
import threading

import pytest

from relay_core.domain.exceptions import SessionCreationFailed


class FakeProvisioner:
    def __init__(self, session_id="s-1", fail=False):
        self.session_id = session_id
        self.fail = fail
        self.calls = 0

    def create_session(self):
        self.calls += 1
        if self.fail:
            raise SessionCreationFailed(code="SESSION_HTTP_ERROR", message="Session endpoint returned 500")
        return self.session_id


def make_fake_app(script):
    """WebSocketApp 替身：run_forever 依次回放脚本中的消息。

    脚本元素为字符串时作为入站消息投递；为可调用对象时以 app 为参数执行。
    """

    class FakeApp:
        instances = []

        def __init__(self, url, on_open=None, on_message=None, on_error=None, on_close=None):
            self.url = url
            self.on_open = on_open
            self.on_message = on_message
            self.on_error = on_error
            self.on_close = on_close
            self.sent = []
            self.close_calls = 0
            self.closed = threading.Event()
            FakeApp.instances.append(self)

        def send(self, data):
            self.sent.append(json.loads(data))

        def close(self, **kwargs):
            self.close_calls += 1
            self.closed.set()

        def run_forever(self, **kwargs):
            self.on_open(self)
            for item in script:
                if self.closed.is_set():
                    break
                if callable(item):
                    item(self)
                else:
                    self.on_message(self, item)
            self.on_close(self, 1000, "bye")

    return FakeApp


@pytest.fixture
def provisioner():
    return FakeProvisioner()


@pytest.fixture
def install_app(monkeypatch):
    def _install(script):
        app_cls = make_fake_app(script)
        monkeypatch.setattr("websocket.WebSocketApp", app_cls)
        return app_cls

    return _install


@pytest.fixture
def failing_provisioner():
    return FakeProvisioner(fail=True)
