import pytest

from relay_core.domain.exceptions import ApiError, RateLimitError
from relay_core.domain.history import HistoryBuffer
from relay_core.domain.models import ChatEvent
from relay_core.responders.discord import DiscordResponder, DiscordRestClient, format_history


class FakeRestClient:
    def __init__(self):
        self.posts = []

    def post_message(self, channel_id, content=None, *, reply_to=None, embed=None):
        self.posts.append({"channel_id": channel_id, "content": content, "reply_to": reply_to, "embed": embed})
        return {"id": str(len(self.posts))}


class FakeOrchestrator:
    def __init__(self):
        self.submitted = []

    def submit(self, payload, context=None):
        self.submitted.append((payload, context))
        return payload.get("id") or "generated"


@pytest.fixture
def rest():
    return FakeRestClient()


@pytest.fixture
def responder(rest):
    r = DiscordResponder(HistoryBuffer(10), rest, channel_id="100", orchestrator=FakeOrchestrator())
    yield r
    r.close()


def _msg(content, channel_id="100", guild_id="g1", bot=False, msg_id="555"):
    return {
        "id": msg_id,
        "channel_id": channel_id,
        "guild_id": guild_id,
        "content": content,
        "author": {"username": "ann", "bot": bot},
    }


def test_regular_message_in_target_channel_is_submitted(responder):
    assert responder.handle_message(_msg("hello"))
    payload, context = responder._orchestrator.submitted[0]
    assert payload == {"id": "555", "source": "discord", "author": "ann", "text": "hello"}
    assert context == {"source": "discord", "channel_id": "100", "message_id": "555"}


def test_direct_message_is_submitted(responder):
    assert responder.handle_message(_msg("hi", channel_id="dm-1", guild_id=None))


def test_other_channels_and_bots_are_ignored(responder):
    assert not responder.handle_message(_msg("hi", channel_id="200"))
    assert not responder.handle_message(_msg("hi", bot=True))
    assert responder._orchestrator.submitted == []


def test_history_command_posts_code_blocks(responder, rest):
    responder._history.append(ChatEvent.user_message({"id": "m1", "source": "web", "author": "bob", "text": "q"}, {}))
    responder._history.append(ChatEvent.ai_end("m1", "answer", {}))

    assert responder.handle_message(_msg("!history", channel_id="300"))
    responder.flush(timeout=5)

    assert len(rest.posts) == 1
    content = rest.posts[0]["content"]
    assert content.startswith("```\n") and content.endswith("\n```")
    assert "[web/bob] q" in content
    assert "[AI] answer" in content
    assert responder._orchestrator.submitted == []


def test_history_command_on_empty_history(responder, rest):
    responder.handle_message(_msg("!history"))
    responder.flush(timeout=5)
    assert "No history yet." in rest.posts[0]["content"]


def test_web_user_message_is_mirrored_as_embed(responder, rest):
    event = ChatEvent.user_message({"id": "m1", "source": "web", "author": "bob", "text": "hi"}, {"source": "web"})
    responder.broadcast_user_message(event)
    responder.broadcast_user_message(
        ChatEvent.user_message({"id": "m2", "source": "discord", "text": "x"}, {"source": "discord"})
    )
    responder.flush(timeout=5)

    assert len(rest.posts) == 1
    post = rest.posts[0]
    assert post["channel_id"] == "100"
    assert post["embed"]["description"] == "hi"
    assert post["embed"]["footer"] == {"text": "via Web UI"}
    assert post["embed"]["color"] == 0x7289DA


def test_discord_answer_replies_in_originating_channel_and_splits(responder, rest):
    ctx = {"source": "discord", "channel_id": "200", "message_id": "555"}
    responder.broadcast_ai_chunk(ChatEvent.ai_chunk("m1", "x", ctx))
    responder.broadcast_ai_end(ChatEvent.ai_end("m1", "a" * 4500, ctx))
    responder.flush(timeout=5)

    assert [len(p["content"]) for p in rest.posts] == [2000, 2000, 500]
    assert all(p["channel_id"] == "200" for p in rest.posts)
    assert [p["reply_to"] for p in rest.posts] == ["555", None, None]


def test_web_answer_goes_to_designated_channel(responder, rest):
    responder.broadcast_ai_end(ChatEvent.ai_end("m1", "done", {"source": "web"}))
    responder.broadcast_ai_end(ChatEvent.ai_end("m2", "done", {"source": "github"}))
    responder.flush(timeout=5)
    assert rest.posts == [{"channel_id": "100", "content": "done", "reply_to": None, "embed": None}]


def test_error_only_reported_for_discord_prompts(responder, rest):
    responder.broadcast_error(ChatEvent.error("m1", "boom", "TIMEOUT", {"source": "web"}))
    responder.broadcast_error(
        ChatEvent.error("m2", "boom", "TIMEOUT", {"source": "discord", "channel_id": "200", "message_id": "9"})
    )
    responder.flush(timeout=5)
    assert len(rest.posts) == 1
    assert "boom" in rest.posts[0]["content"]
    assert rest.posts[0]["reply_to"] == "9"


def test_post_failure_does_not_stop_later_posts(rest):
    class FlakyClient(FakeRestClient):
        def post_message(self, channel_id, content=None, **kwargs):
            if content == "first":
                raise ApiError(code="API_ERROR", message="nope", http_status=403)
            return super().post_message(channel_id, content, **kwargs)

    flaky = FlakyClient()
    r = DiscordResponder(HistoryBuffer(10), flaky, channel_id="100")
    try:
        r.broadcast_ai_end(ChatEvent.ai_end("m1", "first", {"source": "web"}))
        r.broadcast_ai_end(ChatEvent.ai_end("m2", "second", {"source": "web"}))
        r.flush(timeout=5)
    finally:
        r.close()
    assert [p["content"] for p in flaky.posts] == ["second"]


def test_format_history_skips_errors():
    events = [
        ChatEvent.user_message({"id": "m1", "source": "discord", "author": "ann", "text": "q"}, {}),
        ChatEvent.error("m1", "boom", "TIMEOUT", {}),
    ]
    assert format_history(events) == "[discord/ann] q"


class _Resp:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        return self._body


def _fake_httpx(resp, captured):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return resp

    return Client


def test_rest_client_builds_reply(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_httpx(_Resp(200, {"id": "1"}), captured))
    client = DiscordRestClient("tok", api_base="https://discord.test/api/")
    assert client.post_message("42", "hi", reply_to="7") == {"id": "1"}
    assert captured["url"] == "https://discord.test/api/channels/42/messages"
    assert captured["headers"]["Authorization"] == "Bot tok"
    assert captured["json"] == {"content": "hi", "message_reference": {"message_id": "7", "fail_if_not_exists": False}}


def test_rest_client_maps_errors(monkeypatch):
    monkeypatch.setattr("httpx.Client", _fake_httpx(_Resp(429), {}))
    with pytest.raises(RateLimitError):
        DiscordRestClient("tok").post_message("42", "hi")

    monkeypatch.setattr("httpx.Client", _fake_httpx(_Resp(403, text="forbidden"), {}))
    with pytest.raises(ApiError) as ei:
        DiscordRestClient("tok").post_message("42", "hi")
    assert ei.value.http_status == 403
