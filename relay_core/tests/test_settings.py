import pydantic
import pytest

from relay_core.config.settings import RelaySettings


def test_urls_derived_from_origin():
    s = RelaySettings(_env_file=None, backend_origin="https://chat.example.com/")
    assert s.session_url == "https://chat.example.com/api/chat"
    assert s.stream_url == "wss://chat.example.com/"


def test_explicit_urls_win():
    s = RelaySettings(_env_file=None, backend_http="http://a/session", backend_ws="ws://b/stream")
    assert s.session_url == "http://a/session"
    assert s.stream_url == "ws://b/stream"


def test_legacy_origin_env_name(monkeypatch):
    monkeypatch.setenv("APP_BACKEND_ORIGIN", "http://legacy:4000/")
    assert RelaySettings(_env_file=None).stream_url == "ws://legacy:4000/"


def test_yaml_config_file(tmp_path, monkeypatch):
    path = tmp_path / "relay.yaml"
    path.write_text("history_size: 7\nexchange_timeout: 3.5\nlog_level: debug\n", encoding="utf-8")
    monkeypatch.setenv("RELAY_CONFIG_FILE", str(path))
    monkeypatch.setenv("EXCHANGE_TIMEOUT", "9")

    s = RelaySettings(_env_file=None)
    assert s.history_size == 7
    assert s.exchange_timeout == 9.0
    assert s.log_level == "DEBUG"


def test_integrations_need_credentials():
    s = RelaySettings(_env_file=None, discord_token="  ", github_token="t")
    assert not s.discord_enabled
    assert not s.github_enabled
    assert RelaySettings(_env_file=None, github_token="t", github_webhook_secret="x").github_enabled


def test_invalid_values_rejected():
    with pytest.raises(pydantic.ValidationError):
        RelaySettings(_env_file=None, log_level="loud")
    with pytest.raises(pydantic.ValidationError):
        RelaySettings(_env_file=None, history_size=0)
