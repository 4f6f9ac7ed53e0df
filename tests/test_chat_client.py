import pytest
import requests

import microbe_modeler.chat_client as chat_client
from microbe_modeler.chat_client import ChatClient, NetworkError, new_session_id


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def test_ask_posts_payload_and_returns_text(monkeypatch):
    captured = {}

    def fake_post(url, json=None, timeout=None):
        captured.update(url=url, json=json, timeout=timeout)
        return FakeResponse(200, {"text": "hello"})

    monkeypatch.setattr(chat_client.requests, "post", fake_post)
    client = ChatClient("http://relay:4000/", session_id="abc", timeout=5)
    assert client.ask("hi", data=[{"time": 0.0}], fit_result={"model": "linear"}) == "hello"
    assert captured["url"] == "http://relay:4000/api/messages"
    assert captured["json"] == {
        "text": "hi",
        "sessionId": "abc",
        "data": [{"time": 0.0}],
        "fitResult": {"model": "linear"},
    }
    assert captured["timeout"] == 5


def test_http_error_raises_network_error(monkeypatch):
    monkeypatch.setattr(
        chat_client.requests, "post", lambda *a, **k: FakeResponse(502, {"error": "upstream"})
    )
    with pytest.raises(NetworkError) as exc:
        ChatClient("http://relay", session_id="s").ask("hi")
    assert exc.value.status_code == 502
    assert "upstream" in str(exc.value)


def test_transport_failure_falls_back_to_inline_message(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(chat_client.requests, "post", boom)
    client = ChatClient("http://relay", session_id="s")
    with pytest.raises(NetworkError):
        client.ask("hi")
    reply = client.ask_with_fallback("hi")
    assert "couldn't reach" in reply and "http://relay" in reply


def test_environment_configuration(monkeypatch):
    monkeypatch.setenv("MICROBE_CHAT_URL", "http://example:9000")
    monkeypatch.setenv("MICROBE_CHAT_TIMEOUT", "7.5")
    client = ChatClient()
    assert client.base_url == "http://example:9000"
    assert client.timeout == 7.5
    assert len(client.session_id) == 32


def test_session_ids_are_unique():
    assert new_session_id() != new_session_id()


@pytest.mark.parametrize("payload", [["bad gateway"], "upstream down", None])
def test_non_object_error_body_raises_network_error(monkeypatch, payload):
    monkeypatch.setattr(chat_client.requests, "post", lambda *a, **k: FakeResponse(502, payload))
    client = ChatClient("http://relay", session_id="s")
    with pytest.raises(NetworkError) as exc:
        client.ask("hi")
    assert exc.value.status_code == 502
    assert client.ask_with_fallback("hi").startswith("Sorry")
