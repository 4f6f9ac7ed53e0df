import pytest
from fastapi.testclient import TestClient

from microbe_modeler.chat_relay import (
    ChatBackendError,
    SessionStore,
    build_prompt,
    create_app,
)


class FakeBackend:
    model_name = "fake-model"

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def generate(self, history):
        self.calls.append([dict(m) for m in history])
        if self.fail:
            raise ChatBackendError("Gemini API Error: quota exceeded")
        return f"reply {len(self.calls)}"


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(backend):
    return TestClient(create_app(backend=backend, store=SessionStore()))


def test_health_reports_model(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy", "model": "fake-model"}


@pytest.mark.parametrize("body", [{}, {"text": "hi"}, {"sessionId": "s1"}, {"text": "", "sessionId": "s1"}])
def test_missing_text_or_session_is_400(client, body):
    resp = client.post("/api/messages", json=body)
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_history_is_kept_per_session(client, backend):
    assert client.post("/api/messages", json={"text": "first", "sessionId": "a"}).json() == {"text": "reply 1"}
    client.post("/api/messages", json={"text": "other", "sessionId": "b"})
    client.post("/api/messages", json={"text": "second", "sessionId": "a"})

    third_call = backend.calls[2]
    assert [m["role"] for m in third_call] == ["user", "model", "user"]
    assert third_call[0]["parts"] == ["first"]
    assert third_call[1]["parts"] == ["reply 1"]


def test_backend_failure_is_502():
    app = create_app(backend=FakeBackend(fail=True), store=SessionStore())
    resp = TestClient(app).post("/api/messages", json={"text": "hi", "sessionId": "s"})
    assert resp.status_code == 502
    assert "quota" in resp.json()["error"]
    assert "s" not in app.state.sessions


def test_prompt_includes_data_sample_and_fit_result():
    data = [{"time": float(i)} for i in range(15)]
    prompt = build_prompt("Why?", data, {"model": "linear"})
    assert prompt.startswith("Here are the model fitting results:")
    assert '"model": "linear"' in prompt
    assert '"time": 9.0' in prompt and '"time": 10.0' not in prompt
    assert prompt.endswith("User question: Why?")
    assert build_prompt("plain") == "plain"


def test_session_store_lru_bound():
    store = SessionStore(max_sessions=2, ttl_seconds=100)
    store.save("a", [{"role": "user", "parts": ["1"]}])
    store.save("b", [])
    store.get("a")
    store.save("a", [])
    store.save("c", [])
    assert "b" not in store
    assert "a" in store and "c" in store
    assert len(store) == 2


def test_session_store_ttl_expiry():
    now = [0.0]
    store = SessionStore(max_sessions=10, ttl_seconds=60, clock=lambda: now[0])
    store.save("a", [{"role": "user", "parts": ["hi"]}])
    now[0] = 30.0
    assert store.get("a") == [{"role": "user", "parts": ["hi"]}]
    now[0] = 91.0
    assert store.get("a") == []
    assert len(store) == 0
