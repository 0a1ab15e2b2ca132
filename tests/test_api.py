"""
Tests for the HTTP surface, with the model backend and finance service replaced by fakes.

Run with:
$ pytest -q tests/test_api.py
"""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from agentdesk.agent.model_backend import ModelBackendError
from agentdesk.api.app import (
    app,
    get_backend,
    get_finance_client,
)
from agentdesk.config import settings
from agentdesk.core.schema import (
    TerminalAnswer,
    TextFragment,
)
from agentdesk.memory.session_store import SessionHistoryStore
from agentdesk.stream.reader import iter_agent_stream


@pytest.fixture
def api(scripted_backend, finance_service):
    """A test client plus a handle whose ``backend`` attribute the next request will use."""

    handle = SimpleNamespace(backend=scripted_backend())
    app.state.history_store = SessionHistoryStore(limit=settings.HISTORY_LIMIT)
    app.dependency_overrides[get_backend] = lambda: handle.backend
    app.dependency_overrides[get_finance_client] = finance_service.client
    with TestClient(app) as client:
        yield client, handle
    app.dependency_overrides.clear()


def test_health(api) -> None:
    client, _ = api

    assert client.get("/health").json() == {"ok": True}
    assert "chat" in client.get("/").json()["endpoints"]


def test_chat_returns_normalized_output(api, scripted_backend) -> None:
    """The synchronous endpoint returns the camelCase output plus session bookkeeping."""

    client, handle = api
    handle.backend = scripted_backend(replies=[TerminalAnswer(text="Hello <<NAVIGATE:/docs>>")])

    response = client.post("/api/agent/chat", json={"sessionId": "s1", "message": "hi"})

    assert response.status_code == 200
    assert response.json() == {
        "answer": "Hello",
        "usedTools": [],
        "actions": [{"type": "navigate", "to": "/docs"}],
        "ui": [],
        "sections": [],
        "navigateTo": "/docs",
        "sessionId": "s1",
        "historyCount": 2,
    }


def test_chat_history_is_carried_between_requests(api, scripted_backend) -> None:
    client, handle = api
    handle.backend = scripted_backend(
        replies=[TerminalAnswer(text="Hi there."), TerminalAnswer(text="Still here.")]
    )

    client.post("/api/agent/chat", json={"sessionId": "s1", "message": "hi"})
    second = client.post("/api/agent/chat", json={"sessionId": "s1", "message": "still?"})

    assert second.json()["historyCount"] == 4
    roles = [message.role for message in handle.backend.contexts[1]]
    assert roles == ["system", "user", "model", "user"]
    assert handle.backend.contexts[1][2].content == "Hi there."


def test_chat_validation_error_is_400(api) -> None:
    client, _ = api

    response = client.post("/api/agent/chat", json={"sessionId": "s1"})

    assert response.status_code == 400
    assert "message" in response.json()["error"]


def test_missing_api_key_is_500(api, monkeypatch) -> None:
    """Without credentials the request fails before any model turn."""

    client, _ = api
    del app.dependency_overrides[get_backend]
    monkeypatch.setattr(settings, "MODEL_BACKEND", None)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", None)
    monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", None)

    for path in ("/api/agent/chat", "/api/agent/chat/stream"):
        response = client.post(path, json={"sessionId": "s1", "message": "hi"})
        assert response.status_code == 500
        assert response.json()["error"].startswith("Missing API key")


def test_backend_failure_is_502(api, scripted_backend) -> None:
    client, handle = api
    handle.backend = scripted_backend(replies=[ModelBackendError("Error calling OpenAI: 503")])

    response = client.post("/api/agent/chat", json={"sessionId": "s1", "message": "hi"})

    assert response.status_code == 502
    assert response.json() == {"error": "Error calling OpenAI: 503"}


def test_chat_stream(api, scripted_backend) -> None:
    """The streaming endpoint emits the protocol events and records the exchange."""

    client, handle = api
    handle.backend = scripted_backend(
        streams=[
            [TextFragment(text="Pricing is "), TextFragment(text="here. <<NAVIGATE:/pricing>>")]
        ]
    )

    response = client.post(
        "/api/agent/chat/stream",
        json={"sessionId": "s2", "message": "pricing?", "availableRoutes": ["/pricing"]},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = list(iter_agent_stream([response.text]))
    assert [event.type for event in events] == [
        "message_start",
        "text_delta",
        "text_delta",
        "actions",
        "done",
    ]
    visible = "".join(event.delta for event in events if event.type == "text_delta")
    assert visible == "Pricing is here. "
    done = events[-1].response
    assert done["answer"] == "Pricing is here."
    assert done["navigateTo"] == "/pricing"
    assert done["sessionId"] == "s2"
    assert done["historyCount"] == 2

    history = client.get("/api/agent/sessions/s2").json()
    assert history == {
        "sessionId": "s2",
        "history": [
            {"role": "user", "content": "pricing?"},
            {"role": "model", "content": "Pricing is here."},
        ],
    }


def test_stream_error_event(api, scripted_backend) -> None:
    client, handle = api
    failure = ModelBackendError("Error streaming from OpenAI: boom")
    handle.backend = scripted_backend(streams=[[failure]])

    response = client.post("/api/agent/chat/stream", json={"sessionId": "s3", "message": "hi"})

    events = list(iter_agent_stream([response.text]))
    assert [event.type for event in events] == ["message_start", "error"]
    assert events[-1].error == "Error streaming from OpenAI: boom"
    assert client.get("/api/agent/sessions").json() == []


def test_session_endpoints(api, scripted_backend) -> None:
    client, handle = api
    handle.backend = scripted_backend(replies=[TerminalAnswer(text="ok")])
    client.post("/api/agent/chat", json={"sessionId": "s1", "message": "hi"})

    assert client.get("/api/agent/sessions").json() == ["s1"]
    assert client.delete("/api/agent/sessions/s1").json() == {"deleted": True}
    assert client.get("/api/agent/sessions/s1").status_code == 404
    assert client.delete("/api/agent/sessions/s1").json() == {"deleted": False}
