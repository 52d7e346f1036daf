from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from goaldesk.errors import (
    GoalNotFoundError,
    ModelInvokeError,
    SchemaViolationError,
    StackCorruptError,
    StoreError,
    ValidationError,
)
from goaldesk.main import app, status_for_error


@pytest.fixture
def orchestrator() -> MagicMock:
    """Mock orchestrator returned by get_orchestrator_async."""
    m = MagicMock()
    m.handle_message = AsyncMock(return_value="hello there")
    m.reset_session = AsyncMock(return_value=None)
    return m


@pytest.fixture
def client(orchestrator: MagicMock):
    with patch("goaldesk.main.get_orchestrator_async", AsyncMock(return_value=orchestrator)):
        yield TestClient(app)


@pytest.mark.parametrize(
    "exc, status",
    [
        (ValidationError("x"), 400),
        (GoalNotFoundError("x"), 404),
        (StackCorruptError("x"), 409),
        (SchemaViolationError("x"), 502),
        (ModelInvokeError("x"), 502),
        (StoreError("x"), 503),
        (RuntimeError("x"), 500),
    ],
)
def test_status_for_error(exc: Exception, status: int) -> None:
    """Pipeline errors map to HTTP status codes."""
    assert status_for_error(exc) == status


def test_health(client: TestClient) -> None:
    """/health reports ok."""
    assert client.get("/health").json() == {"status": "ok"}


def test_chat_returns_reply(client: TestClient, orchestrator: MagicMock) -> None:
    """POST /chat runs one turn."""
    resp = client.post("/chat", json={"session_id": "s1", "message": "hi"})
    assert resp.status_code == 200
    assert resp.json() == {"session_id": "s1", "reply": "hello there"}
    orchestrator.handle_message.assert_awaited_once_with("s1", "hi")


def test_chat_maps_errors(client: TestClient, orchestrator: MagicMock) -> None:
    """Errors from the turn are returned with their mapped status."""
    orchestrator.handle_message.side_effect = SchemaViolationError("next_question required")
    resp = client.post("/chat", json={"session_id": "s1", "message": "hi"})
    assert resp.status_code == 502
    assert resp.json()["error"] == "SchemaViolationError"


def test_delete_session(client: TestClient, orchestrator: MagicMock) -> None:
    """DELETE /sessions/{id} resets the session."""
    resp = client.delete("/sessions/s1")
    assert resp.status_code == 200
    orchestrator.reset_session.assert_awaited_once_with("s1")


def test_ws_chat_reply_and_error(client: TestClient, orchestrator: MagicMock) -> None:
    """The websocket answers once with a reply or an error."""
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text('{"session_id": "s1", "message": "hi"}')
        assert ws.receive_json() == {"type": "reply", "session_id": "s1", "data": "hello there"}

    orchestrator.handle_message.side_effect = ValidationError("text is required")
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text('{"session_id": "s1", "message": ""}')
        msg = ws.receive_json()
        assert msg["type"] == "error"
        assert msg["status"] == 400

    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"
