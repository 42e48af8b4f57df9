"""Tests for the WebSocket protocol."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import bb_nrepl_agent.server as server_module
from bb_nrepl_agent.config import Config
from bb_nrepl_agent.registry import SessionRegistry
from bb_nrepl_agent.server import Connection, create_app
from conftest import FakeEvaluator, FakeLLM, final_response, runtime_error, tool_call, tool_response


def _client(store, responses, require_approval=False, results=None):
    config = Config(models=Config.get_default_presets(), require_approval=require_approval)
    llm = FakeLLM(responses)

    def llm_factory(name):
        config.get_preset(name)
        return llm

    registry = SessionRegistry(
        config, store,
        llm_factory=llm_factory,
        evaluator_factory=lambda: FakeEvaluator(list(results or [])),
    )
    return TestClient(create_app(config, registry))


def _connect(client, url="/ws"):
    return client.websocket_connect(url)


def test_health(store):
    with _client(store, [final_response("ok")]) as client:
        body = client.get("/health").json()
    assert body["status"] == "healthy"
    assert body["model"] == "local"


def test_connect_announces_session(store):
    with _client(store, [final_response("ok")]) as client:
        with _connect(client) as ws:
            hello = ws.receive_json()
    assert hello["type"] == "status"
    assert hello["message"] == "Connected to server"
    assert store.session_exists(hello["sessionId"])


def test_resume_session(store):
    sid = store.create_session()
    store.add_message(sid, "user", "earlier")
    with _client(store, [final_response("ok")]) as client:
        with _connect(client, f"/ws?session_id={sid}") as ws:
            assert ws.receive_json()["sessionId"] == sid


def test_session_open_elsewhere_is_refused(store):
    with _client(store, [final_response("ok")]) as client:
        with _connect(client) as first:
            sid = first.receive_json()["sessionId"]
            with _connect(client, f"/ws?session_id={sid}") as second:
                msg = second.receive_json()
    assert msg["type"] == "error"
    assert "already open on another connection" in msg["message"]


def test_html_result(store):
    responses = [tool_response(tool_call("call_1")), final_response("Here: <div>3</div>")]
    with _client(store, responses) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "user_message", "message": "add 1 and 2"})
            msg = ws.receive_json()
    assert msg == {
        "type": "result",
        "data": {"type": "html", "html": "<div>3</div>", "content": "Here: <div>3</div>"},
    }


def test_text_response(store):
    with _client(store, [final_response("plain answer")]) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "user_message", "message": "hi"})
            assert ws.receive_json() == {"type": "ai_response", "content": "plain answer"}


def test_recovery_status_messages(store):
    responses = [
        tool_response(tool_call("call_1", "(foo)")),
        tool_response(tool_call("call_2", "(+ 1 2)")),
        final_response("fixed"),
    ]
    with _client(store, responses, results=[runtime_error()]) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "user_message", "message": "go"})
            messages = [ws.receive_json() for _ in range(3)]
    assert [m["type"] for m in messages] == ["status", "status", "ai_response"]
    assert messages[0]["message"].startswith("Code execution failed")
    assert messages[1]["message"] == "Code executed successfully!"


def test_approval_flow(store):
    responses = [tool_response(tool_call("call_1", "(+ 1 2)")), final_response("done")]
    with _client(store, responses, require_approval=True) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "user_message", "message": "add"})
            preview = ws.receive_json()
            assert preview["type"] == "code_preview"
            assert preview["code"] == "(+ 1 2)"
            assert preview["messageId"].startswith("code_")

            ws.send_json({"type": "code_approved", "messageId": preview["messageId"],
                          "code": "(+ 2 2)"})
            assert ws.receive_json() == {"type": "ai_response", "content": "done"}


def test_rejection_flow(store):
    responses = [tool_response(tool_call("call_1", "(rm-rf)"))]
    with _client(store, responses, require_approval=True) as client:
        with _connect(client) as ws:
            hello = ws.receive_json()
            ws.send_json({"type": "user_message", "message": "clean up"})
            preview = ws.receive_json()
            ws.send_json({"type": "code_rejected", "messageId": preview["messageId"]})
            msg = ws.receive_json()
    assert msg == {"type": "cancelled", "message": "Code execution cancelled by user"}
    assert [m["role"] for m in store.get_session_history(hello["sessionId"])] == ["user"]


@pytest.mark.parametrize("payload", [
    {"type": "bogus"},
    {"type": "user_message"},
    {"type": "code_approved"},
    ["not", "an", "object"],
])
def test_invalid_messages(store, payload):
    with _client(store, [final_response("ok")]) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json(payload)
            assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}


def test_non_json_frame(store):
    with _client(store, [final_response("ok")]) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_text("{not json")
            assert ws.receive_json()["message"] == "Invalid message format"


def test_unknown_execution_id(store):
    with _client(store, [final_response("ok")]) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "code_approved", "messageId": "code_1_nothing"})
            assert ws.receive_json() == {"type": "error",
                                         "message": "No pending code execution found"}


def test_turn_error_is_reported(store):
    with _client(store, [final_response("ok")]) as client:
        with _connect(client) as ws:
            ws.receive_json()
            ws.send_json({"type": "user_message", "message": "hi", "model": "gpt-9"})
            msg = ws.receive_json()
    assert msg["type"] == "error"


class _RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, payload):
        self.sent.append(payload)


class _HangingEvaluator(FakeEvaluator):
    async def evaluate(self, code):
        self.calls.append(code)
        await asyncio.Event().wait()


def _connection(store, require_approval, evaluator_factory=FakeEvaluator):
    config = Config(models=Config.get_default_presets(), require_approval=require_approval)
    llm = FakeLLM([tool_response(tool_call("call_1", "(+ 1 2)")), final_response("3")])
    registry = SessionRegistry(config, store, llm_factory=lambda name: llm,
                               evaluator_factory=evaluator_factory)
    conn = Connection(_RecordingSocket(), registry)
    return conn, conn.open(), registry


class TestConnectionClose:

    @pytest.mark.asyncio
    async def test_pending_approval_turn_is_retracted(self, store):
        conn, handle, registry = _connection(store, require_approval=True)

        await conn.dispatch({"type": "user_message", "message": "add"})
        while not registry.pending_for(conn.connection_id):
            await asyncio.sleep(0)
        await conn.close()

        assert [m["role"] for m in store.get_session_history(handle.session_id)] == ["user"]
        assert handle.agent.conversation == [{"role": "user", "content": "add"}]
        assert registry.get(handle.session_id) is None
        assert handle.evaluator.closed

    @pytest.mark.asyncio
    async def test_running_evaluation_turn_is_retracted(self, store, monkeypatch):
        monkeypatch.setattr(server_module, "TURN_SHUTDOWN_GRACE", 0.01)
        conn, handle, _ = _connection(store, require_approval=False,
                                      evaluator_factory=_HangingEvaluator)

        await conn.dispatch({"type": "user_message", "message": "add"})
        while not handle.evaluator.calls:
            await asyncio.sleep(0)
        await conn.close()

        assert [m["role"] for m in store.get_session_history(handle.session_id)] == ["user"]
        assert not handle.agent.busy
