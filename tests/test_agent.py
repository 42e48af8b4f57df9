"""Tests for the conversation orchestrator."""

import asyncio
import json

import pytest

from bb_nrepl_agent.agent import (
    STATUS_RECOVERED,
    STATUS_RECOVERY_STARTED,
    Agent,
    TurnOutcome,
    TurnState,
)
from bb_nrepl_agent.errors import (
    ExecutionCancelled,
    IntegrityError,
    IterationLimitError,
    LLMConnectionError,
    RoundLimitError,
    SessionBusyError,
)
from bb_nrepl_agent.results import ExecutionSuccess, ValidationFailure, ValidationIssue
from conftest import FakeEvaluator, FakeLLM, final_response, runtime_error, tool_call, tool_response


def _make_agent(llm, evaluator=None, **kwargs):
    evaluator = evaluator or FakeEvaluator()
    return Agent(llm=llm, evaluate=evaluator.evaluate, **kwargs)


def _roles(messages):
    return [m["role"] for m in messages]


class TestHappyPath:

    @pytest.mark.asyncio
    async def test_tool_round_then_final_html(self):
        llm = FakeLLM([
            tool_response(tool_call("call_1", "(+ 1 2)")),
            final_response("Here you go: <div><p>3</p></div> Enjoy!"),
        ])
        evaluator = FakeEvaluator()
        saved = []
        agent = _make_agent(llm, evaluator,
                            save_callback=lambda role, content, tcs: saved.append(role))

        result = await agent.chat("add one and two")

        assert result.outcome is TurnOutcome.FINAL
        assert result.html == "<div><p>3</p></div>"
        assert result.content == "Here you go: <div><p>3</p></div> Enjoy!"
        assert evaluator.calls == ["(+ 1 2)"]
        assert _roles(agent.conversation) == ["user", "assistant", "tool", "assistant"]
        assert saved == ["user", "assistant", "tool", "assistant"]
        assert agent.state is TurnState.IDLE

    @pytest.mark.asyncio
    async def test_second_request_carries_tool_result(self):
        llm = FakeLLM([
            tool_response(tool_call("call_1")),
            final_response("3"),
        ])
        agent = _make_agent(llm, system_prompt="SYSTEM")

        await agent.chat("add")

        second = llm.requests[1]
        assert _roles(second) == ["system", "user", "assistant", "tool"]
        assert second[0]["content"] == "SYSTEM"
        assert second[2]["tool_calls"][0]["id"] == "call_1"
        tool_msg = second[3]
        assert tool_msg["tool_call_id"] == "call_1"
        assert tool_msg["name"] == "eval_clojure"
        payload = json.loads(tool_msg["content"])
        assert payload["status"] == "success"
        assert payload["result"]["data"] == 3

    @pytest.mark.asyncio
    async def test_plain_text_answer(self):
        agent = _make_agent(FakeLLM([final_response("Just text")]))
        result = await agent.chat("hi")
        assert result.outcome is TurnOutcome.FINAL
        assert result.html is None
        assert result.content == "Just text"

    @pytest.mark.asyncio
    async def test_tool_schema_sent_with_every_request(self):
        llm = FakeLLM([final_response("ok")])
        agent = _make_agent(llm, tool_config={"name": "eval_bb"})
        await agent.chat("hi")
        assert agent.tool_schema["function"]["name"] == "eval_bb"
        assert agent.tool_executor.tool_name == "eval_bb"

    @pytest.mark.asyncio
    async def test_model_override_uses_named_adapter(self):
        default_llm = FakeLLM([final_response("default")])
        other_llm = FakeLLM([final_response("other")])
        picked = []

        def llm_for_model(name):
            picked.append(name)
            return other_llm

        agent = _make_agent(default_llm, llm_for_model=llm_for_model)
        result = await agent.chat("hi", model="deepseek")

        assert result.content == "other"
        assert picked == ["deepseek"]
        assert default_llm.call_count == 0

    @pytest.mark.asyncio
    async def test_sequential_tool_calls_in_one_message(self):
        llm = FakeLLM([
            tool_response(tool_call("call_a", "(def x 1)"), tool_call("call_b", "(inc x)")),
            final_response("done"),
        ])
        evaluator = FakeEvaluator()
        agent = _make_agent(llm, evaluator)

        await agent.chat("go")

        assert evaluator.calls == ["(def x 1)", "(inc x)"]
        assert llm.call_count == 2
        tool_ids = [m["tool_call_id"] for m in agent.conversation if m["role"] == "tool"]
        assert tool_ids == ["call_a", "call_b"]


class TestErrorRecovery:

    @pytest.mark.asyncio
    async def test_iteration_limit_is_fatal_and_resets(self):
        llm = FakeLLM([tool_response(tool_call(f"call_{i}", "(foo)")) for i in range(6)])
        evaluator = FakeEvaluator([runtime_error() for _ in range(6)])
        statuses = []
        agent = _make_agent(llm, evaluator, max_iterations=2, status_callback=statuses.append)

        with pytest.raises(IterationLimitError) as exc_info:
            await agent.chat("call foo")

        assert "Maximum iteration limit (2) reached" in str(exc_info.value)
        assert statuses == [
            STATUS_RECOVERY_STARTED,
            "AI is generating corrected code (attempt 2)...",
            "AI is generating corrected code (attempt 3)...",
            "Maximum iteration limit (2) reached. Unable to fix the error.",
        ]
        assert llm.call_count == 3
        assert not agent.in_error_recovery
        assert agent.iteration_count == 0
        assert not agent.busy

    @pytest.mark.asyncio
    async def test_validation_failure_then_fix(self):
        issue = ValidationIssue(level="error", message="Unmatched bracket", row=1, col=8)
        llm = FakeLLM([
            tool_response(tool_call("call_1", "(+ 1 2")),
            tool_response(tool_call("call_2", "(+ 1 2)"), content="Sorry, fixing the bracket."),
            final_response("<p>3</p>"),
        ])
        evaluator = FakeEvaluator([
            ValidationFailure.from_issues([issue]),
            ExecutionSuccess(value=3, raw="3"),
        ])
        statuses = []

        async def on_status(msg):
            statuses.append(msg)

        agent = _make_agent(llm, evaluator, status_callback=on_status)
        result = await agent.chat("add")

        assert result.html == "<p>3</p>"
        assert statuses == [STATUS_RECOVERY_STARTED, STATUS_RECOVERED]

        first_tool = json.loads(agent.conversation[2]["content"])
        assert first_tool["status"] == "error"
        assert first_tool["validationErrors"][0]["message"] == "Unmatched bracket"
        assert "Line 1, Col 8: Unmatched bracket (error)" in first_tool["error"]

        # commentary on the retry is blanked while recovering
        assert agent.conversation[3]["content"] == ""
        assert not agent.in_error_recovery

    @pytest.mark.asyncio
    async def test_final_answer_during_recovery_resets(self):
        llm = FakeLLM([
            tool_response(tool_call("call_1", "(foo)")),
            final_response("I could not fix it."),
        ])
        agent = _make_agent(llm, FakeEvaluator([runtime_error()]))

        result = await agent.chat("call foo")

        assert result.outcome is TurnOutcome.FINAL
        assert result.content == "I could not fix it."
        assert not agent.in_error_recovery
        assert agent.iteration_count == 0

    @pytest.mark.asyncio
    async def test_transport_failure_does_not_advance_recovery(self):
        llm = FakeLLM([
            tool_response(tool_call("call_1")),
            final_response("executor down"),
        ])
        agent = _make_agent(llm, FakeEvaluator([ConnectionRefusedError("bb not running")]))
        statuses = []
        agent.status_callback = statuses.append

        await agent.chat("go")

        payload = json.loads(agent.conversation[2]["content"])
        assert payload == {"error": "bb not running", "status": "execution_failed"}
        assert statuses == []

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_to_model(self):
        llm = FakeLLM([
            tool_response(tool_call("call_1", name="shell")),
            final_response("ok"),
        ])
        evaluator = FakeEvaluator()
        agent = _make_agent(llm, evaluator)

        await agent.chat("go")

        assert evaluator.calls == []
        assert json.loads(agent.conversation[2]["content"]) == {"error": "Unknown tool: shell"}

    @pytest.mark.asyncio
    async def test_failing_status_callback_does_not_break_turn(self):
        def broken(msg):
            raise RuntimeError("socket gone")

        llm = FakeLLM([
            tool_response(tool_call("call_1", "(foo)")),
            final_response("gave up"),
        ])
        agent = _make_agent(llm, FakeEvaluator([runtime_error()]), status_callback=broken)
        result = await agent.chat("go")
        assert result.content == "gave up"


class TestCancellation:

    @pytest.mark.asyncio
    async def test_rejection_retracts_assistant_message(self):
        llm = FakeLLM([tool_response(tool_call("call_1"), content="Let me check")])
        evaluator = FakeEvaluator()
        retracted = []

        async def reject(code):
            raise ExecutionCancelled()

        agent = _make_agent(llm, evaluator, approval_gate=reject, retract_callback=retracted.append)
        result = await agent.chat("list files")

        assert result.outcome is TurnOutcome.CANCELLED
        assert result.cancelled
        assert result.content == "Code execution cancelled by user"
        assert _roles(agent.conversation) == ["user"]
        assert retracted == [1]
        assert evaluator.calls == []
        assert llm.call_count == 1

    @pytest.mark.asyncio
    async def test_gate_returning_none_cancels(self):
        async def gate(code):
            return None

        agent = _make_agent(FakeLLM([tool_response(tool_call("call_1"))]), approval_gate=gate)
        result = await agent.chat("go")
        assert result.outcome is TurnOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_rejecting_second_call_retracts_whole_turn(self):
        llm = FakeLLM([tool_response(tool_call("call_a"), tool_call("call_b", "(rm)"))])
        retracted = []

        async def gate(code):
            if code == "(rm)":
                raise ExecutionCancelled()
            return code

        agent = _make_agent(llm, approval_gate=gate, retract_callback=retracted.append)
        await agent.chat("go")

        assert _roles(agent.conversation) == ["user"]
        assert retracted == [2]

    @pytest.mark.asyncio
    async def test_cancelled_turn_persists_cleanly(self, store):
        sid = store.create_session()
        llm = FakeLLM([tool_response(tool_call("call_1"))])

        async def reject(code):
            raise ExecutionCancelled()

        agent = _make_agent(
            llm, approval_gate=reject,
            save_callback=lambda role, content, tcs: store.add_message(sid, role, content, tcs),
            retract_callback=lambda n: store.remove_last_messages(sid, n),
        )
        await agent.chat("go")

        assert _roles(store.get_session_history(sid)) == ["user"]

    @pytest.mark.asyncio
    async def test_cancelled_task_retracts_second_call(self):
        llm = FakeLLM([tool_response(tool_call("call_a"), tool_call("call_b", "(hang)"))])
        retracted = []
        started = asyncio.Event()

        async def gate(code):
            if code == "(hang)":
                started.set()
                await asyncio.Event().wait()
            return code

        agent = _make_agent(llm, approval_gate=gate, retract_callback=retracted.append)
        turn = asyncio.create_task(agent.chat("go"))
        await started.wait()
        turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await turn

        assert _roles(agent.conversation) == ["user"]
        assert retracted == [2]
        assert not agent.busy

    @pytest.mark.asyncio
    async def test_edited_code_is_executed(self):
        llm = FakeLLM([tool_response(tool_call("call_1", "(+ 1 2)")), final_response("ok")])
        evaluator = FakeEvaluator()

        async def edit(code):
            return "(+ 40 2)"

        agent = _make_agent(llm, evaluator, approval_gate=edit)
        await agent.chat("go")
        assert evaluator.calls == ["(+ 40 2)"]


class _FixedIdExecutor:
    """Tool executor stub that always answers with the same message."""

    def __init__(self, call_id="call_a", content='{"status": "success"}'):
        self.call_id = call_id
        self.content = content
        self.tool_name = "eval_clojure"

    async def execute(self, tc, callback):
        msg = {"role": "tool", "tool_call_id": self.call_id, "name": "eval_clojure"}
        if self.content is not None:
            msg["content"] = self.content
        return msg


class TestIntegrity:

    @pytest.mark.asyncio
    async def test_duplicate_tool_call_id_rejected(self):
        llm = FakeLLM([tool_response(tool_call("call_a"), tool_call("call_b"))])
        agent = _make_agent(llm, tool_executor=_FixedIdExecutor("call_a"))

        with pytest.raises(IntegrityError, match="Duplicate"):
            await agent.chat("go")

        tool_msgs = [m for m in agent.conversation if m["role"] == "tool"]
        assert len([m for m in tool_msgs if m["tool_call_id"] == "call_a"]) <= 1
        assert llm.call_count == 1

    @pytest.mark.asyncio
    async def test_unknown_tool_call_id_rejected(self):
        llm = FakeLLM([tool_response(tool_call("call_a"))])
        agent = _make_agent(llm, tool_executor=_FixedIdExecutor("ghost"))

        with pytest.raises(IntegrityError, match="sequencing"):
            await agent.chat("go")
        assert _roles(agent.conversation) == ["user"]

    @pytest.mark.asyncio
    async def test_answer_for_earlier_turn_rejected(self):
        llm = FakeLLM([
            tool_response(tool_call("call_old")),
            tool_response(tool_call("call_new")),
        ])
        executor = _FixedIdExecutor("call_old")
        agent = _make_agent(llm, tool_executor=executor)
        with pytest.raises(IntegrityError, match="earlier assistant turn"):
            await agent.chat("go")

    @pytest.mark.asyncio
    async def test_non_json_content_rejected(self):
        llm = FakeLLM([tool_response(tool_call("call_a"))])
        agent = _make_agent(llm, tool_executor=_FixedIdExecutor("call_a", content="not json"))
        with pytest.raises(IntegrityError, match="not valid JSON"):
            await agent.chat("go")

    @pytest.mark.asyncio
    async def test_missing_tool_call_id_rejected(self):
        llm = FakeLLM([tool_response(tool_call("call_a"))])
        agent = _make_agent(llm, tool_executor=_FixedIdExecutor(""))
        with pytest.raises(IntegrityError, match="missing tool_call_id"):
            await agent.chat("go")


class TestTurnControl:

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        agent = _make_agent(FakeLLM([LLMConnectionError("Cannot connect")]))
        with pytest.raises(LLMConnectionError):
            await agent.chat("hi")
        assert not agent.busy
        assert agent.state is TurnState.IDLE

    @pytest.mark.asyncio
    async def test_round_limit(self):
        llm = FakeLLM([tool_response(tool_call(f"call_{i}")) for i in range(5)])
        agent = _make_agent(llm, max_llm_rounds=2)
        with pytest.raises(RoundLimitError):
            await agent.chat("loop forever")
        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_busy_session_rejects_second_message(self):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_gate(code):
            entered.set()
            await release.wait()
            return code

        llm = FakeLLM([tool_response(tool_call("call_1")), final_response("done")])
        agent = _make_agent(llm, approval_gate=slow_gate)

        first = asyncio.create_task(agent.chat("first"))
        await entered.wait()
        assert agent.busy
        assert agent.state is TurnState.AWAITING_TOOL

        with pytest.raises(SessionBusyError):
            await agent.chat("second")

        release.set()
        result = await first
        assert result.content == "done"
        assert not agent.busy

    def test_hydration_sanitizes_history(self):
        history = [
            {"role": "system", "content": "old prompt"},
            {"role": "user", "content": "hi"},
            {"role": "tool", "tool_call_id": "orphan", "content": "{}"},
            {"role": "assistant", "content": "hello"},
        ]
        agent = _make_agent(FakeLLM([final_response("x")]), initial_history=history)
        assert _roles(agent.conversation) == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_stats_and_reset(self):
        llm = FakeLLM([tool_response(tool_call("call_1")), final_response("ok")])
        agent = _make_agent(llm)
        await agent.chat("go")

        stats = agent.get_stats()
        assert stats["messages"] == 4
        assert stats["user_messages"] == 1
        assert stats["tool_calls"] == 1

        agent.clear_history()
        assert agent.conversation == []
