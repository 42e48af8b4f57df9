"""Conversation orchestrator: the request / approve / execute / recover loop."""

import asyncio
import inspect
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import DEFAULT_SYSTEM_PROMPT
from .errors import (
    ExecutionCancelled,
    IntegrityError,
    IterationLimitError,
    RoundLimitError,
    SessionBusyError,
)
from .history import find_parent_assistant_index, last_assistant_with_tool_calls, sanitize_history
from .html_extract import classify_answer
from .llm import LLMAdapter, LLMResponse
from .logger import get_logger
from .results import ExecutionResult
from .tools.eval_tool import STATUS_ERROR, STATUS_SUCCESS, EvalToolExecutor, tool_status
from .tools.schemas import build_eval_tool_schema

_log = get_logger(__name__)

STATUS_RECOVERY_STARTED = "Code execution failed. AI is analyzing the error and generating a fix..."
STATUS_RECOVERY_ATTEMPT = "AI is generating corrected code (attempt {n})..."
STATUS_RECOVERED = "Code executed successfully!"

EvaluateFn = Callable[[str], Awaitable[ExecutionResult]]
ApprovalGate = Callable[[str], Awaitable[Optional[str]]]
SaveCallback = Callable[[str, Optional[str], Optional[List[Dict[str, Any]]]], Any]
StatusCallback = Callable[[str], Any]
RetractCallback = Callable[[int], Any]


class TurnState(Enum):
    IDLE = "idle"
    AWAITING_LLM = "awaiting_llm"
    AWAITING_TOOL = "awaiting_tool"
    DONE = "done"


class TurnOutcome(Enum):
    FINAL = "final"
    CANCELLED = "cancelled"


@dataclass
class TurnResult:
    outcome: TurnOutcome
    content: Optional[str] = None
    html: Optional[str] = None

    @property
    def is_html(self) -> bool:
        return self.html is not None

    @property
    def cancelled(self) -> bool:
        return self.outcome is TurnOutcome.CANCELLED


@dataclass
class ErrorRecoveryState:
    in_error_recovery: bool = False
    iteration_count: int = 0
    max_iterations: int = 5

    def reset(self):
        self.in_error_recovery = False
        self.iteration_count = 0


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class Agent:
    """Owns one session's conversation and drives it turn by turn.

    A turn starts with ``chat()`` and ends with a final answer, a
    cancellation, or an exception (transport, integrity or iteration limit).
    Only one turn may run at a time; a second ``chat()`` while one is in
    flight raises ``SessionBusyError``.
    """

    def __init__(self, llm: LLMAdapter, evaluate: EvaluateFn,
                 system_prompt: str = DEFAULT_SYSTEM_PROMPT,
                 tool_config: Optional[Dict[str, str]] = None,
                 max_iterations: int = 5,
                 max_llm_rounds: int = 25,
                 approval_gate: Optional[ApprovalGate] = None,
                 save_callback: Optional[SaveCallback] = None,
                 status_callback: Optional[StatusCallback] = None,
                 retract_callback: Optional[RetractCallback] = None,
                 initial_history: Optional[List[Dict[str, Any]]] = None,
                 llm_for_model: Optional[Callable[[str], LLMAdapter]] = None,
                 tool_executor: Optional[EvalToolExecutor] = None,
                 session_id: Optional[str] = None):
        self.llm = llm
        self.evaluate = evaluate
        self.system_prompt = system_prompt
        self.tool_schema = build_eval_tool_schema(tool_config)
        self.tool_name = self.tool_schema["function"]["name"]
        self.tool_executor = tool_executor or EvalToolExecutor(self.tool_name)
        self.max_llm_rounds = max(1, int(max_llm_rounds))
        self.approval_gate = approval_gate
        self.save_callback = save_callback
        self.status_callback = status_callback
        self.retract_callback = retract_callback
        self.llm_for_model = llm_for_model
        self.session_id = session_id
        self.recovery = ErrorRecoveryState(max_iterations=max(1, int(max_iterations)))
        self.state = TurnState.IDLE
        self.pending_tool_calls = 0
        self.total_tokens = 0
        self._busy = False

        self.conversation: List[Dict[str, Any]] = []
        if initial_history:
            self.conversation = sanitize_history(initial_history)
            removed = len(initial_history) - len(self.conversation)
            if removed:
                _log.info("Hydrated history for %s: removed %d invalid message(s)",
                          session_id or "session", removed)

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def in_error_recovery(self) -> bool:
        return self.recovery.in_error_recovery

    @property
    def iteration_count(self) -> int:
        return self.recovery.iteration_count

    async def chat(self, user_message: str, model: Optional[str] = None) -> TurnResult:
        if self._busy:
            raise SessionBusyError(self.session_id)
        self._busy = True
        try:
            return await self._run_turn(user_message, model)
        finally:
            self._busy = False
            self.pending_tool_calls = 0
            self.state = TurnState.IDLE

    async def _run_turn(self, user_message: str, model: Optional[str]) -> TurnResult:
        llm = self._select_llm(model)

        self.conversation.append({"role": "user", "content": user_message})
        await self._save("user", user_message, None)

        for _ in range(self.max_llm_rounds):
            self.state = TurnState.AWAITING_LLM
            messages = self._prepare_messages()
            response = await llm.chat(messages, tools=[self.tool_schema])

            if response.usage:
                self.total_tokens += response.usage.get("total_tokens", 0)

            if response.has_tool_calls():
                cancel_reason = await self._handle_tool_calls(response)
                if cancel_reason is not None:
                    _log.info("Turn cancelled: %s", cancel_reason)
                    return TurnResult(TurnOutcome.CANCELLED, content=cancel_reason)
                continue

            return await self._finish(response)

        self.recovery.reset()
        raise RoundLimitError(self.max_llm_rounds)

    def _select_llm(self, model: Optional[str]) -> LLMAdapter:
        if model and self.llm_for_model is not None:
            return self.llm_for_model(model)
        return self.llm

    def _prepare_messages(self) -> List[Dict[str, Any]]:
        """System prompt plus the sanitized conversation."""
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(sanitize_history(self.conversation))
        return messages

    # ── Tool calls ─────────────────────────────

    async def _handle_tool_calls(self, response: LLMResponse) -> Optional[str]:
        """Run every tool call of ``response``.

        Returns the cancellation reason when the user rejected an execution,
        otherwise ``None`` once all calls have resolved.
        """
        tc_raw = [tc.to_dict() for tc in response.tool_calls]
        content = response.content
        if self.recovery.in_error_recovery and content:
            _log.info("Suppressing commentary during error recovery: %s", content[:100])
            content = ""

        assistant_index = len(self.conversation)
        self.conversation.append({"role": "assistant", "content": content, "tool_calls": tc_raw})
        await self._save("assistant", content, tc_raw)
        persisted = 1

        self.state = TurnState.AWAITING_TOOL
        self.pending_tool_calls = len(response.tool_calls)

        for tc in response.tool_calls:
            try:
                result = await self.tool_executor.execute(tc, self._evaluate_with_approval)
            except ExecutionCancelled as e:
                await self._retract(assistant_index, persisted)
                return e.reason
            except asyncio.CancelledError:
                _log.info("Turn task cancelled while awaiting a tool call")
                await self._retract(assistant_index, persisted)
                raise

            try:
                self._check_tool_result(result, assistant_index)
            except IntegrityError:
                await self._retract(assistant_index, persisted)
                raise

            self.conversation.append(result)
            await self._save("tool", json.dumps(result, ensure_ascii=False), None)
            persisted += 1
            self.pending_tool_calls -= 1

            try:
                await self._track_recovery(result)
            except IterationLimitError:
                if self.pending_tool_calls:
                    await self._retract(assistant_index, persisted)
                raise

        return None

    async def _evaluate_with_approval(self, code: str) -> ExecutionResult:
        if self.approval_gate is not None:
            approved = await self.approval_gate(code)
            if approved is None:
                raise ExecutionCancelled()
            if approved != code:
                _log.info("Executing user-edited code")
            code = approved or code
        return await self.evaluate(code)

    def _check_tool_result(self, result: Any, assistant_index: int):
        """Reject tool messages that would corrupt the pairing invariant."""
        if not isinstance(result, dict) or result.get("role") != "tool":
            raise IntegrityError("Invalid tool result format")

        call_id = result.get("tool_call_id")
        if not call_id:
            raise IntegrityError("Tool result missing tool_call_id")

        latest = last_assistant_with_tool_calls(self.conversation)
        parent = find_parent_assistant_index(self.conversation, call_id, len(self.conversation) - 1)
        if parent is None:
            raise IntegrityError(f"Tool message sequencing error: unknown tool_call_id {call_id}",
                                 tool_call_id=call_id)
        if parent != latest or parent != assistant_index:
            raise IntegrityError(
                f"Tool message sequencing error: {call_id} belongs to an earlier assistant turn",
                tool_call_id=call_id,
            )

        if result.get("content"):
            try:
                json.loads(result["content"])
            except (TypeError, ValueError) as e:
                raise IntegrityError(
                    f"Tool response content is not valid JSON: {e}", tool_call_id=call_id
                ) from e

        for msg in self.conversation[assistant_index + 1:]:
            if msg.get("role") == "tool" and msg.get("tool_call_id") == call_id:
                raise IntegrityError(f"Duplicate tool message for tool_call_id {call_id}",
                                     tool_call_id=call_id)

    async def _track_recovery(self, result: Dict[str, Any]):
        status = tool_status(result)
        rec = self.recovery

        if status == STATUS_ERROR:
            if not rec.in_error_recovery:
                rec.in_error_recovery = True
                rec.iteration_count = 1
                await self._notify(STATUS_RECOVERY_STARTED)
            else:
                rec.iteration_count += 1
                await self._notify(STATUS_RECOVERY_ATTEMPT.format(n=rec.iteration_count))

            if rec.iteration_count > rec.max_iterations:
                error = IterationLimitError(rec.max_iterations)
                _log.error(str(error))
                await self._notify(str(error))
                rec.reset()
                raise error

        elif status == STATUS_SUCCESS and rec.in_error_recovery:
            rec.reset()
            await self._notify(STATUS_RECOVERED)

    async def _retract(self, assistant_index: int, persisted: int):
        """Withdraw the assistant tool-call message and everything after it."""
        removed = len(self.conversation) - assistant_index
        del self.conversation[assistant_index:]
        _log.info("Retracted %d message(s) from the aborted tool-call turn", removed)
        if self.retract_callback is not None:
            await _maybe_await(self.retract_callback(persisted))

    # ── Final answer ───────────────────────────

    async def _finish(self, response: LLMResponse) -> TurnResult:
        content = response.content
        self.conversation.append({"role": "assistant", "content": content})
        await self._save("assistant", content, None)

        if self.recovery.in_error_recovery:
            _log.warning("Final response arrived during error recovery; the model gave up on a fix.")
            self.recovery.reset()

        self.state = TurnState.DONE
        answer = classify_answer(content)
        return TurnResult(TurnOutcome.FINAL, content=content, html=answer.html)

    # ── Callbacks ──────────────────────────────

    async def _save(self, role: str, content: Optional[str],
                    tool_calls: Optional[List[Dict[str, Any]]]):
        if self.save_callback is not None:
            await _maybe_await(self.save_callback(role, content, tool_calls))

    async def _notify(self, message: str):
        if self.status_callback is None:
            return
        try:
            await _maybe_await(self.status_callback(message))
        except Exception as e:
            _log.warning("Status callback failed: %s", e)

    def get_stats(self) -> Dict:
        user_msgs = sum(1 for m in self.conversation if m.get("role") == "user")
        tool_calls = sum(len(m.get("tool_calls") or [])
                         for m in self.conversation if m.get("role") == "assistant")
        return {
            "messages": len(self.conversation),
            "user_messages": user_msgs,
            "tool_calls": tool_calls,
            "total_tokens": self.total_tokens,
            "in_error_recovery": self.recovery.in_error_recovery,
            "iteration_count": self.recovery.iteration_count,
        }

    def reset(self):
        self.conversation.clear()
        self.total_tokens = 0
        self.recovery.reset()

    clear_history = reset
