"""Session registry: live agents per connection and pending code approvals."""

import asyncio
import inspect
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .agent import Agent, StatusCallback
from .config import Config
from .errors import ExecutionCancelled, SessionBusyError, SessionInUseError, UnknownExecutionError
from .llm import LLMAdapter
from .logger import get_logger
from .session import SessionStore
from .tools.executor import BabashkaExecutor, ReplEvaluator
from .tools.validator import CljKondoValidator

_log = get_logger(__name__)

CONNECTION_CLOSED = "Connection closed"

PreviewCallback = Callable[[str, str], Any]


def new_execution_id() -> str:
    return f"code_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass
class PendingExecution:
    execution_id: str
    code: str
    connection_id: str
    future: asyncio.Future
    created_at: float = field(default_factory=time.time)

    @property
    def resolved(self) -> bool:
        return self.future.done()


@dataclass
class SessionHandle:
    session_id: str
    connection_id: str
    agent: Agent
    evaluator: Any


class SessionRegistry:
    """Owns every open session and every code execution awaiting approval.

    Sessions belong to a connection; closing the connection drops its agents
    from memory (persisted history stays in the store) and cancels whatever
    executions it still had pending.
    """

    def __init__(self, config: Config, store: SessionStore,
                 llm_factory: Optional[Callable[[Optional[str]], LLMAdapter]] = None,
                 evaluator_factory: Optional[Callable[[], Any]] = None):
        self.config = config
        self.store = store
        self.llm_factory = llm_factory or self.get_llm
        self.evaluator_factory = evaluator_factory or self._build_evaluator
        self._llms: Dict[str, LLMAdapter] = {}
        self._sessions: Dict[str, SessionHandle] = {}
        self._pending: Dict[str, PendingExecution] = {}

    # ── Factories ──────────────────────────────

    def get_llm(self, name: Optional[str] = None) -> LLMAdapter:
        """Adapter for a model preset, created once per preset name."""
        name = name or self.config.active_model
        if name not in self._llms:
            preset = self.config.get_preset(name)
            self._llms[name] = LLMAdapter(**preset.get_llm_kwargs())
        return self._llms[name]

    def _build_evaluator(self) -> ReplEvaluator:
        validator = None
        if self.config.code_validation_enabled:
            validator = CljKondoValidator(self.config.clj_kondo_path)
        executor = BabashkaExecutor(self.config.babashka_path, timeout=self.config.eval_timeout)
        return ReplEvaluator(executor, validator)

    # ── Sessions ───────────────────────────────

    def open_session(self, connection_id: str, session_id: Optional[str] = None,
                     status_callback: Optional[StatusCallback] = None,
                     preview_callback: Optional[PreviewCallback] = None) -> SessionHandle:
        """Resume ``session_id`` when the store knows it, otherwise start a new session.

        A session lives on one connection at a time: opening it from another
        connection raises ``SessionInUseError``; reopening it on its own
        connection returns the live handle.
        """
        existing = self._sessions.get(session_id) if session_id else None
        if existing is not None:
            if existing.connection_id != connection_id:
                raise SessionInUseError(session_id)
            if existing.agent.busy:
                raise SessionBusyError(session_id)
            return existing

        history = None
        if session_id and self.store.session_exists(session_id):
            history = self.store.get_session_history(session_id)
            _log.info("Resuming session %s (%d stored messages)", session_id, len(history))
        else:
            if session_id:
                _log.info("Unknown session %s; starting a new one", session_id)
            session_id = self.store.create_session()
        self.store.touch(session_id)

        approval_gate = None
        if self.config.require_approval:
            async def approval_gate(code: str) -> str:
                return await self.request_approval(connection_id, code, preview_callback)

        sid = session_id
        evaluator = self.evaluator_factory()
        agent = Agent(
            llm=self.llm_factory(None),
            evaluate=evaluator.evaluate,
            system_prompt=self.config.build_system_prompt(),
            tool_config=self.config.tool_config(),
            max_iterations=self.config.max_iterations,
            max_llm_rounds=self.config.max_llm_rounds,
            approval_gate=approval_gate,
            save_callback=lambda role, content, tool_calls: self.store.add_message(
                sid, role, content, tool_calls),
            status_callback=status_callback,
            retract_callback=lambda count: self.store.remove_last_messages(sid, count),
            initial_history=history,
            llm_for_model=self.llm_factory,
            session_id=sid,
        )
        handle = SessionHandle(session_id=sid, connection_id=connection_id,
                               agent=agent, evaluator=evaluator)
        self._sessions[sid] = handle
        return handle

    def get(self, session_id: str) -> Optional[SessionHandle]:
        return self._sessions.get(session_id)

    def sessions_for(self, connection_id: str) -> List[SessionHandle]:
        return [h for h in self._sessions.values() if h.connection_id == connection_id]

    def cancel_pending(self, connection_id: str, reason: str = CONNECTION_CLOSED) -> int:
        """Fail every execution still awaiting approval on ``connection_id``."""
        pending = self.pending_for(connection_id)
        for item in pending:
            self._resolve(item.execution_id, error=ExecutionCancelled(reason))
        return len(pending)

    async def close_connection(self, connection_id: str):
        self.cancel_pending(connection_id)

        for handle in self.sessions_for(connection_id):
            self._sessions.pop(handle.session_id, None)
            await self._close_evaluator(handle.evaluator)
            _log.info("Closed session %s", handle.session_id)

    async def close(self):
        for connection_id in {h.connection_id for h in self._sessions.values()}:
            await self.close_connection(connection_id)
        for pending in list(self._pending.values()):
            self._resolve(pending.execution_id, error=ExecutionCancelled(CONNECTION_CLOSED))

    @staticmethod
    async def _close_evaluator(evaluator: Any):
        close = getattr(evaluator, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ── Pending executions ─────────────────────

    async def request_approval(self, connection_id: str, code: str,
                               preview_callback: Optional[PreviewCallback] = None) -> str:
        """Register ``code`` for approval and wait for the user's decision.

        Returns the approved (possibly edited) code. Raises
        ``ExecutionCancelled`` when the user rejects it or the connection closes.
        """
        pending = PendingExecution(
            execution_id=new_execution_id(),
            code=code,
            connection_id=connection_id,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[pending.execution_id] = pending
        try:
            if preview_callback is not None:
                result = preview_callback(pending.execution_id, code)
                if inspect.isawaitable(result):
                    await result
            return await pending.future
        finally:
            self._pending.pop(pending.execution_id, None)

    def approve(self, execution_id: str, edited_code: Optional[str] = None):
        pending = self._get_pending(execution_id)
        code = edited_code if edited_code else pending.code
        self._resolve(execution_id, result=code)

    def reject(self, execution_id: str, reason: str = "Code execution cancelled by user"):
        self._get_pending(execution_id)
        self._resolve(execution_id, error=ExecutionCancelled(reason))

    def pending_for(self, connection_id: str) -> List[PendingExecution]:
        return [p for p in self._pending.values() if p.connection_id == connection_id]

    def _get_pending(self, execution_id: str) -> PendingExecution:
        pending = self._pending.get(execution_id)
        if pending is None or pending.resolved:
            raise UnknownExecutionError(execution_id)
        return pending

    def _resolve(self, execution_id: str, result: Optional[str] = None,
                 error: Optional[BaseException] = None):
        pending = self._pending.pop(execution_id, None)
        if pending is None or pending.resolved:
            return
        if error is not None:
            pending.future.set_exception(error)
        else:
            pending.future.set_result(result)
