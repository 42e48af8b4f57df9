"""FastAPI WebSocket front end."""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Literal, Optional, Set

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

from . import __version__
from .config import Config
from .errors import AgentError, UnknownExecutionError
from .logger import get_logger
from .registry import SessionHandle, SessionRegistry
from .session import SessionStore

_log = get_logger(__name__)

TURN_SHUTDOWN_GRACE = 1.0


class UserMessage(BaseModel):
    """A prompt from the user, optionally for a specific model preset."""
    type: Literal["user_message"]
    message: str
    model: Optional[str] = None


class CodeApproved(BaseModel):
    """Approve a previewed execution, optionally with edited code."""
    type: Literal["code_approved"]
    messageId: str
    code: Optional[str] = None


class CodeRejected(BaseModel):
    """Reject a previewed execution."""
    type: Literal["code_rejected"]
    messageId: str


CLIENT_MESSAGES = {
    "user_message": UserMessage,
    "code_approved": CodeApproved,
    "code_rejected": CodeRejected,
}


class Connection:
    """One WebSocket client and the session it drives."""

    def __init__(self, websocket: WebSocket, registry: SessionRegistry):
        self.websocket = websocket
        self.registry = registry
        self.connection_id = str(uuid.uuid4())
        self.handle: Optional[SessionHandle] = None
        self.tasks: Set[asyncio.Task] = set()

    async def send(self, payload: Dict[str, Any]):
        try:
            await self.websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError) as e:
            _log.debug("Dropping message for closed connection %s: %s", self.connection_id, e)

    async def send_status(self, message: str):
        await self.send({"type": "status", "message": message})

    async def send_preview(self, execution_id: str, code: str):
        await self.send({"type": "code_preview", "code": code, "messageId": execution_id})

    async def send_error(self, message: str):
        await self.send({"type": "error", "message": message})

    def open(self, session_id: Optional[str] = None) -> SessionHandle:
        self.handle = self.registry.open_session(
            self.connection_id,
            session_id=session_id,
            status_callback=self.send_status,
            preview_callback=self.send_preview,
        )
        return self.handle

    async def dispatch(self, data: Any):
        if not isinstance(data, dict) or data.get("type") not in CLIENT_MESSAGES:
            await self.send_error("Invalid message format")
            return
        try:
            message = CLIENT_MESSAGES[data["type"]].model_validate(data)
        except ValidationError as e:
            _log.warning("Rejected client message: %s", e)
            await self.send_error("Invalid message format")
            return

        if isinstance(message, UserMessage):
            task = asyncio.create_task(self.run_turn(message))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)
        elif isinstance(message, CodeApproved):
            self._resolve(message.messageId, approved=True, code=message.code)
        else:
            self._resolve(message.messageId, approved=False)

    def _resolve(self, execution_id: str, approved: bool, code: Optional[str] = None):
        try:
            if approved:
                self.registry.approve(execution_id, code)
            else:
                self.registry.reject(execution_id)
        except UnknownExecutionError as e:
            _log.warning(str(e))
            task = asyncio.create_task(self.send_error("No pending code execution found"))
            self.tasks.add(task)
            task.add_done_callback(self.tasks.discard)

    async def run_turn(self, message: UserMessage):
        if self.handle is None:
            await self.send_error("Session not found")
            return

        _log.info("User message for session %s (model: %s)",
                  self.handle.session_id, message.model or "default")
        try:
            result = await self.handle.agent.chat(message.message, model=message.model)
        except AgentError as e:
            _log.error("Turn failed for session %s: %s", self.handle.session_id, e)
            await self.send_error(str(e))
            return

        if result.cancelled:
            await self.send({"type": "cancelled", "message": result.content})
        elif result.is_html:
            _log.info("Sending HTML result, length: %d", len(result.html))
            await self.send({
                "type": "result",
                "data": {"type": "html", "html": result.html, "content": result.content},
            })
        elif result.content:
            await self.send({"type": "ai_response", "content": result.content})
        else:
            _log.info("Received empty response from the model")

    async def close(self):
        # Turns parked on an approval retract themselves once it is cancelled.
        self.registry.cancel_pending(self.connection_id)
        if self.tasks:
            _, running = await asyncio.wait(set(self.tasks), timeout=TURN_SHUTDOWN_GRACE)
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
        await self.registry.close_connection(self.connection_id)


def create_app(config: Optional[Config] = None,
               registry: Optional[SessionRegistry] = None) -> FastAPI:
    """Build the app; a registry backed by ``config.db_path`` is created when none is given."""
    config = config or Config.load()
    if registry is None:
        registry = SessionRegistry(config, SessionStore(config.db_path))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await registry.close()

    app = FastAPI(title="bb-nrepl-agent", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "model": config.active_model,
            "approval": config.require_approval,
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, session_id: Optional[str] = None):
        await websocket.accept()
        conn = Connection(websocket, registry)
        try:
            handle = conn.open(session_id)
        except AgentError as e:
            await conn.send_error(str(e))
            await websocket.close()
            return

        _log.info("WebSocket client connected, session: %s", handle.session_id)
        await conn.send({"type": "status", "message": "Connected to server",
                         "sessionId": handle.session_id})
        try:
            while True:
                try:
                    data = await websocket.receive_json()
                except ValueError:
                    await conn.send_error("Invalid message format")
                    continue
                await conn.dispatch(data)
        except WebSocketDisconnect:
            _log.info("WebSocket client disconnected, session: %s", handle.session_id)
        finally:
            await conn.close()

    return app


def run_server(config: Config, host: Optional[str] = None, port: Optional[int] = None):
    host = host or config.server_host
    port = port or config.server_port
    _log.info("Serving on ws://%s:%s/ws (model: %s)", host, port, config.active_model)
    uvicorn.run(create_app(config), host=host, port=port,
                log_level="debug" if config.verbose else "info")
