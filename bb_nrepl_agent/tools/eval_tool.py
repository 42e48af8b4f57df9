"""Tool-call executor: run one eval tool call and turn the outcome into a tool message."""

import json
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..config import DEFAULT_TOOL_NAME
from ..errors import ExecutionCancelled, ToolError
from ..llm import ToolCall
from ..logger import get_logger
from ..results import ExecutionResult, ExecutionSuccess, RuntimeFailure, ValidationFailure
from .schemas import CODE_ARGUMENT

_log = get_logger(__name__)

EvalCallback = Callable[[str], Awaitable[ExecutionResult]]

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_EXECUTION_FAILED = "execution_failed"

MAX_FIELD_CHARS = 8000
MAX_LOG_ENTRIES = 200


def validation_guidance(tool_name: str) -> str:
    return ("Code validation detected errors before execution. Please fix the validation "
            f"errors and generate corrected code using {tool_name} again.")


def runtime_guidance(tool_name: str) -> str:
    return ("The code execution failed with an error. Please analyze the error and "
            f"generate corrected code using {tool_name} again.")


def argument_guidance(tool_name: str) -> str:
    return (f"The {tool_name} call could not be decoded. Call {tool_name} again with a JSON "
            f'object of the form {{"{CODE_ARGUMENT}": "<clojure code>"}}.')


def clip_text(text: Optional[str], limit: int = MAX_FIELD_CHARS) -> Optional[str]:
    """Keep the head and tail of oversized text."""
    if text is None or len(text) <= limit:
        return text
    half = limit // 2
    lines_total = text.count("\n") + 1
    return (text[:half]
            + f"\n... [truncated: {lines_total} lines, {len(text):,} chars] ...\n"
            + text[-half:])


def truncate_tool_content(content: Dict[str, Any]) -> Dict[str, Any]:
    """Shrink large string fields so the serialized tool message stays bounded."""
    clipped = dict(content)
    for key in ("error", "stdout", "stderr"):
        if isinstance(clipped.get(key), str):
            clipped[key] = clip_text(clipped[key])
    logs = clipped.get("logs")
    if isinstance(logs, list) and len(logs) > MAX_LOG_ENTRIES:
        clipped["logs"] = logs[-MAX_LOG_ENTRIES:]
    result = clipped.get("result")
    if isinstance(result, dict):
        result = dict(result)
        for key in ("raw", "data", "stdout", "stderr"):
            if isinstance(result.get(key), str):
                result[key] = clip_text(result[key])
        if isinstance(result.get("logs"), list) and len(result["logs"]) > MAX_LOG_ENTRIES:
            result["logs"] = result["logs"][-MAX_LOG_ENTRIES:]
        clipped["result"] = result
    return clipped


class EvalToolExecutor:
    """Maps one tool call to exactly one tool message, or to cancellation.

    ``execute`` never raises for problems the model can fix (unknown tool,
    bad arguments, failing code, unreachable executor); those become tool
    messages. ``ExecutionCancelled`` from the callback is re-raised so the
    orchestrator can withdraw the call.
    """

    def __init__(self, tool_name: str = DEFAULT_TOOL_NAME):
        self.tool_name = tool_name

    async def execute(self, tool_call: Union[ToolCall, Dict[str, Any]],
                      eval_callback: EvalCallback) -> Dict[str, Any]:
        tc = self._coerce_tool_call(tool_call)

        if tc.name != self.tool_name:
            _log.warning("Model requested unknown tool: %s", tc.name)
            return self._message(tc.id, tc.name, {"error": f"Unknown tool: {tc.name}"})

        try:
            code = self.extract_code(tc)
        except ToolError as e:
            _log.warning("Malformed %s arguments: %s", self.tool_name, e)
            return self._message(tc.id, self.tool_name, {
                "status": STATUS_ERROR,
                "error": str(e),
                "message": argument_guidance(self.tool_name),
            })

        _log.info("Model requested evaluation (%d chars)", len(code))
        try:
            result = await eval_callback(code)
        except ExecutionCancelled:
            raise
        except Exception as e:
            _log.error("Evaluation transport failure: %s", e)
            return self._message(tc.id, self.tool_name, {
                "error": str(e) or type(e).__name__,
                "status": STATUS_EXECUTION_FAILED,
            })

        return self._message(tc.id, self.tool_name, self.result_content(result))

    def extract_code(self, tc: ToolCall) -> str:
        try:
            args = tc.parse_arguments()
        except ValueError as e:
            raise ToolError(self.tool_name, f"arguments are not valid JSON: {e}") from e
        code = args.get(CODE_ARGUMENT)
        if not isinstance(code, str) or not code.strip():
            raise ToolError(self.tool_name, f"missing '{CODE_ARGUMENT}' argument")
        return code

    def result_content(self, result: ExecutionResult) -> Dict[str, Any]:
        if isinstance(result, ExecutionSuccess):
            return {
                "status": STATUS_SUCCESS,
                "result": result.to_dict(),
                "logs": [entry.to_dict() for entry in result.logs],
                "executionTime": result.execution_time,
            }

        if isinstance(result, ValidationFailure):
            details = result.to_dict()
            return {
                "status": STATUS_ERROR,
                "error": result.error,
                "message": validation_guidance(self.tool_name),
                "errorDetails": details["errorDetails"],
                "validationErrors": details["validationErrors"],
                "logs": details["logs"],
                "executionTime": result.execution_time,
            }

        if isinstance(result, RuntimeFailure):
            details = result.to_dict()
            content: Dict[str, Any] = {
                "status": STATUS_ERROR,
                "error": result.error,
                "message": runtime_guidance(self.tool_name),
                "errorDetails": details["errorDetails"],
                "logs": details["logs"],
                "executionTime": result.execution_time,
            }
            if result.stdout:
                content["stdout"] = result.stdout
            if result.stderr:
                content["stderr"] = result.stderr
            return content

        raise TypeError(f"Unsupported execution result: {type(result).__name__}")

    @staticmethod
    def _coerce_tool_call(tool_call: Union[ToolCall, Dict[str, Any]]) -> ToolCall:
        if isinstance(tool_call, ToolCall):
            return tool_call
        function = tool_call.get("function") or {}
        return ToolCall(id=tool_call.get("id", ""), name=function.get("name", ""),
                        arguments=function.get("arguments", ""))

    @staticmethod
    def _message(call_id: str, name: str, content: Dict[str, Any]) -> Dict[str, Any]:
        payload = truncate_tool_content(content)
        return {
            "role": "tool",
            "tool_call_id": call_id,
            "name": name,
            "content": json.dumps(payload, ensure_ascii=False, default=str),
        }


def tool_status(message: Dict[str, Any]) -> Optional[str]:
    """``status`` field of a tool message's JSON content, if any."""
    try:
        content = json.loads(message.get("content") or "")
    except (TypeError, ValueError):
        return None
    if isinstance(content, dict):
        return content.get("status")
    return None

