"""History sanitizer: keep tool_call/tool_result pairing protocol-valid."""

from typing import Any, Dict, List, Optional

from .logger import get_logger

_log = get_logger(__name__)


def assistant_tool_call_ids(msg: Dict[str, Any]) -> List[str]:
    """Return tool_call ids from an assistant message."""
    if msg.get("role") != "assistant":
        return []
    tool_calls = msg.get("tool_calls")
    if not isinstance(tool_calls, list):
        return []

    call_ids: List[str] = []
    for tc in tool_calls:
        if isinstance(tc, dict):
            call_id = tc.get("id")
            if call_id:
                call_ids.append(call_id)
    return call_ids


def find_parent_assistant_index(history: List[Dict[str, Any]], tool_call_id: str,
                                before_index: int) -> Optional[int]:
    """Find the assistant message index that created a given tool_call id."""
    if not tool_call_id:
        return None

    for idx in range(min(before_index, len(history) - 1), -1, -1):
        if tool_call_id in assistant_tool_call_ids(history[idx]):
            return idx
    return None


def last_assistant_with_tool_calls(history: List[Dict[str, Any]]) -> Optional[int]:
    for idx in range(len(history) - 1, -1, -1):
        msg = history[idx]
        if msg.get("role") == "assistant" and msg.get("tool_calls"):
            return idx
    return None


def sanitize_history(history: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Return a copy of ``history`` that the chat-completion protocol accepts.

    Walks left to right. User messages and plain assistant messages pass
    through. An assistant message with tool calls passes through and then
    consumes the tool messages that immediately follow it, keeping one per
    call id; unknown ids and repeats are dropped. Tool messages outside such
    a run, and any other role, are dropped. The input is not modified and the
    result is a fixed point: ``sanitize_history(sanitize_history(h)) ==
    sanitize_history(h)``.
    """
    if not history:
        return []

    sanitized: List[Dict[str, Any]] = []
    i = 0
    total = len(history)

    while i < total:
        msg = history[i]
        role = msg.get("role")

        if role == "user" or (role == "assistant" and not msg.get("tool_calls")):
            sanitized.append(msg)
            i += 1
            continue

        if role == "assistant":
            sanitized.append(msg)
            i += 1
            pending = set(assistant_tool_call_ids(msg))
            answered = set()
            while i < total and history[i].get("role") == "tool":
                tool_msg = history[i]
                call_id = tool_msg.get("tool_call_id")
                if call_id in pending and call_id not in answered:
                    sanitized.append(tool_msg)
                    answered.add(call_id)
                elif call_id in answered:
                    _log.warning("Removing duplicate tool message with tool_call_id: %s", call_id)
                else:
                    _log.warning("Removing orphaned tool message with tool_call_id: %s", call_id)
                i += 1
            continue

        if role == "tool":
            _log.warning("Removing orphaned tool message with tool_call_id: %s",
                         msg.get("tool_call_id"))
        else:
            _log.warning("Skipping unexpected message type: %s", role)
        i += 1

    dropped = total - len(sanitized)
    if dropped:
        _log.info("Sanitized conversation history: removed %d message(s)", dropped)
    return sanitized
