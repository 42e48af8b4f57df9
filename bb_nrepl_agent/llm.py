"""LLM adapter via litellm."""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import litellm

from .errors import InvalidResponseError, LLMConnectionError
from .logger import get_logger

litellm.suppress_debug_info = True

_log = get_logger(__name__)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text, exactly as the model produced it

    def parse_arguments(self) -> Dict[str, Any]:
        """Decode the argument payload; raises ``ValueError`` when malformed."""
        args = json.loads(self.arguments or "")
        if not isinstance(args, dict):
            raise ValueError("tool arguments must be a JSON object")
        return args

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "type": "function",
                "function": {"name": self.name, "arguments": self.arguments}}


@dataclass
class LLMResponse:
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    usage: Optional[Dict] = None

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class LLMAdapter:
    """Async chat-completion client. Passes api_key/api_base directly to
    litellm, avoiding env-var pollution when switching between presets."""

    def __init__(self, model: str, temperature: float = 0.7,
                 max_tokens: int = 4096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key

    def build_request(self, messages: List[Dict[str, Any]],
                      tools: Optional[List[Dict]] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model, "messages": messages,
            "temperature": self.temperature, "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    async def chat(self, messages: List[Dict[str, Any]],
                   tools: Optional[List[Dict]] = None) -> LLMResponse:
        kwargs = self.build_request(messages, tools)
        _log.info("Requesting %s with %d message(s)", self.model, len(messages))

        try:
            response = await litellm.acompletion(**kwargs)
        except litellm.exceptions.AuthenticationError as e:
            raise LLMConnectionError(f"Auth failed. Check API key.\n{e}") from e
        except litellm.exceptions.APIConnectionError as e:
            raise LLMConnectionError(
                f"Cannot connect: model={self.model}, base={self.api_base or 'default'}\n{e}"
            ) from e
        except Exception as e:
            raise LLMConnectionError(f"LLM error: {type(e).__name__}: {e}") from e

        return self.parse_response(response)

    @staticmethod
    def parse_response(response: Any) -> LLMResponse:
        choices = getattr(response, "choices", None)
        if not choices:
            raise InvalidResponseError("Invalid AI response format: no choices")
        msg = getattr(choices[0], "message", None)
        if msg is None:
            raise InvalidResponseError("Invalid AI response format: no message")

        tool_calls = None
        if getattr(msg, "tool_calls", None):
            tool_calls = []
            for tc in msg.tool_calls:
                arguments = tc.function.arguments
                if not isinstance(arguments, str):
                    arguments = json.dumps(arguments)
                tool_calls.append(ToolCall(id=tc.id, name=tc.function.name, arguments=arguments))

        usage = None
        raw_usage = getattr(response, "usage", None)
        if raw_usage:
            usage = {"prompt_tokens": raw_usage.prompt_tokens,
                     "completion_tokens": raw_usage.completion_tokens,
                     "total_tokens": raw_usage.total_tokens}

        return LLMResponse(content=msg.content, tool_calls=tool_calls, usage=usage)
