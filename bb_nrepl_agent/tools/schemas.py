"""Tool JSON Schema definition for the LLM."""

from typing import Dict, Optional

from ..config import DEFAULT_PARAMETER_DESCRIPTION, DEFAULT_TOOL_DESCRIPTION, DEFAULT_TOOL_NAME

CODE_ARGUMENT = "code_string"


def _schema(name: str, description: str, properties: dict,
            required: list) -> dict:
    """Build an OpenAI-compatible function schema."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def build_eval_tool_schema(tool_config: Optional[Dict[str, str]] = None) -> dict:
    """Schema of the single code-evaluation tool exposed to the model."""
    tool_config = tool_config or {}
    return _schema(
        tool_config.get("name") or DEFAULT_TOOL_NAME,
        tool_config.get("description") or DEFAULT_TOOL_DESCRIPTION,
        {CODE_ARGUMENT: {
            "type": "string",
            "description": tool_config.get("parameter_description") or DEFAULT_PARAMETER_DESCRIPTION,
        }},
        [CODE_ARGUMENT],
    )
