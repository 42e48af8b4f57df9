"""Shared fixtures for bb-nrepl-agent tests."""

import json
import os
from typing import Any, Dict, List, Optional

import pytest
import yaml

from bb_nrepl_agent import config as config_module
from bb_nrepl_agent.llm import LLMResponse, ToolCall
from bb_nrepl_agent.results import ExecutionSuccess, RuntimeFailure
from bb_nrepl_agent.session import SessionStore


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch):
    """Keep Config.load away from the real ~/.bb-nrepl-agent."""
    home = tmp_path / "home"
    monkeypatch.setattr(config_module, "CONFIG_DIR", home)
    monkeypatch.setattr(config_module, "CONFIG_FILE", home / "config.yml")
    for var in ("AI_DEFAULT_MODEL", "ENABLE_CODE_VALIDATION", "CLJ_KONDO_PATH",
                "BABASHKA_PATH", "HOST", "PORT", "AGENT_DB_PATH", "AGENT_VERBOSE",
                "AGENT_REQUIRE_APPROVAL"):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    project = tmp_path / "project"
    project.mkdir()
    os.chdir(project)
    yield project
    os.chdir(orig)


@pytest.fixture
def sample_config_data():
    """Minimal .agent.conf.yml data dict."""
    return {
        "active-model": "local",
        "max-iterations": 3,
        "max-llm-rounds": 10,
        "require-approval": False,
        "eval-timeout": 20,
        "babashka-path": "/opt/bb",
        "verbose": False,
        "tool": {
            "name": "eval_clojure",
            "description": "Evaluate Clojure in Babashka",
            "parameter-description": "Clojure source",
        },
        "code-validation": {"enabled": False, "clj-kondo-path": "/opt/clj-kondo"},
        "server": {"host": "0.0.0.0", "port": 4000},
        "models": {
            "local": {
                "provider": "local",
                "model": "openai/model",
                "description": "Local test model",
                "temperature": 0.0,
                "max-tokens": 2048,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            }
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".agent.conf.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


def tool_call(call_id: str, code: str = "(+ 1 2)", name: str = "eval_clojure") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps({"code_string": code}))


def tool_response(*calls: ToolCall, content: str = "") -> LLMResponse:
    return LLMResponse(content=content, tool_calls=list(calls))


def final_response(content: str) -> LLMResponse:
    return LLMResponse(content=content)


class FakeLLM:
    """LLM stub that replays pre-set responses and records every request."""

    def __init__(self, responses: List[Any]):
        self._responses = list(responses)
        self.requests: List[List[Dict[str, Any]]] = []
        self.model = "test-model"

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def chat(self, messages, tools=None):
        self.requests.append([dict(m) for m in messages])
        idx = min(len(self.requests) - 1, len(self._responses) - 1)
        response = self._responses[idx]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEvaluator:
    """Evaluator stub returning queued results; defaults to success."""

    def __init__(self, results: Optional[List[Any]] = None):
        self._results = list(results or [])
        self.calls: List[str] = []
        self.closed = False

    async def evaluate(self, code: str):
        self.calls.append(code)
        if self._results:
            result = self._results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ExecutionSuccess(value=3, raw="3", execution_time=1)

    async def close(self):
        self.closed = True


def runtime_error(message: str = "Unable to resolve symbol: foo") -> RuntimeFailure:
    return RuntimeFailure(error=message, execution_time=2)


@pytest.fixture
def store():
    s = SessionStore()
    yield s
    s.close()
