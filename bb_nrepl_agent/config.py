"""
Configuration: model presets, prompts, tool wording and runtime knobs.

Loading priority:
  1. Explicit --config path
  2. Project dir .agent.conf.yml
  3. Global ~/.bb-nrepl-agent/config.yml

.env files (global dir, then project dir) are loaded first and never
override variables already set. Environment overrides are applied last:
  AI_<PRESET>_ENDPOINT / _API_KEY / _MODEL / _TEMPERATURE / _MAX_TOKENS,
  AI_DEFAULT_MODEL, ENABLE_CODE_VALIDATION, CLJ_KONDO_PATH, BABASHKA_PATH,
  HOST, PORT, AGENT_VERBOSE, AGENT_REQUIRE_APPROVAL, AGENT_DB_PATH.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .logger import get_logger

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".bb-nrepl-agent"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".agent.conf.yml"

DEFAULT_SYSTEM_PROMPT = (
    "You are a Clojure expert with deep knowledge of Babashka and its libraries. "
    "You have access to a single powerful tool: eval_clojure, which can execute any "
    "Clojure code. When the user asks you to do something, analyze the task and write "
    "Clojure code to accomplish it. You can use Babashka libraries like babashka.fs for "
    "file operations, babashka.http-client for HTTP requests, and any other "
    "Clojure/Babashka functionality. Write complete, working Clojure code that returns "
    "useful results."
)
DEFAULT_TOOL_NAME = "eval_clojure"
DEFAULT_TOOL_DESCRIPTION = (
    "Evaluates Clojure code in a Babashka session. Use this to execute any Clojure code, "
    "including file operations, HTTP requests, data processing, etc. The code should be a "
    "complete Clojure expression that returns a value. You can use Babashka libraries like "
    "babashka.fs, babashka.http-client, etc."
)
DEFAULT_PARAMETER_DESCRIPTION = (
    "The Clojure code to evaluate. Should be a complete expression that returns a value."
)

_ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "bool"
    default: Any
    validator: Optional[Callable[[Any], tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    """Validate integer within range."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _validate_non_empty(value: Any) -> tuple[bool, str, str]:
    text = str(value or "").strip()
    if not text:
        return False, "", "Must not be empty"
    return True, text, ""


CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    "active-model": ConfigFieldSpec(
        key="active-model",
        field_name="active_model",
        description="Model preset used when a message does not name one",
        value_type="str",
        default="local",
        validator=None,  # Validated against available models separately
    ),
    "max-iterations": ConfigFieldSpec(
        key="max-iterations",
        field_name="max_iterations",
        description="Consecutive failed evaluations tolerated before a turn fails",
        value_type="int",
        default=5,
        validator=lambda v: _validate_int_range(v, 1, 50),
    ),
    "max-llm-rounds": ConfigFieldSpec(
        key="max-llm-rounds",
        field_name="max_llm_rounds",
        description="Upper bound on chat-completion requests per turn",
        value_type="int",
        default=25,
        validator=lambda v: _validate_int_range(v, 1, 200),
    ),
    "require-approval": ConfigFieldSpec(
        key="require-approval",
        field_name="require_approval",
        description="Ask the user before evaluating generated code",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "eval-timeout": ConfigFieldSpec(
        key="eval-timeout",
        field_name="eval_timeout",
        description="Seconds a single evaluation may run",
        value_type="int",
        default=30,
        validator=lambda v: _validate_int_range(v, 1, 600),
    ),
    "babashka-path": ConfigFieldSpec(
        key="babashka-path",
        field_name="babashka_path",
        description="Babashka executable",
        value_type="str",
        default="bb",
        validator=_validate_non_empty,
    ),
    "verbose": ConfigFieldSpec(
        key="verbose",
        field_name="verbose",
        description="Enable verbose logging",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
}


def validate_config_value(key: str, value: Any) -> tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if key == "active-model":
        return True, str(value), ""
    if spec.validator:
        return spec.validator(value)
    if spec.value_type == "int":
        try:
            return True, int(value), ""
        except (TypeError, ValueError):
            return False, spec.default, "Must be an integer"
    if spec.value_type == "bool":
        return _validate_bool(value)
    return True, str(value), ""


def resolve_env_refs(value: Any) -> Any:
    """Expand ``${VAR}`` references in a string; missing variables become ''."""
    if not isinstance(value, str):
        return value
    return _ENV_REF_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)


@dataclass
class ModelPreset:
    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_map = {
            "openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY", "gemini": "GEMINI_API_KEY",
        }
        env_var = env_map.get(self.provider)
        return os.environ.get(env_var) if env_var else None

    def get_llm_kwargs(self) -> dict:
        """Return kwargs dict for LLMAdapter constructor; env vars are not consulted."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
        }

    def apply_env_overrides(self):
        prefix = "AI_" + re.sub(r"[^A-Za-z0-9]", "_", self.name).upper() + "_"
        endpoint = os.environ.get(prefix + "ENDPOINT")
        if endpoint:
            self.api_base = endpoint
        api_key = os.environ.get(prefix + "API_KEY")
        if api_key:
            self.api_key = api_key
        model = os.environ.get(prefix + "MODEL")
        if model:
            self.model = model
        temperature = os.environ.get(prefix + "TEMPERATURE")
        if temperature:
            try:
                self.temperature = float(temperature)
            except ValueError:
                _log.warning("Ignoring %sTEMPERATURE=%r", prefix, temperature)
        max_tokens = os.environ.get(prefix + "MAX_TOKENS")
        if max_tokens:
            try:
                self.max_tokens = int(max_tokens)
            except ValueError:
                _log.warning("Ignoring %sMAX_TOKENS=%r", prefix, max_tokens)


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    code_mode_prompt_template: str = ""
    tool_name: str = DEFAULT_TOOL_NAME
    tool_description: str = DEFAULT_TOOL_DESCRIPTION
    tool_parameter_description: str = DEFAULT_PARAMETER_DESCRIPTION
    max_iterations: int = 5
    max_llm_rounds: int = 25
    require_approval: bool = True
    code_validation_enabled: bool = True
    clj_kondo_path: str = "clj-kondo"
    babashka_path: str = "bb"
    eval_timeout: int = 30
    server_host: str = "localhost"
    server_port: int = 3000
    db_path: str = str(CONFIG_DIR / "sessions.db")
    verbose: bool = False
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".", config_file: Optional[str] = None) -> "Config":
        config = cls(db_path=str(CONFIG_DIR / "sessions.db"))
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        candidates: List[Optional[Path]] = [
            Path(config_file).expanduser() if config_file else None,
            project_path / PROJECT_CONFIG_NAME,
            CONFIG_FILE,
        ]
        config_loaded = False
        for candidate in candidates:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                config_loaded = True
                break

        if config_file and not config_loaded:
            raise ConfigError(f"Config file not found: {config_file}")

        if not config_loaded:
            config._add_default_presets()
            config._config_source = str(CONFIG_FILE)
            config.save()

        config._apply_env()
        config.project_root = str(project_path)
        _log.info("Configuration loaded from %s", config._config_source)
        return config

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "local": ModelPreset(
                name="local", provider="local", model="openai/llama3.2",
                api_base="http://localhost:11434/v1", api_key="ollama",
                description="Local model (Ollama on :11434)",
            ),
            "deepseek": ModelPreset(
                name="deepseek", provider="deepseek",
                model="deepseek/deepseek-chat",
                api_key_env="DEEPSEEK_API_KEY",
                description="DeepSeek chat",
            ),
        }

    def _add_default_presets(self):
        self.models = self.get_default_presets()
        self.active_model = "local"

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Could not read %s, using defaults: %s", filepath, e)
            self._add_default_presets()
            return

        self.active_model = str(data.get("active-model", "local"))
        self.system_prompt = data.get("system-prompt") or DEFAULT_SYSTEM_PROMPT
        self.code_mode_prompt_template = data.get("code-mode-prompt-template") or ""

        tool = data.get("tool") or {}
        self.tool_name = tool.get("name") or DEFAULT_TOOL_NAME
        self.tool_description = tool.get("description") or DEFAULT_TOOL_DESCRIPTION
        self.tool_parameter_description = (
            tool.get("parameter-description") or DEFAULT_PARAMETER_DESCRIPTION
        )

        self.max_iterations = self._coerce_positive_int(
            data.get("max-iterations", 5), default=5, min_value=1, max_value=50
        )
        self.max_llm_rounds = self._coerce_positive_int(
            data.get("max-llm-rounds", 25), default=25, min_value=1, max_value=200
        )
        self.require_approval = self._coerce_bool(data.get("require-approval", True), default=True)
        self.eval_timeout = self._coerce_positive_int(
            data.get("eval-timeout", 30), default=30, min_value=1, max_value=600
        )
        self.babashka_path = str(data.get("babashka-path") or "bb")
        self.verbose = self._coerce_bool(data.get("verbose", False), default=False)

        validation = data.get("code-validation") or {}
        self.code_validation_enabled = self._coerce_bool(validation.get("enabled", True), default=True)
        self.clj_kondo_path = str(validation.get("clj-kondo-path") or "clj-kondo")

        server = data.get("server") or {}
        self.server_host = str(server.get("host") or "localhost")
        self.server_port = self._coerce_positive_int(
            server.get("port", 3000), default=3000, min_value=1, max_value=65535
        )
        if data.get("db-path"):
            self.db_path = str(Path(str(data["db-path"])).expanduser())

        self.models = {}
        for name, m in (data.get("models") or {}).items():
            m = m or {}
            self.models[name] = ModelPreset(
                name=name, provider=m.get("provider", "openai"),
                model=m.get("model", "openai/gpt-4o-mini"),
                api_base=resolve_env_refs(m.get("api-base")),
                api_key=resolve_env_refs(m.get("api-key")) or None,
                api_key_env=m.get("api-key-env"),
                temperature=float(m.get("temperature", 0.7)),
                max_tokens=self._coerce_positive_int(m.get("max-tokens", 4096), default=4096),
                description=m.get("description", ""),
            )
        if not self.models:
            self._add_default_presets()

    def _apply_env(self):
        for preset in self.models.values():
            preset.apply_env_overrides()

        env_map = {
            "AI_DEFAULT_MODEL": ("active_model", str),
            "CLJ_KONDO_PATH": ("clj_kondo_path", str),
            "BABASHKA_PATH": ("babashka_path", str),
            "HOST": ("server_host", str),
            "PORT": ("server_port", int),
            "AGENT_DB_PATH": ("db_path", lambda v: str(Path(v).expanduser())),
            "AGENT_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
            "AGENT_REQUIRE_APPROVAL": ("require_approval", lambda v: v.lower() in ("true", "1")),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                try:
                    setattr(self, attr, conv(val))
                except (ValueError, TypeError):
                    _log.warning("Ignoring invalid %s=%r", env_var, val)

        if os.environ.get("ENABLE_CODE_VALIDATION", "").strip().lower() == "false":
            self.code_validation_enabled = False

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        data: Dict[str, Any] = {
            "active-model": self.active_model,
            "max-iterations": self.max_iterations,
            "max-llm-rounds": self.max_llm_rounds,
            "require-approval": self.require_approval,
            "eval-timeout": self.eval_timeout,
            "babashka-path": self.babashka_path,
            "verbose": self.verbose,
            "code-validation": {
                "enabled": self.code_validation_enabled,
                "clj-kondo-path": self.clj_kondo_path,
            },
            "server": {"host": self.server_host, "port": self.server_port},
            "db-path": self.db_path,
            "tool": {
                "name": self.tool_name,
                "description": self.tool_description,
                "parameter-description": self.tool_parameter_description,
            },
            "models": {},
        }
        if self.system_prompt != DEFAULT_SYSTEM_PROMPT:
            data["system-prompt"] = self.system_prompt
        if self.code_mode_prompt_template:
            data["code-mode-prompt-template"] = self.code_mode_prompt_template

        for name, m in self.models.items():
            entry = {"provider": m.provider, "model": m.model,
                     "description": m.description, "temperature": m.temperature,
                     "max-tokens": m.max_tokens}
            if m.api_base:
                entry["api-base"] = m.api_base
            if m.api_key:
                entry["api-key"] = m.api_key
            if m.api_key_env:
                entry["api-key-env"] = m.api_key_env
            data["models"][name] = entry

        with open(target, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model in self.models:
            return self.models[self.active_model]
        if self.models:
            return next(iter(self.models.values()))
        return ModelPreset(name="default", provider="local", model="openai/llama3.2",
                           api_base="http://localhost:11434/v1", api_key="ollama")

    def get_preset(self, name: Optional[str] = None) -> ModelPreset:
        """Preset for ``name``; ``None`` means the active one."""
        if not name:
            return self.get_active_preset()
        if name not in self.models:
            raise ConfigError(
                f"Unknown model type: {name}. Available models: {', '.join(self.models)}"
            )
        return self.models[name]

    @staticmethod
    def log_path() -> Path:
        return CONFIG_DIR / "logs" / "agent.log"

    def build_system_prompt(self) -> str:
        if self.code_mode_prompt_template:
            return f"{self.system_prompt}\n\n{self.code_mode_prompt_template}"
        return self.system_prompt

    def tool_config(self) -> Dict[str, str]:
        return {
            "name": self.tool_name,
            "description": self.tool_description,
            "parameter_description": self.tool_parameter_description,
        }

    def summary(self) -> dict:
        p = self.get_active_preset()
        return {
            "Active model": f"{self.active_model} → {p.model}",
            "API base": p.api_base or "(provider default)",
            "API key": "set" if p.resolve_api_key() else "not set",
            "Tool": self.tool_name,
            "Approval": "ON" if self.require_approval else "OFF",
            "Validation": (f"clj-kondo ({self.clj_kondo_path})"
                           if self.code_validation_enabled else "OFF"),
            "Babashka": self.babashka_path,
            "Max iterations": self.max_iterations,
            "History DB": self.db_path,
            "Config": self._config_source or "(defaults)",
        }

    def get_config_value(self, key: str) -> Any:
        """Get configuration value by key."""
        if key not in CONFIG_FIELDS:
            return None
        spec = CONFIG_FIELDS[key]
        return getattr(self, spec.field_name, spec.default)

    def set_config_value(self, key: str, value: Any) -> tuple[bool, str]:
        """
        Set configuration value with validation.

        Returns:
            (success, error_message)
        """
        if key == "active-model":
            if value not in self.models:
                return False, f"Model '{value}' not found."
            self.active_model = value
            self.save()
            return True, ""

        is_valid, coerced_value, error_msg = validate_config_value(key, value)
        if not is_valid:
            return False, error_msg

        spec = CONFIG_FIELDS[key]
        setattr(self, spec.field_name, coerced_value)
        self.save()
        return True, ""

    @staticmethod
    def _coerce_bool(value, default: bool) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
        if isinstance(value, (int, float)):
            return bool(value)
        return default

    @staticmethod
    def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 100000) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return default
        if parsed < min_value:
            return min_value
        if parsed > max_value:
            return max_value
        return parsed
