"""Execution result variants produced by the code evaluator."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .html_extract import is_html

_WARN_RE = re.compile(r"warn", re.IGNORECASE)

# Substring -> hint shown to the model next to runtime errors.
ERROR_HINTS = [
    ("IllegalArgumentException", "Type mismatch error. Check data types and conversions."),
    ("FileNotFoundException", "File or path not found. Verify the path exists."),
    ("No such file", "File or path not found. Verify the path exists."),
    ("ClassNotFoundException", "Missing dependency. Add proper require statement."),
    ("Could not locate", "Missing dependency. Add proper require statement."),
    ("CompilerException", "Syntax error. Review Clojure syntax."),
    ("Syntax error", "Syntax error. Review Clojure syntax."),
    ("ArityException", "Wrong number of arguments. Check function signature."),
    ("Wrong number of args", "Wrong number of arguments. Check function signature."),
]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass
class LogEntry:
    level: str
    message: str
    timestamp: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, str]:
        return {"level": self.level, "message": self.message, "timestamp": self.timestamp}


@dataclass
class ValidationIssue:
    level: str
    message: str
    row: int = 0
    col: int = 0
    filename: str = "stdin"

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "message": self.message,
                "row": self.row, "col": self.col, "filename": self.filename}

    def describe(self) -> str:
        return f"Line {self.row}, Col {self.col}: {self.message} ({self.level})"


@dataclass
class ExecutionSuccess:
    value: Any = None
    raw: Optional[str] = None
    stdout: str = ""
    stderr: str = ""
    logs: List[LogEntry] = field(default_factory=list)
    execution_time: Optional[int] = None  # milliseconds

    kind = "success"

    @property
    def value_type(self) -> str:
        return determine_type(self.value)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.value_type,
            "data": self.value,
            "raw": self.raw,
            "logs": [entry.to_dict() for entry in self.logs],
            "executionTime": self.execution_time,
        }
        if self.stdout:
            data["stdout"] = self.stdout
        if self.stderr:
            data["stderr"] = self.stderr
        return data


@dataclass
class ValidationFailure:
    error: str
    validation_errors: List[ValidationIssue] = field(default_factory=list)
    logs: List[LogEntry] = field(default_factory=list)
    execution_time: Optional[int] = None

    kind = "validation_error"

    @classmethod
    def from_issues(cls, issues: List[ValidationIssue]) -> "ValidationFailure":
        lines = "\n".join(issue.describe() for issue in issues)
        return cls(error=f"Code validation failed:\n{lines}", validation_errors=list(issues))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "error",
            "error": self.error,
            "validationErrors": [issue.to_dict() for issue in self.validation_errors],
            "errorDetails": {
                "message": "Code validation detected errors before execution. "
                           "Please fix the following issues:",
                "hint": "Review the validation errors and correct the code syntax, "
                        "types, or structure.",
            },
            "logs": [entry.to_dict() for entry in self.logs],
            "executionTime": self.execution_time,
        }


@dataclass
class RuntimeFailure:
    error: str
    stdout: str = ""
    stderr: str = ""
    exception_class: Optional[str] = None
    logs: List[LogEntry] = field(default_factory=list)
    execution_time: Optional[int] = None

    kind = "runtime_error"

    def to_dict(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            "message": self.error,
            "isRetryable": True,
            "context": "Code execution failed. Analyze the error and generate corrected code.",
        }
        hint = error_hint(self.error)
        if hint:
            details["hint"] = hint
        data: Dict[str, Any] = {
            "type": "error",
            "error": self.error,
            "errorDetails": details,
            "logs": [entry.to_dict() for entry in self.logs],
            "executionTime": self.execution_time,
        }
        if self.stdout:
            data["stdout"] = self.stdout
        if self.stderr:
            data["stderr"] = self.stderr
        return data


ExecutionResult = Union[ExecutionSuccess, ValidationFailure, RuntimeFailure]


def is_error_result(result: ExecutionResult) -> bool:
    return isinstance(result, (ValidationFailure, RuntimeFailure))


def build_logs(stdout: str, stderr: str, timestamp: Optional[str] = None) -> List[LogEntry]:
    """Split captured output into log rows.

    stderr lines become ERROR entries; stdout lines mentioning "warn" become
    WARN entries and the rest INFO. Blank lines are skipped.
    """
    ts = timestamp or _now_iso()
    logs: List[LogEntry] = []
    for line in (stderr or "").splitlines():
        if line.strip():
            logs.append(LogEntry("ERROR", line, ts))
    for line in (stdout or "").splitlines():
        if line.strip():
            level = "WARN" if _WARN_RE.search(line) else "INFO"
            logs.append(LogEntry(level, line, ts))
    return logs


def error_hint(error: str) -> Optional[str]:
    for needle, hint in ERROR_HINTS:
        if needle in (error or ""):
            return hint
    return None


def determine_type(value: Any) -> str:
    """Classify a decoded result value for display routing."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        if is_html(value):
            return "html"
        if re.match(r"^https?://", value):
            return "url"
        if value.startswith("data:image/"):
            return "image"
        return "string"
    if isinstance(value, list):
        if value and isinstance(value[0], (int, float)) and not isinstance(value[0], bool):
            return "chart-data"
        if value and isinstance(value[0], dict):
            return "table-data"
        return "list"
    if isinstance(value, dict):
        if value:
            first = next(iter(value.values()))
            if isinstance(first, (int, float, str)) and not isinstance(first, bool):
                if all(type(v) is type(first) for v in value.values()):
                    return "table-data"
        return "map"
    return "unknown"
