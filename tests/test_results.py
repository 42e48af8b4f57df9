"""Tests for execution result variants and log capture."""

import pytest

from bb_nrepl_agent.results import (
    ExecutionSuccess,
    LogEntry,
    RuntimeFailure,
    ValidationFailure,
    ValidationIssue,
    build_logs,
    determine_type,
    error_hint,
    is_error_result,
)


class TestBuildLogs:

    def test_levels(self):
        logs = build_logs("hello\nWARNING: deprecated\n", "boom\n", timestamp="t0")
        assert [(e.level, e.message) for e in logs] == [
            ("ERROR", "boom"),
            ("INFO", "hello"),
            ("WARN", "WARNING: deprecated"),
        ]
        assert all(e.timestamp == "t0" for e in logs)

    def test_blank_lines_skipped(self):
        assert build_logs("\n\n  \n", "") == []

    def test_entry_dict(self):
        assert LogEntry("INFO", "x", "t").to_dict() == {"level": "INFO", "message": "x", "timestamp": "t"}


class TestDetermineType:

    @pytest.mark.parametrize("value,expected", [
        (None, "null"),
        (True, "boolean"),
        (3, "number"),
        (2.5, "number"),
        ("hello", "string"),
        ("https://example.com", "url"),
        ("data:image/png;base64,AAA", "image"),
        ("<div>x</div>", "html"),
        ([1, 2, 3], "chart-data"),
        ([{"a": 1}], "table-data"),
        (["a", "b"], "list"),
        ([], "list"),
        ({"a": 1, "b": 2}, "table-data"),
        ({"a": 1, "b": "x"}, "map"),
        ({}, "map"),
    ])
    def test_types(self, value, expected):
        assert determine_type(value) == expected


class TestVariants:

    def test_success_dict(self):
        result = ExecutionSuccess(value=[1, 2], raw="[1 2]", stdout="hi", execution_time=4)
        data = result.to_dict()
        assert data["type"] == "chart-data"
        assert data["data"] == [1, 2]
        assert data["raw"] == "[1 2]"
        assert data["stdout"] == "hi"
        assert "stderr" not in data
        assert data["executionTime"] == 4
        assert not is_error_result(result)

    def test_validation_failure_from_issues(self):
        issues = [
            ValidationIssue(level="error", message="Unresolved symbol: foo", row=2, col=3),
            ValidationIssue(level="warning", message="unused binding x", row=4, col=7),
        ]
        failure = ValidationFailure.from_issues(issues)
        assert failure.error == (
            "Code validation failed:\n"
            "Line 2, Col 3: Unresolved symbol: foo (error)\n"
            "Line 4, Col 7: unused binding x (warning)"
        )
        data = failure.to_dict()
        assert data["type"] == "error"
        assert len(data["validationErrors"]) == 2
        assert data["validationErrors"][0]["filename"] == "stdin"
        assert is_error_result(failure)

    def test_runtime_failure_hint(self):
        failure = RuntimeFailure(error="clojure.lang.ArityException: Wrong number of args (2)")
        data = failure.to_dict()
        assert data["type"] == "error"
        assert data["errorDetails"]["hint"].startswith("Wrong number of arguments")
        assert data["errorDetails"]["isRetryable"] is True

    def test_runtime_failure_without_hint(self):
        data = RuntimeFailure(error="something odd").to_dict()
        assert "hint" not in data["errorDetails"]

    def test_error_hint(self):
        assert error_hint("Could not locate foo/bar__init.class") == \
            "Missing dependency. Add proper require statement."
        assert error_hint("") is None
