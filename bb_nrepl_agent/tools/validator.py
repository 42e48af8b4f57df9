"""Pre-execution lint of generated Clojure code with clj-kondo."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import List

from ..logger import get_logger
from ..results import ValidationIssue

_log = get_logger(__name__)

LINT_ARGS = ["--lint", "-", "--config", "{:output {:format :json}}"]
REPORTED_LEVELS = ("error", "warning")


@dataclass
class ValidationReport:
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    skipped: bool = False
    reason: str = ""


class CljKondoValidator:
    """Lint code read from stdin; missing or broken clj-kondo means "skipped"."""

    def __init__(self, clj_kondo_path: str = "clj-kondo", timeout: int = 15):
        self.clj_kondo_path = clj_kondo_path
        self.timeout = timeout

    async def validate(self, code: str) -> ValidationReport:
        if not code or not isinstance(code, str):
            raise ValueError("Code must be a non-empty string")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.clj_kondo_path, *LINT_ARGS,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            _log.warning("clj-kondo not available (%s); skipping code validation", e)
            return ValidationReport(valid=True, skipped=True, reason="clj-kondo not available")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(code.encode("utf-8")), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            _log.warning("clj-kondo timed out after %ss; skipping code validation", self.timeout)
            return ValidationReport(valid=True, skipped=True, reason="clj-kondo timed out")

        # clj-kondo exits non-zero when it has findings, so the exit code is ignored.
        return self.parse_output(stdout.decode("utf-8", errors="replace"),
                                 stderr.decode("utf-8", errors="replace"))

    @staticmethod
    def parse_output(stdout: str, stderr: str = "") -> ValidationReport:
        if not stdout.strip():
            return ValidationReport(valid=True)

        try:
            output = json.loads(stdout)
        except ValueError as e:
            _log.warning("Failed to parse clj-kondo output: %s (stderr: %s)", e, stderr.strip()[:200])
            return ValidationReport(valid=True, skipped=True,
                                    reason="Failed to parse clj-kondo output")

        findings = output.get("findings") if isinstance(output, dict) else None
        if not isinstance(findings, list):
            return ValidationReport(valid=True)

        issues = [
            ValidationIssue(
                level=finding.get("level"),
                message=finding.get("message", ""),
                row=finding.get("row") or 0,
                col=finding.get("col") or 0,
                filename=finding.get("filename") or "stdin",
            )
            for finding in findings
            if isinstance(finding, dict) and finding.get("level") in REPORTED_LEVELS
        ]
        if issues:
            _log.info("clj-kondo reported %d finding(s)", len(issues))
            return ValidationReport(valid=False, errors=issues)
        return ValidationReport(valid=True)
