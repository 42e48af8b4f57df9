"""Babashka code execution and the validate-then-execute pipeline."""

import asyncio
import json
import time
from typing import Any, Dict, Optional, Protocol

from ..errors import ExecutorUnavailableError
from ..logger import get_logger
from ..results import ExecutionResult, ExecutionSuccess, RuntimeFailure, ValidationFailure, build_logs
from .validator import CljKondoValidator

_log = get_logger(__name__)

# Read one JSON request per line, evaluate it in the long-lived `user`
# namespace and answer with one JSON line. Output produced while evaluating
# (and while printing the value) is captured so it never hits the pipe.
DRIVER_SCRIPT = """
(require '[cheshire.core :as json])
(loop []
  (when-let [line (read-line)]
    (let [{:keys [code]} (json/parse-string line true)
          out (java.io.StringWriter.)
          err (java.io.StringWriter.)
          reply (try
                  {:value (binding [*out* out *err* err]
                            (pr-str (load-string code)))}
                  (catch Throwable e
                    {:error (or (ex-message e) (str e))
                     :class (str (class e))}))]
      (println (json/generate-string (assoc reply :out (str out) :err (str err))))
      (flush)
      (recur))))
""".strip()

HELPER_CODE = """
(defn list-namespaces
  "List all loaded namespaces in the runtime"
  []
  (sort (map str (all-ns))))

(defn get-ns-docs
  "Public vars of a namespace with their docstrings and arglists"
  [ns-name]
  (try
    (require (symbol ns-name))
    {:namespace ns-name
     :doc (-> (find-ns (symbol ns-name)) meta :doc)
     :functions (sort-by :name
                         (for [[n v] (ns-publics (symbol ns-name))]
                           {:name (str n)
                            :doc (-> v meta :doc)
                            :arglists (-> v meta :arglists)}))}
    (catch Exception e
      {:error (ex-message e)})))

(defn get-fn-signature
  "Signature and documentation of a function"
  [fn-name]
  (when-let [m (some-> (resolve (symbol fn-name)) meta)]
    {:name fn-name :doc (:doc m) :arglists (:arglists m)}))

(require '[clojure.string :as str])
""".strip()

STREAM_LIMIT = 16 * 1024 * 1024


class CodeExecutor(Protocol):
    async def execute(self, code: str) -> ExecutionResult:
        ...


def decode_value(raw: Optional[str]) -> Any:
    """Best-effort conversion of a printed Clojure value to Python data."""
    if raw is None or raw == "nil":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_reply(reply: Dict[str, Any], execution_time: int) -> ExecutionResult:
    """Turn one driver reply into an execution result."""
    stdout = reply.get("out") or ""
    stderr = reply.get("err") or ""
    logs = build_logs(stdout, stderr)

    if "error" in reply:
        message = reply.get("error") or "Evaluation error"
        if stderr.strip() and stderr.strip() != message:
            message = f"{message}\n{stderr.strip()}"
        return RuntimeFailure(error=message, stdout=stdout, stderr=stderr,
                              exception_class=reply.get("class"), logs=logs,
                              execution_time=execution_time)

    raw = reply.get("value")
    return ExecutionSuccess(value=decode_value(raw), raw=raw, stdout=stdout, stderr=stderr,
                            logs=logs, execution_time=execution_time)


class BabashkaExecutor:
    """One long-lived ``bb`` process per executor; definitions persist between calls.

    Evaluations are serialized with a lock. Any call that leaves the reply
    stream out of step (timeout, oversized or garbled reply, cancellation)
    kills the process; the next call starts a fresh one.
    """

    def __init__(self, babashka_path: str = "bb", timeout: int = 30,
                 preload_helpers: bool = True):
        self.babashka_path = babashka_path
        self.timeout = timeout
        self.preload_helpers = preload_helpers
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self):
        if self.running:
            return
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.babashka_path, "-e", DRIVER_SCRIPT,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ExecutorUnavailableError(
                f"Cannot start Babashka ({self.babashka_path}): {e}"
            ) from e
        _log.info("Started Babashka session (pid %s)", self._proc.pid)

        if self.preload_helpers:
            try:
                reply = await asyncio.wait_for(self._roundtrip(HELPER_CODE), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                await self._kill()
                raise ExecutorUnavailableError(
                    f"Babashka did not answer within {self.timeout}s after starting"
                ) from e
            if "error" in reply:
                _log.warning("Failed to inject helper functions: %s", reply.get("error"))

    async def execute(self, code: str) -> ExecutionResult:
        async with self._lock:
            await self.start()
            started = time.monotonic()
            try:
                reply = await asyncio.wait_for(self._roundtrip(code), timeout=self.timeout)
            except asyncio.TimeoutError:
                elapsed = int((time.monotonic() - started) * 1000)
                _log.warning("Evaluation timed out after %ss; restarting Babashka", self.timeout)
                await self._kill()
                return RuntimeFailure(
                    error=f"Evaluation timed out after {self.timeout}s; the session was restarted "
                          "and earlier definitions are gone.",
                    execution_time=elapsed,
                )
            except asyncio.CancelledError:
                # The reply may still arrive and would be read as the next call's answer.
                await asyncio.shield(self._kill())
                raise
            elapsed = int((time.monotonic() - started) * 1000)
            return parse_reply(reply, elapsed)

    async def _roundtrip(self, code: str) -> Dict[str, Any]:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.stdout is None:
            raise ExecutorUnavailableError("Babashka session is not running")

        try:
            proc.stdin.write((json.dumps({"code": code}) + "\n").encode("utf-8"))
            await proc.stdin.drain()
            line = await proc.stdout.readline()
        except (BrokenPipeError, ConnectionResetError) as e:
            await self._kill()
            raise ExecutorUnavailableError(f"Babashka session closed: {e}") from e
        except ValueError:
            # readline() hit the stream limit; the rest of the reply is still queued.
            _log.warning("Reply exceeded %d bytes; restarting Babashka", STREAM_LIMIT)
            await self._kill()
            return {
                "error": f"Result too large to return (over {STREAM_LIMIT} bytes); the session "
                         "was restarted and earlier definitions are gone.",
                "class": "ResultTooLarge",
            }

        if not line:
            stderr = await self._drain_stderr()
            await self._kill()
            raise ExecutorUnavailableError(
                "Babashka process exited" + (f": {stderr}" if stderr else "")
            )

        try:
            reply = json.loads(line.decode("utf-8", errors="replace"))
        except ValueError:
            reply = None
        if not isinstance(reply, dict):
            await self._kill()
            raise ExecutorUnavailableError(f"Unreadable reply from Babashka: {line[:200]!r}")
        return reply

    async def _drain_stderr(self) -> str:
        if self._proc is None or self._proc.stderr is None:
            return ""
        try:
            data = await asyncio.wait_for(self._proc.stderr.read(4000), timeout=1)
        except asyncio.TimeoutError:
            return ""
        return data.decode("utf-8", errors="replace").strip()

    async def _kill(self):
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        proc.kill()
        await proc.wait()

    async def close(self):
        proc, self._proc = self._proc, None
        if proc is None or proc.returncode is not None:
            return
        if proc.stdin is not None:
            proc.stdin.close()
        try:
            await asyncio.wait_for(proc.wait(), timeout=3)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
        _log.info("Babashka session closed")


class ReplEvaluator:
    """Validate (when a validator is configured), then execute.

    Validation is advisory: a validator that raises is logged and skipped.
    Failed validation short-circuits with a ``ValidationFailure`` and the
    executor is not called.
    """

    def __init__(self, executor: CodeExecutor,
                 validator: Optional[CljKondoValidator] = None):
        self.executor = executor
        self.validator = validator

    async def evaluate(self, code: str) -> ExecutionResult:
        if self.validator is not None:
            report = None
            try:
                report = await self.validator.validate(code)
            except Exception as e:
                _log.warning("Code validation failed (%s); proceeding without validation", e)

            if report is not None and not report.valid:
                _log.info("Validation rejected code with %d issue(s)", len(report.errors))
                return ValidationFailure.from_issues(report.errors)
            if report is not None and report.skipped:
                _log.info("Validation skipped: %s", report.reason)

        return await self.executor.execute(code)

    async def close(self):
        close = getattr(self.executor, "close", None)
        if close is not None:
            await close()
