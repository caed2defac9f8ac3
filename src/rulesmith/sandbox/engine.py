"""
Sandboxed execution of untrusted validation and generation code.

Every execution spawns a fresh isolated interpreter running bootstrap.py.
The parent enforces the wall-clock timeout; the child applies its own
memory, CPU and file-size limits before compiling the untrusted code.

Security Note:
    CRITICAL SECURITY MEASURES:
    - Code is statically scanned first; high/critical findings refuse execution
    - The child is started as a list (NO shell=True) with ``-I -S``
    - The child gets an empty environment and a private temporary directory
    - Context goes in as JSON on stdin and the result comes back as JSON

    Failure policy:
    - execute() never raises for failures of the untrusted code
    - Failures come back as SandboxResult with an error kind
      (timeout, memory, security, runtime, module)

Usage:
    sandbox = Sandbox(timeout_ms=1000, max_memory_mb=128)
    result = sandbox.execute("result = len(context['rules'])", {"rules": [1, 2]})
    if result.success:
        print(result.result)  # 2
"""

import json
import logging
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rulesmith.config import SandboxSettings
from rulesmith.errors import SandboxError
from rulesmith.sandbox.scanner import CodeValidationResult, validate_code

logger = logging.getLogger(__name__)

BOOTSTRAP_PATH = Path(__file__).with_name("bootstrap.py")

ERROR_KINDS = ("timeout", "memory", "security", "runtime", "module")


@dataclass(frozen=True)
class SandboxMetrics:
    """Resource usage of one execution."""

    execution_time_ms: float = 0.0
    memory_used_mb: float = 0.0
    peak_memory_mb: float = 0.0


@dataclass(frozen=True)
class SandboxResult:
    """
    Outcome of a sandboxed execution.

    The result value is untrusted data; callers must validate its shape.

    Attributes:
        success: Whether the code ran to completion
        result: JSON-decoded value produced by the code
        error: Error message if success is False
        error_kind: timeout, memory, security, runtime or module
        metrics: Timing and memory usage
        logs: Messages recorded through the restricted ``log`` object
    """

    success: bool
    result: Any = None
    error: str | None = None
    error_kind: str | None = None
    metrics: SandboxMetrics = field(default_factory=SandboxMetrics)
    logs: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def ok(cls, result: Any, **kwargs: Any) -> "SandboxResult":
        """Create a successful result."""
        return cls(success=True, result=result, **kwargs)

    @classmethod
    def fail(cls, kind: str, error: str, **kwargs: Any) -> "SandboxResult":
        """Create a failed result."""
        return cls(success=False, error=error, error_kind=kind, **kwargs)

    def raise_for_error(self) -> None:
        """Raise SandboxError when the execution failed."""
        if not self.success:
            raise SandboxError(message=self.error or "", kind=self.error_kind or "runtime")


class Sandbox:
    """
    Executes untrusted code fragments in isolated child interpreters.

    Instances hold only configuration and counters, so one sandbox may run
    many executions concurrently; no state is shared between executions.
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        max_memory_mb: int = 256,
        python_executable: str | None = None,
        max_output_bytes: int = 1024 * 1024,
    ) -> None:
        """
        Initialize the sandbox.

        Args:
            timeout_ms: Default wall-clock timeout per execution
            max_memory_mb: Default address-space ceiling of the child
            python_executable: Interpreter for the child (defaults to the current one)
            max_output_bytes: Largest accepted child response
        """
        self.timeout_ms = timeout_ms
        self.max_memory_mb = max_memory_mb
        self.python_executable = python_executable or sys.executable
        self.max_output_bytes = max_output_bytes
        self._lock = threading.Lock()
        self._stats = {
            "executions": 0,
            "succeeded": 0,
            "failed": 0,
            "refused": 0,
            "timeouts": 0,
            "total_time_ms": 0.0,
        }

    @classmethod
    def from_settings(cls, settings: SandboxSettings) -> "Sandbox":
        """Build a sandbox from settings."""
        return cls(
            timeout_ms=settings.timeout_ms,
            max_memory_mb=settings.max_memory_mb,
            python_executable=settings.python_executable,
            max_output_bytes=settings.max_output_bytes,
        )

    def validate_code(self, code: str) -> CodeValidationResult:
        """Statically scan code without running it."""
        return validate_code(code)

    def execute(
        self,
        code: str,
        context: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        max_memory_mb: int | None = None,
    ) -> SandboxResult:
        """
        Run a code fragment.

        The value of a top-level ``result`` variable is returned; without
        one, the value of the final expression statement.

        Args:
            code: Python source to run
            context: JSON-representable data exposed as ``context`` and as
                top-level names for each identifier key
            timeout_ms: Override of the default timeout
            max_memory_mb: Override of the default memory ceiling

        Returns:
            SandboxResult (never raises for failures of the code itself)
        """
        return self._run("execute", code, context, [], timeout_ms, max_memory_mb)

    def execute_function(
        self,
        function_code: str,
        args: list[Any] | None = None,
        context: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
    ) -> SandboxResult:
        """
        Call a function defined by untrusted code.

        function_code is either a single lambda expression or a fragment
        whose last top-level ``def`` is the function to call.
        """
        return self._run("function", function_code, context, list(args or []), timeout_ms, None)

    def get_stats(self) -> dict[str, Any]:
        """Configuration and execution counters."""
        with self._lock:
            stats = dict(self._stats)
        stats.update({
            "timeout_ms": self.timeout_ms,
            "max_memory_mb": self.max_memory_mb,
            "isolation": "subprocess",
        })
        return stats

    # =========================================================================
    # Internals
    # =========================================================================

    def _count(self, result: SandboxResult, refused: bool = False) -> SandboxResult:
        with self._lock:
            self._stats["executions"] += 1
            self._stats["total_time_ms"] += result.metrics.execution_time_ms
            if result.success:
                self._stats["succeeded"] += 1
            else:
                self._stats["failed"] += 1
            if refused:
                self._stats["refused"] += 1
            if result.error_kind == "timeout":
                self._stats["timeouts"] += 1
        if not result.success:
            logger.warning("Sandbox %s failure: %s", result.error_kind, result.error)
        return result

    def _run(
        self,
        mode: str,
        code: str,
        context: dict[str, Any] | None,
        args: list[Any],
        timeout_ms: int | None,
        max_memory_mb: int | None,
    ) -> SandboxResult:
        scan = validate_code(code)
        if not scan.is_valid:
            return self._count(
                SandboxResult.fail("security", f"Code refused: {scan.summary()}"),
                refused=True,
            )

        timeout_s = (timeout_ms or self.timeout_ms) / 1000.0
        memory_mb = max_memory_mb or self.max_memory_mb
        try:
            payload = json.dumps({
                "mode": mode,
                "code": code,
                "context": context or {},
                "args": args,
                "max_memory_mb": memory_mb,
                "cpu_seconds": timeout_s + 1,
            })
        except (TypeError, ValueError) as e:
            return self._count(
                SandboxResult.fail("security", f"Context is not JSON-representable: {e}"),
                refused=True,
            )

        started = time.perf_counter()
        with tempfile.TemporaryDirectory(prefix="rulesmith-sandbox-") as workdir:
            try:
                proc = subprocess.run(
                    [self.python_executable, "-I", "-S", str(BOOTSTRAP_PATH)],
                    input=payload,
                    capture_output=True,
                    text=True,
                    timeout=timeout_s,
                    cwd=workdir,
                    env={},
                    shell=False,
                )
            except subprocess.TimeoutExpired:
                elapsed = (time.perf_counter() - started) * 1000
                return self._count(SandboxResult.fail(
                    "timeout",
                    f"Execution exceeded {int(timeout_s * 1000)}ms",
                    metrics=SandboxMetrics(execution_time_ms=elapsed),
                ))
            except OSError as e:
                return self._count(SandboxResult.fail("runtime", f"Could not start sandbox: {e}"))

        elapsed = (time.perf_counter() - started) * 1000
        return self._count(self._interpret(proc, elapsed))

    def _interpret(self, proc: subprocess.CompletedProcess, elapsed_ms: float) -> SandboxResult:
        """Turn the child's exit status and response into a SandboxResult."""
        stdout = proc.stdout or ""
        if len(stdout.encode("utf-8")) > self.max_output_bytes:
            return SandboxResult.fail(
                "runtime",
                f"Sandbox output exceeded {self.max_output_bytes} bytes",
                metrics=SandboxMetrics(execution_time_ms=elapsed_ms),
            )

        if not stdout.strip():
            return SandboxResult.fail(
                self._kind_from_exit(proc),
                self._exit_message(proc),
                metrics=SandboxMetrics(execution_time_ms=elapsed_ms),
            )

        try:
            response = json.loads(stdout)
        except json.JSONDecodeError:
            return SandboxResult.fail(
                "runtime",
                "Sandbox returned a malformed response",
                metrics=SandboxMetrics(execution_time_ms=elapsed_ms),
            )

        baseline_mb = response.get("baseline_kb", 0) / 1024.0
        peak_mb = response.get("peak_kb", 0) / 1024.0
        metrics = SandboxMetrics(
            execution_time_ms=elapsed_ms,
            memory_used_mb=round(max(peak_mb - baseline_mb, 0.0), 3),
            peak_memory_mb=round(peak_mb, 3),
        )
        logs = [
            {"level": str(m.get("level", "info")), "message": str(m.get("message", ""))}
            for m in response.get("logs") or []
            if isinstance(m, dict)
        ]
        if response.get("ok"):
            return SandboxResult.ok(response.get("result"), metrics=metrics, logs=logs)

        kind = response.get("kind")
        if kind not in ERROR_KINDS:
            kind = "runtime"
        return SandboxResult.fail(
            kind,
            str(response.get("message") or "Execution failed"),
            metrics=metrics,
            logs=logs,
        )

    @staticmethod
    def _kind_from_exit(proc: subprocess.CompletedProcess) -> str:
        if proc.returncode < 0:
            sig = -proc.returncode
            if sig == getattr(signal, "SIGXCPU", None):
                return "timeout"
            if sig in (signal.SIGKILL, signal.SIGSEGV):
                return "memory"
        if "MemoryError" in (proc.stderr or ""):
            return "memory"
        return "runtime"

    @staticmethod
    def _exit_message(proc: subprocess.CompletedProcess) -> str:
        tail = (proc.stderr or "").strip().splitlines()[-1:] or ["no output"]
        return f"Sandbox exited with status {proc.returncode}: {tail[0]}"
