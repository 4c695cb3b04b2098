"""Sandboxed execution for untrusted transform code.

Every call spawns a fresh interpreter in isolated mode running ``runner.py``
and exchanges exactly one JSON request and one JSON response over its pipes.
No process is reused. The child only sees the ``data`` value it was sent.

Limits:
- wall-clock timeout enforced here; the process is killed on expiry
- CPU time, address space and file size limits applied by the child
- response size capped before decoding

Cancelling the awaiting task kills the child process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).with_name("runner.py")

_READ_CHUNK = 64 * 1024


class SandboxError(Exception):
    """Error in sandbox infrastructure (spawn, protocol, limits)."""

    pass


class SandboxTimeoutError(SandboxError):
    """Sandboxed code exceeded its wall-clock timeout."""

    pass


class ScriptError(SandboxError):
    """Exception raised inside the untrusted code."""

    pass


class ExecutionResult(BaseModel):
    """Result of one sandboxed execution."""

    success: bool
    result: Any = None
    error: str | None = None
    kind: str | None = None  # "script" or "sandbox" on failure
    returncode: int | None = None
    stderr: str = ""
    duration_ms: float = 0.0


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


@dataclass
class SandboxConfig:
    """Configuration for sandbox processes."""

    python_executable: str = field(default_factory=lambda: sys.executable)

    # Timeouts
    timeout: float = 5.0  # Wall clock, seconds

    # Resource limits (applied inside the child)
    memory_limit_mb: int = 256
    cpu_limit_seconds: int = 5

    # I/O limits
    max_output_bytes: int = 1024 * 1024  # Response document
    max_stderr_bytes: int = 64 * 1024  # Kept for diagnostics only
    max_input_bytes: int = 4 * 1024 * 1024


async def _read_capped(stream: asyncio.StreamReader, limit: int, *, strict: bool) -> bytes:
    """Read a stream to EOF, keeping at most ``limit`` bytes.

    With ``strict`` set, exceeding the limit raises instead of truncating.
    """
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        if total + len(chunk) > limit:
            if strict:
                raise SandboxError(f"Sandbox output exceeded {limit} bytes")
            chunks.append(chunk[: max(limit - total, 0)])
            total = limit
            continue
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks)


class SandboxExecutor:
    """Run transform code in a fresh isolated interpreter per call."""

    def __init__(self, config: SandboxConfig | None = None):
        self.config = config or SandboxConfig()
        if not RUNNER_PATH.exists():
            raise SandboxError(f"Sandbox runner not found: {RUNNER_PATH}")

    async def execute(self, code: str, data: Any, timeout: float | None = None) -> Any:
        """Run ``code`` with ``data`` bound and return its result.

        Raises:
            ScriptError: The code raised, failed to compile, or returned a
                non-serializable value.
            SandboxTimeoutError: The wall-clock timeout expired.
            SandboxError: Any infrastructure failure.
        """
        outcome = await self.run(code, data, timeout=timeout)
        if outcome.success:
            return outcome.result
        if outcome.kind == "script":
            raise ScriptError(outcome.error or "Script failed")
        raise SandboxError(outcome.error or "Sandbox failed")

    async def run(self, code: str, data: Any, timeout: float | None = None) -> ExecutionResult:
        """Run ``code`` and report the outcome without raising for script errors.

        Timeouts and infrastructure failures still raise.
        """
        request = self._encode_request(code, data)
        effective_timeout = timeout or self.config.timeout
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                self.config.python_executable,
                "-I",
                str(RUNNER_PATH),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=tempfile.gettempdir(),
                env={"LANG": "C.UTF-8"},
            )
        except OSError as e:
            raise SandboxError(f"Failed to start sandbox process: {e}") from e

        logger.debug(f"Sandbox process {proc.pid} started")
        try:
            stdout, stderr = await asyncio.wait_for(
                self._communicate(proc, request), timeout=effective_timeout
            )
        except TimeoutError:
            raise SandboxTimeoutError(
                f"Sandboxed code timed out after {effective_timeout}s"
            ) from None
        finally:
            # Also reached on cancellation: never leave the child behind
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
                logger.debug(f"Sandbox process {proc.pid} killed")

        duration_ms = (time.monotonic() - started) * 1000
        stderr_text = _truncate_output(
            stderr.decode("utf-8", errors="replace"), self.config.max_stderr_bytes
        )
        return self._decode_response(stdout, stderr_text, proc.returncode, duration_ms)

    def _encode_request(self, code: str, data: Any) -> bytes:
        try:
            payload = json.dumps(
                {
                    "code": code,
                    "input": data,
                    "limits": {
                        "memory_mb": self.config.memory_limit_mb,
                        "cpu_seconds": self.config.cpu_limit_seconds,
                    },
                }
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SandboxError(f"Input is not JSON-serializable: {e}") from e
        if len(payload) > self.config.max_input_bytes:
            raise SandboxError(f"Sandbox input exceeded {self.config.max_input_bytes} bytes")
        return payload

    async def _communicate(
        self, proc: asyncio.subprocess.Process, request: bytes
    ) -> tuple[bytes, bytes]:
        try:
            proc.stdin.write(request)
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # Child died early; its exit status tells the story
            pass

        stdout, stderr = await asyncio.gather(
            _read_capped(proc.stdout, self.config.max_output_bytes, strict=True),
            _read_capped(proc.stderr, self.config.max_stderr_bytes, strict=False),
        )
        await proc.wait()
        return stdout, stderr

    def _decode_response(
        self, stdout: bytes, stderr: str, returncode: int | None, duration_ms: float
    ) -> ExecutionResult:
        lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
        if not lines:
            raise SandboxError(
                f"Sandbox process exited with code {returncode} without a response"
                + (f": {stderr.strip()[-500:]}" if stderr.strip() else "")
            )
        try:
            response = json.loads(lines[-1])
        except ValueError as e:
            raise SandboxError(f"Malformed sandbox response: {e}") from e
        if not isinstance(response, dict) or "success" not in response:
            raise SandboxError("Malformed sandbox response: missing 'success'")

        return ExecutionResult(
            success=bool(response["success"]),
            result=response.get("result"),
            error=response.get("error"),
            kind=response.get("kind"),
            returncode=returncode,
            stderr=stderr,
            duration_ms=duration_ms,
        )
