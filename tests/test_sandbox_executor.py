"""Tests for the sandboxed transform executor.

Tests cover:
- Request encoding and response decoding (no process)
- Real isolated interpreter runs (marked ``sandbox``): results, script
  errors, rejected code, timeouts and output limits
"""

from __future__ import annotations

import asyncio

import pytest

from agentflow.sandbox.executor import (
    SandboxConfig,
    SandboxError,
    SandboxExecutor,
    SandboxTimeoutError,
    ScriptError,
    _truncate_output,
)

# =============================================================================
# Protocol Helpers
# =============================================================================


class TestProtocol:
    """Encoding and decoding without spawning a process."""

    def test_non_serializable_input_rejected(self):
        executor = SandboxExecutor()
        with pytest.raises(SandboxError, match="not JSON-serializable"):
            executor._encode_request("return data", {"x": object()})

    def test_oversized_input_rejected(self):
        executor = SandboxExecutor(SandboxConfig(max_input_bytes=64))
        with pytest.raises(SandboxError, match="input exceeded"):
            executor._encode_request("return data", {"x": "y" * 100})

    def test_empty_response_is_sandbox_error(self):
        executor = SandboxExecutor()
        with pytest.raises(SandboxError, match="without a response"):
            executor._decode_response(b"", "Killed", -9, 1.0)

    def test_last_line_is_response(self):
        executor = SandboxExecutor()
        result = executor._decode_response(b'noise\n{"success": true, "result": 3}\n', "", 0, 1.0)
        assert result.success is True
        assert result.result == 3

    def test_truncate_output(self):
        text = _truncate_output("x" * 50, 10)
        assert text.startswith("x" * 10)
        assert "OUTPUT TRUNCATED" in text


# =============================================================================
# Real Sandbox Processes
# =============================================================================


@pytest.mark.sandbox
class TestSandboxExecution:
    """Each call spawns a fresh isolated interpreter."""

    def test_returns_result(self):
        executor = SandboxExecutor()
        result = asyncio.run(executor.execute("return {'x': data['x'] * 2}", {"x": 21}))
        assert result == {"x": 42}

    def test_missing_return_is_none(self):
        executor = SandboxExecutor()
        assert asyncio.run(executor.execute("y = 1", {})) is None

    def test_print_does_not_corrupt_response(self):
        executor = SandboxExecutor()
        outcome = asyncio.run(executor.run("print('hello')\nreturn 1", {}))
        assert outcome.success is True
        assert outcome.result == 1
        assert "hello" in outcome.stderr

    def test_script_exception(self):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="ValueError: bad input"):
            asyncio.run(executor.execute("raise ValueError('bad input')", {}))

    def test_syntax_error(self):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="SyntaxError"):
            asyncio.run(executor.execute("return (", {}))

    def test_import_rejected(self):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="Imports are not allowed"):
            asyncio.run(executor.execute("import os\nreturn os.getcwd()", {}))

    def test_dunder_access_rejected(self):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="not allowed"):
            asyncio.run(executor.execute("return ().__class__", {}))

    def test_generator_frame_walk_rejected(self):
        executor = SandboxExecutor()
        code = (
            "gen = None\n"
            "def f():\n"
            "    yield gen.gi_frame.f_back\n"
            "gen = f()\n"
            "frame = next(gen)\n"
            "host = frame.f_back.f_globals\n"
            "b = host['__builtins__']\n"
            "os = host['sys'].modules['os']\n"
            "return os.getcwd()"
        )
        with pytest.raises(ScriptError, match="is not allowed"):
            asyncio.run(executor.execute(code, {}))

    @pytest.mark.parametrize(
        "expression",
        ["(x for x in []).gi_frame", "err.tb_frame", "frame.f_globals", "frame.f_builtins"],
    )
    def test_frame_attributes_rejected(self, expression):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="is not allowed"):
            asyncio.run(executor.execute(f"return {expression}", {}))

    def test_generators_still_work(self):
        executor = SandboxExecutor()
        code = "def evens():\n    yield from range(0, 6, 2)\nreturn list(evens())"
        assert asyncio.run(executor.execute(code, {})) == [0, 2, 4]

    def test_open_not_available(self):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="NameError"):
            asyncio.run(executor.execute("return open('/etc/passwd').read()", {}))

    def test_non_serializable_result(self):
        executor = SandboxExecutor()
        with pytest.raises(ScriptError, match="not JSON-serializable"):
            asyncio.run(executor.execute("return {1, 2}", {}))

    def test_timeout_kills_process(self):
        executor = SandboxExecutor(SandboxConfig(timeout=0.5, cpu_limit_seconds=10))
        with pytest.raises(SandboxTimeoutError):
            asyncio.run(executor.execute("while True:\n    pass", {}))

    def test_output_limit(self):
        executor = SandboxExecutor(SandboxConfig(max_output_bytes=1024))
        with pytest.raises(SandboxError, match="output exceeded"):
            asyncio.run(executor.execute("return 'x' * 10000", {}))
