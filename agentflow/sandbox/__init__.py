"""Sandbox module for isolated execution of untrusted transform code."""

from agentflow.sandbox.executor import (
    SandboxConfig,
    SandboxError,
    SandboxExecutor,
    SandboxTimeoutError,
    ScriptError,
)

__all__ = [
    "SandboxConfig",
    "SandboxError",
    "SandboxExecutor",
    "SandboxTimeoutError",
    "ScriptError",
]
