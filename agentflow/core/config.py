"""Engine configuration.

Loaded from ``.agentflow/config.yaml`` (or an explicit path) and then
overridden by environment variables:

    AGENTFLOW_API_BASE_URL        api_base_url
    AGENTFLOW_GOOGLE_ACCESS_TOKEN google_access_token
    AGENTFLOW_CALLER_ADDRESS      caller_address
    AGENTFLOW_FAILURE_POLICY      failure_policy
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from agentflow.sandbox.executor import SandboxConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".agentflow/config.yaml")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_ENV_OVERRIDES = {
    "AGENTFLOW_API_BASE_URL": "api_base_url",
    "AGENTFLOW_GOOGLE_ACCESS_TOKEN": "google_access_token",
    "AGENTFLOW_CALLER_ADDRESS": "caller_address",
    "AGENTFLOW_FAILURE_POLICY": "failure_policy",
}


class FailurePolicy(str, Enum):
    """What the scheduler does after a handler raises."""

    FAIL_FAST = "fail_fast"  # Abort the whole run
    BEST_EFFORT = "best_effort"  # Drop the failed node's successors, keep going


class SandboxSettings(BaseModel):
    timeout: float = Field(default=5.0, gt=0)
    memory_limit_mb: int = Field(default=256, ge=0)
    cpu_limit_seconds: int = Field(default=5, ge=0)
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)

    def to_sandbox_config(self) -> SandboxConfig:
        return SandboxConfig(
            timeout=self.timeout,
            memory_limit_mb=self.memory_limit_mb,
            cpu_limit_seconds=self.cpu_limit_seconds,
            max_output_bytes=self.max_output_bytes,
        )


def _default_node_timeouts() -> dict[str, float]:
    return {
        "ai": 30.0,
        "googleSheets": 15.0,
        "httpRequest": 10.0,
        "logic": 5.0,
    }


class EngineConfig(BaseModel):
    """Runtime settings for the scheduler, handlers and collaborator clients."""

    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST

    # Seconds, keyed by node type value; a node's own config.timeout wins
    node_timeouts: dict[str, float] = Field(default_factory=_default_node_timeouts)
    default_timeout: float = Field(default=8.0, gt=0)

    caller_address: str = ZERO_ADDRESS
    preview_chars: int = Field(default=100, gt=0)

    api_base_url: str = "http://localhost:3001"
    google_access_token: str | None = None
    http_timeout: float = Field(default=30.0, gt=0)

    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)

    def timeout_for(self, node_type: str) -> float:
        return self.node_timeouts.get(node_type, self.default_timeout)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load engine config from YAML, then apply environment overrides.

    A missing default file is not an error; a missing explicit path is.
    """
    data: dict = {}
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Invalid config in '{config_path}': expected a mapping")
        data.update(loaded)
        logger.debug(f"Loaded engine config from {config_path}")
    elif path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    for env_name, key in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data[key] = value

    return EngineConfig.model_validate(data)
