"""Default collaborator wiring from engine config."""

from __future__ import annotations

from agentflow.core.config import EngineConfig
from agentflow.integrations.base import Collaborators
from agentflow.integrations.compute import ComputeClient
from agentflow.integrations.http_action import HttpActionClient
from agentflow.integrations.sheets import GoogleSheetsClient
from agentflow.integrations.storage import StorageClient


def build_collaborators(config: EngineConfig) -> Collaborators:
    """httpx-backed collaborators pointed at the configured backend.

    Callers own the result and should ``await collaborators.aclose()``.
    """
    return Collaborators(
        inference=ComputeClient(config.api_base_url, timeout=config.http_timeout),
        sheets=GoogleSheetsClient(timeout=config.http_timeout),
        http=HttpActionClient(timeout=config.http_timeout),
        storage=StorageClient(config.api_base_url, timeout=config.http_timeout),
        google_access_token=config.google_access_token,
        caller_address=config.caller_address,
    )
