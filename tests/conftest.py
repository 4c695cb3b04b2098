# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the agentflow test suite.

This module provides:
- In-memory fakes for every external collaborator (inference, sheets,
  HTTP actions, storage)
- Graph builders for the common shapes (chain, diamond, condition split)
- A scheduler wired to the fakes

Usage:
    Fixtures are discovered implicitly by pytest.
"""

from __future__ import annotations

from typing import Any

import pytest

from agentflow.core.config import EngineConfig
from agentflow.core.graph_engine import WorkflowScheduler
from agentflow.core.graph_schema import WorkflowGraph
from agentflow.core.state import ExecutionStateStore
from agentflow.integrations.base import Collaborators

# =============================================================================
# Collaborator Fakes
# =============================================================================


class FakeInference:
    """Inference provider that records prompts and echoes them back."""

    def __init__(self, reply: dict[str, Any] | None = None):
        self.calls: list[dict[str, str]] = []
        self.reply = reply

    async def infer(self, provider_address: str, prompt: str, caller_address: str) -> dict[str, Any]:
        self.calls.append(
            {"provider": provider_address, "prompt": prompt, "caller": caller_address}
        )
        if self.reply is not None:
            return self.reply
        return {"response": prompt, "model": "fake-model", "valid": True, "chatId": "chat-1"}


class FakeSheets:
    """Spreadsheet service backed by a dict of rows."""

    def __init__(self, values: list[list[Any]] | None = None, success: bool = True):
        self.values = values if values is not None else [["a", "b"], [1, 2]]
        self.success = success
        self.writes: list[tuple[str, list[list[Any]]]] = []

    async def read_range(self, spreadsheet_id, sheet_name, cell_range, credential):
        return {"values": self.values, "range": f"{sheet_name}!{cell_range}"}

    async def write_range(self, spreadsheet_id, sheet_name, cell_range, values, credential):
        self.writes.append(("write", values))
        return {"success": self.success}

    async def append_range(self, spreadsheet_id, sheet_name, cell_range, values, credential):
        self.writes.append(("append", values))
        return {"success": self.success}


class FakeHttp:
    """HTTP action service that records requests."""

    def __init__(self, status: int = 200, data: Any = None):
        self.status = status
        self.data = data if data is not None else {"ok": True}
        self.requests: list[dict[str, Any]] = []

    async def send(self, method, url, headers, body=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body})
        return {"status": self.status, "data": self.data}


class FakeStorage:
    """Storage service returning a fixed root hash."""

    def __init__(self, root_hash: str = "0xroot"):
        self.root_hash = root_hash
        self.uploads: list[tuple[str, bytes]] = []

    async def upload(self, content: bytes, filename: str) -> dict[str, Any]:
        self.uploads.append((filename, content))
        return {"rootHash": self.root_hash}


@pytest.fixture
def fake_inference() -> FakeInference:
    return FakeInference()


@pytest.fixture
def fake_sheets() -> FakeSheets:
    return FakeSheets()


@pytest.fixture
def fake_http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def collaborators(fake_inference, fake_sheets, fake_http) -> Collaborators:
    """All collaborators present, with a Google access token."""
    return Collaborators(
        inference=fake_inference,
        sheets=fake_sheets,
        http=fake_http,
        storage=FakeStorage(),
        google_access_token="token-123",
    )


@pytest.fixture
def store() -> ExecutionStateStore:
    return ExecutionStateStore()


@pytest.fixture
def scheduler(store, collaborators) -> WorkflowScheduler:
    """Scheduler wired to the in-memory fakes."""
    return WorkflowScheduler(store=store, collaborators=collaborators, config=EngineConfig())


# =============================================================================
# Graph Builders
# =============================================================================


def make_graph(nodes: list[dict[str, Any]], edges: list[tuple] | None = None, **kwargs) -> WorkflowGraph:
    """Build a graph from node dicts and ``(source, target[, handle])`` tuples."""
    edge_dicts = []
    for edge in edges or []:
        entry = {"source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            entry["sourceHandle"] = edge[2]
        edge_dicts.append(entry)
    return WorkflowGraph.model_validate({"nodes": nodes, "edges": edge_dicts, **kwargs})


def trigger(node_id: str = "t1") -> dict[str, Any]:
    return {"id": node_id, "type": "trigger", "subtype": "manual", "config": {}}


def transform(node_id: str, script: str) -> dict[str, Any]:
    return {"id": node_id, "type": "logic", "subtype": "transform", "config": {"script": script}}


def ai(node_id: str, prompt: str | None = "Summarize {{x}}", provider: str | None = "0xprov"):
    config: dict[str, Any] = {}
    if prompt is not None:
        config["prompt"] = prompt
    if provider is not None:
        config["providerAddress"] = provider
    return {"id": node_id, "type": "ai", "subtype": "llm", "config": config}


def condition(node_id: str, field: str, operator: str, value: Any) -> dict[str, Any]:
    return {
        "id": node_id,
        "type": "logic",
        "subtype": "condition",
        "config": {"condition": {"field": field, "operator": operator, "value": value}},
    }


@pytest.fixture
def chain_graph() -> WorkflowGraph:
    """trigger -> ai, the smallest runnable graph."""
    return make_graph([trigger(), ai("a1", prompt="Hello")], [("t1", "a1")])


@pytest.fixture
def sample_workflow_dict() -> dict[str, Any]:
    """Native-schema workflow document for file-based tests."""
    return {
        "id": "wf-sample",
        "name": "Sample Workflow",
        "version": "1.0.0",
        "nodes": [
            trigger(),
            ai("a1", prompt="Hello"),
        ],
        "edges": [{"source": "t1", "target": "a1"}],
    }
