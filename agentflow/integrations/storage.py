"""Content-addressed storage proxy client and workflow persistence.

Persistence belongs to the editor, not the engine: ``save_workflow`` exports
a graph with metadata and uploads it, returning the storage root hash.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from agentflow.core.graph_schema import WorkflowGraph
from agentflow.integrations.base import CollaboratorError, StorageService

logger = logging.getLogger(__name__)


def extract_root_hash(result: dict[str, Any]) -> str | None:
    """Root hash from an upload reply; the backend has used three spellings."""
    file_info = result.get("file")
    if isinstance(file_info, dict) and file_info.get("rootHash"):
        return file_info["rootHash"]
    return result.get("rootHash") or result.get("rootHashFormatted")


class StorageClient:
    """Async client for ``POST /api/storage/upload`` (multipart)."""

    def __init__(
        self,
        api_base_url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = api_base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def upload(self, content: bytes, filename: str) -> dict[str, Any]:
        client = await self._get_client()
        files = {"file": (filename, content, "application/json")}
        try:
            resp = await client.post("/api/storage/upload", files=files)
        except httpx.TimeoutException as e:
            raise CollaboratorError("Storage upload timed out") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Storage upload failed: {e}") from e

        if resp.is_error:
            raise CollaboratorError(
                f"Storage upload failed ({resp.status_code}): {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            result = resp.json()
        except ValueError as e:
            raise CollaboratorError("Storage upload returned invalid JSON") from e

        root_hash = extract_root_hash(result)
        if not root_hash:
            raise CollaboratorError("Storage upload response has no root hash")
        logger.info(f"upload: {filename} -> {root_hash}")
        return {**result, "rootHash": root_hash}


def export_workflow(graph: WorkflowGraph) -> dict[str, Any]:
    """Export document with a fresh ``createdAt`` stamp in the metadata."""
    document = graph.to_export_dict()
    metadata = {
        "name": graph.name,
        "description": graph.description or "",
        "version": graph.version,
        **document.get("metadata", {}),
        "createdAt": datetime.now(UTC).isoformat(),
    }
    document["metadata"] = metadata
    return document


async def save_workflow(graph: WorkflowGraph, storage: StorageService) -> str:
    """Upload the exported graph and return its root hash."""
    document = export_workflow(graph)
    content = json.dumps(document, indent=2).encode("utf-8")
    filename = f"workflow-{int(time.time() * 1000)}.json"
    result = await storage.upload(content, filename)
    root_hash = extract_root_hash(result)
    if not root_hash:
        raise CollaboratorError("Storage upload response has no root hash")
    logger.info(f"Workflow '{graph.name}' saved with root hash {root_hash}")
    return root_hash
