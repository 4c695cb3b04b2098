"""Collaborator contracts consumed by node handlers.

The engine never talks to an inference network, a spreadsheet API or a
storage network directly. Handlers call these narrow interfaces, and the
default httpx clients in this package implement them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from agentflow.core.config import ZERO_ADDRESS


class CollaboratorError(Exception):
    """Raised when an external collaborator call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InferenceProvider(Protocol):
    """Protocol for the inference provider proxy."""

    async def infer(self, provider_address: str, prompt: str, caller_address: str) -> dict[str, Any]:
        """Run one inference.

        Returns:
            ``{"response": str, "model": str, "valid": bool, "chatId": str}``
        """
        ...


class SpreadsheetService(Protocol):
    """Protocol for the spreadsheet proxy."""

    async def read_range(
        self, spreadsheet_id: str, sheet_name: str, cell_range: str, credential: str
    ) -> dict[str, Any]:
        """Returns ``{"values": rows}``."""
        ...

    async def write_range(
        self,
        spreadsheet_id: str,
        sheet_name: str,
        cell_range: str,
        values: list[list[Any]],
        credential: str,
    ) -> dict[str, Any]:
        """Returns ``{"success": bool}``."""
        ...

    async def append_range(
        self,
        spreadsheet_id: str,
        sheet_name: str,
        cell_range: str,
        values: list[list[Any]],
        credential: str,
    ) -> dict[str, Any]:
        """Returns ``{"success": bool}``."""
        ...


class HttpActionService(Protocol):
    """Protocol for outbound HTTP actions."""

    async def send(
        self, method: str, url: str, headers: dict[str, str], body: Any = None
    ) -> dict[str, Any]:
        """Returns the response envelope ``{"status": int, "data": Any}``."""
        ...


class StorageService(Protocol):
    """Protocol for the content-addressed storage proxy."""

    async def upload(self, content: bytes, filename: str) -> dict[str, Any]:
        """Returns ``{"rootHash": str, ...}``."""
        ...


@dataclass
class Collaborators:
    """External services and credentials available to one run.

    Missing services surface as skipped nodes, not crashes, for the node
    types that depend on them.
    """

    inference: InferenceProvider | None = None
    sheets: SpreadsheetService | None = None
    http: HttpActionService | None = None
    storage: StorageService | None = None

    google_access_token: str | None = None
    caller_address: str = ZERO_ADDRESS

    async def aclose(self) -> None:
        """Close every collaborator that holds a connection pool."""
        for service in (self.inference, self.sheets, self.http, self.storage):
            close = getattr(service, "close", None)
            if close is not None:
                await close()
