"""Google Sheets v4 values client.

Reads, overwrites and appends cell ranges with a caller-supplied OAuth access
token. The token is obtained outside the engine and passed per call.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from agentflow.integrations.base import CollaboratorError

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com"


def _a1_path(spreadsheet_id: str, sheet_name: str, cell_range: str) -> str:
    a1 = quote(f"{sheet_name}!{cell_range}", safe="!:")
    return f"/v4/spreadsheets/{quote(spreadsheet_id, safe='')}/values/{a1}"


class GoogleSheetsClient:
    """Async Google Sheets client.

    Args:
        timeout: HTTP request timeout in seconds.
        base_url: API root, overridable for tests.
        transport: Optional httpx transport.
    """

    def __init__(
        self,
        timeout: float = 15.0,
        base_url: str = SHEETS_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = timeout
        self._base_url = base_url
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

    async def _request(
        self,
        method: str,
        path: str,
        credential: str,
        params: dict[str, str] | None = None,
        json_body: Any = None,
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.request(
                method,
                path,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {credential}"},
            )
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"Google Sheets API timeout: {path}") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Google Sheets API connection error: {e}") from e

        if resp.status_code in (401, 403):
            raise CollaboratorError(
                f"Google Sheets API returned {resp.status_code}. Check the access token "
                "and its spreadsheet scope.",
                status_code=resp.status_code,
            )
        if resp.status_code == 404:
            raise CollaboratorError(f"Spreadsheet range not found: {path}", status_code=404)
        if resp.is_error:
            raise CollaboratorError(
                f"Google Sheets API error {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as e:
            raise CollaboratorError("Google Sheets API returned invalid JSON") from e

    async def read_range(
        self, spreadsheet_id: str, sheet_name: str, cell_range: str, credential: str
    ) -> dict[str, Any]:
        data = await self._request("GET", _a1_path(spreadsheet_id, sheet_name, cell_range), credential)
        values = data.get("values") or []
        logger.info(f"read_range: sheet={sheet_name}, range={cell_range}, rows={len(values)}")
        return {"values": values, "range": data.get("range")}

    async def write_range(
        self,
        spreadsheet_id: str,
        sheet_name: str,
        cell_range: str,
        values: list[list[Any]],
        credential: str,
    ) -> dict[str, Any]:
        data = await self._request(
            "PUT",
            _a1_path(spreadsheet_id, sheet_name, cell_range),
            credential,
            params={"valueInputOption": "USER_ENTERED"},
            json_body={"values": values},
        )
        logger.info(f"write_range: sheet={sheet_name}, range={cell_range}, rows={len(values)}")
        return {"success": True, "updatedRange": data.get("updatedRange")}

    async def append_range(
        self,
        spreadsheet_id: str,
        sheet_name: str,
        cell_range: str,
        values: list[list[Any]],
        credential: str,
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            _a1_path(spreadsheet_id, sheet_name, cell_range) + ":append",
            credential,
            params={"valueInputOption": "USER_ENTERED"},
            json_body={"values": values},
        )
        updates = data.get("updates") or {}
        logger.info(f"append_range: sheet={sheet_name}, range={cell_range}, rows={len(values)}")
        return {"success": True, "updatedRange": updates.get("updatedRange")}
