"""Outbound HTTP action client.

Unlike the other collaborators, a non-2xx answer is not an error here: the
status code is part of the envelope handed to downstream nodes.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agentflow.integrations.base import CollaboratorError

logger = logging.getLogger(__name__)


class HttpActionClient:
    """Send arbitrary HTTP requests and wrap the reply as ``{status, data}``."""

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def send(
        self, method: str, url: str, headers: dict[str, str], body: Any = None
    ) -> dict[str, Any]:
        client = await self._get_client()
        request_kwargs: dict[str, Any] = {"headers": headers}
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        try:
            resp = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"HTTP {method} {url} timed out") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(f"HTTP {method} {url} failed: {e}") from e

        logger.info(f"send: {method} {url} -> {resp.status_code}")
        return {"status": resp.status_code, "data": _decode_body(resp)}


def _decode_body(resp: httpx.Response) -> Any:
    if "json" in resp.headers.get("content-type", ""):
        try:
            return resp.json()
        except ValueError:
            pass
    return resp.text
