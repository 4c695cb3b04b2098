"""Inference provider proxy client.

Usage:
    client = ComputeClient("http://localhost:3001")
    reply = await client.infer("0xProvider", "Summarize ...", ZERO_ADDRESS)
    reply["response"]
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from agentflow.integrations.base import CollaboratorError

logger = logging.getLogger(__name__)


class ComputeClient:
    """Async client for ``POST /api/inference`` on the compute backend.

    Args:
        api_base_url: Backend base URL.
        timeout: HTTP request timeout in seconds.
        transport: Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        api_base_url: str,
        timeout: float = 30.0,
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

    async def infer(self, provider_address: str, prompt: str, caller_address: str) -> dict[str, Any]:
        client = await self._get_client()
        payload = {
            "providerAddress": provider_address,
            "prompt": prompt,
            "userAddress": caller_address,
        }
        try:
            resp = await client.post("/api/inference", json=payload)
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"Inference request timed out ({provider_address})") from e
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Inference request failed: {e}") from e

        data = _decode(resp)
        if resp.is_error:
            message = data.get("error") if isinstance(data, dict) else None
            raise CollaboratorError(
                f"Inference failed: {message or data or 'Request failed'}",
                status_code=resp.status_code,
            )
        if not isinstance(data, dict) or "response" not in data:
            raise CollaboratorError("Inference returned a malformed response")

        logger.info(
            f"infer: provider={provider_address}, model={data.get('model')}, "
            f"valid={data.get('valid')}"
        )
        return data


def _decode(resp: httpx.Response) -> Any:
    if "application/json" in resp.headers.get("content-type", ""):
        try:
            return resp.json()
        except ValueError:
            return resp.text
    return resp.text
