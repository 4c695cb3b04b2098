"""Node handlers: one coroutine per node type.

Every handler is called as ``handler(node, data, ctx)`` where ``data`` is the
merged input and ``ctx`` is the run's ``RunContext``. It returns the node's
output (``None`` means "no output") or raises:

- ``NodeSkipped`` when configuration or a credential is missing. The
  scheduler logs a warning, marks the node completed and carries on.
- anything else (``HandlerError``, ``CollaboratorError``, sandbox errors,
  timeouts) is a handler failure and is fatal under the failure policy.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from agentflow.core.conditions import condition_output
from agentflow.core.graph_schema import (
    AIConfig,
    GoogleSheetsConfig,
    HttpRequestConfig,
    LogicConfig,
    Node,
    NodeType,
)
from agentflow.core.state import LogLevel

if TYPE_CHECKING:
    from agentflow.core.state import RunContext

logger = logging.getLogger(__name__)


class NodeSkipped(Exception):
    """Node cannot run for lack of configuration. Not a failure."""

    pass


class HandlerError(Exception):
    """Handler-level failure (malformed collaborator reply, bad template, ...)."""

    pass


Handler = Callable[[Node, dict[str, Any], "RunContext"], Awaitable[Any]]

ConfigT = TypeVar("ConfigT")


def _config_of(node: Node, model: type[ConfigT]) -> ConfigT:
    """The node's config, provided it is the model this handler works with."""
    if not isinstance(node.config, model):
        raise HandlerError(
            f"Node '{node.id}' has {type(node.config).__name__}, expected {model.__name__}"
        )
    return node.config


# ========== Placeholder substitution ==========

_PLACEHOLDER = re.compile(r"\{\{.*?\}\}")


def serialize_value(value: Any) -> str:
    """Compact JSON, the form values take when spliced into prompts."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def substitute_placeholders(template: str, data: dict[str, Any]) -> str:
    """Fill ``{{...}}`` placeholders left to right with the values of ``data``.

    The n-th placeholder receives the n-th value in iteration order. Extra
    placeholders stay literal; extra values are unused. Placeholders are
    located in the original template, so inserted text is never re-scanned.
    """
    values = iter(data.values())
    parts: list[str] = []
    position = 0
    for match in _PLACEHOLDER.finditer(template):
        try:
            value = next(values)
        except StopIteration:
            break
        parts.append(template[position : match.start()])
        parts.append(serialize_value(value))
        position = match.end()
    parts.append(template[position:])
    return "".join(parts)


def _preview(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _utc_timestamp() -> str:
    return datetime.now(UTC).isoformat()


# ========== trigger ==========


async def handle_trigger(node: Node, data: dict[str, Any], ctx: RunContext) -> Any:
    subtype = node.subtype or "manual"
    output: dict[str, Any] = {"trigger": subtype, "timestamp": _utc_timestamp()}
    if subtype == "manual":
        ctx.log(f"[{node.id}] Manual trigger fired", node_id=node.id)
        return output

    # Webhook/schedule/event triggers are fired by an external dispatcher
    if ctx.trigger_payload is not None:
        output["payload"] = ctx.trigger_payload
    ctx.log(f"[{node.id}] {subtype} trigger fired", node_id=node.id)
    return output


# ========== logic ==========


async def handle_logic(node: Node, data: dict[str, Any], ctx: RunContext) -> Any:
    config = _config_of(node, LogicConfig)

    if node.subtype == "condition" or config.condition is not None:
        if config.condition is None:
            raise NodeSkipped("condition not configured")
        output = condition_output(config.condition, data)
        ctx.log(
            f"[{node.id}] Condition {config.condition.field} {config.condition.operator} "
            f"{config.condition.value!r} -> {output['branch']}",
            node_id=node.id,
        )
        return output

    if not config.script or not config.script.strip():
        raise NodeSkipped("no transform script configured")

    ctx.log(f"[{node.id}] Executing transform in sandbox...", node_id=node.id)
    result = await ctx.sandbox.execute(config.script, data)
    ctx.log(
        f"[{node.id}] Transform completed, output type: {type(result).__name__}",
        node_id=node.id,
    )
    return result


# ========== ai ==========


async def handle_ai(node: Node, data: dict[str, Any], ctx: RunContext) -> Any:
    config = _config_of(node, AIConfig)

    if not config.provider_address or not config.prompt:
        raise NodeSkipped("missing provider address or prompt")
    inference = ctx.collaborators.inference
    if inference is None:
        raise NodeSkipped("no inference provider available")

    ctx.log(
        f"[{node.id}] Starting AI inference with provider: {config.provider_address}",
        node_id=node.id,
    )
    prompt = substitute_placeholders(config.prompt, data)
    ctx.log(f"[{node.id}] Prompt: {_preview(prompt, ctx.config.preview_chars)}", node_id=node.id)

    reply = await inference.infer(
        config.provider_address, prompt, ctx.collaborators.caller_address
    )
    response = reply.get("response") if isinstance(reply, dict) else None
    if not isinstance(response, str):
        raise HandlerError("Inference reply has no textual response")
    if isinstance(reply, dict) and reply.get("valid") is False:
        ctx.log(
            f"[{node.id}] Provider marked the response as unverified",
            level=LogLevel.WARNING,
            node_id=node.id,
        )
    return response


# ========== googleSheets ==========


def _as_row(item: Any) -> list[Any]:
    if isinstance(item, list):
        return item
    if isinstance(item, dict):
        return list(item.values())
    return [item]


def flatten_rows(data: dict[str, Any]) -> list[list[Any]]:
    """Turn merged input into sheet rows.

    Lists are concatenated (each element one row), a mapping is one row of its
    values, anything else is a one-cell row.
    """
    rows: list[list[Any]] = []
    for value in data.values():
        if isinstance(value, list):
            rows.extend(_as_row(item) for item in value)
        else:
            rows.append(_as_row(value))
    return rows


async def handle_google_sheets(node: Node, data: dict[str, Any], ctx: RunContext) -> Any:
    config = _config_of(node, GoogleSheetsConfig)

    token = ctx.collaborators.google_access_token
    if not token:
        raise NodeSkipped("missing Google access token")
    if not config.spreadsheet_id:
        raise NodeSkipped("no spreadsheet selected")
    sheets = ctx.collaborators.sheets
    if sheets is None:
        raise NodeSkipped("no spreadsheet service available")

    if config.operation == "read":
        ctx.log(f"[{node.id}] Reading from Google Sheet: {config.sheet_name}", node_id=node.id)
        reply = await sheets.read_range(
            config.spreadsheet_id, config.sheet_name, config.range, token
        )
        values = reply.get("values") or []
        ctx.log(f"[{node.id}] Read {len(values)} rows from Google Sheet", node_id=node.id)
        return {
            "operation": "read",
            "values": values,
            "range": reply.get("range") or f"{config.sheet_name}!{config.range}",
        }

    rows = flatten_rows(data)
    ctx.log(
        f"[{node.id}] Writing {len(rows)} rows to Google Sheet ({config.operation}): "
        f"{config.sheet_name}",
        node_id=node.id,
    )
    if config.operation == "write":
        reply = await sheets.write_range(
            config.spreadsheet_id, config.sheet_name, config.range, rows, token
        )
    else:
        reply = await sheets.append_range(
            config.spreadsheet_id, config.sheet_name, config.range, rows, token
        )
    if not reply.get("success"):
        raise HandlerError(f"Google Sheets {config.operation} reported failure")
    return {"operation": config.operation, "rows_written": len(rows), "success": True}


# ========== httpRequest / action ==========

_template_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


def _template_context(data: dict[str, Any]) -> dict[str, Any]:
    context = {k: v for k, v in data.items() if isinstance(k, str) and k.isidentifier()}
    context["data"] = data
    return context


def render_template(template: str, data: dict[str, Any]) -> str:
    """Render ``template`` with the merged input bound as ``data`` and by key."""
    try:
        return _template_env.from_string(template).render(_template_context(data))
    except TemplateError as e:
        raise HandlerError(f"Template error in {template!r}: {e}") from e


def _render_body(body: Any, data: dict[str, Any]) -> Any:
    if isinstance(body, str):
        return render_template(body, data)
    if isinstance(body, dict):
        return {k: _render_body(v, data) for k, v in body.items()}
    if isinstance(body, list):
        return [_render_body(v, data) for v in body]
    return body


async def handle_http(node: Node, data: dict[str, Any], ctx: RunContext) -> Any:
    config = _config_of(node, HttpRequestConfig)

    target = config.url or config.endpoint
    if not target:
        raise NodeSkipped("no url configured")
    http = ctx.collaborators.http
    if http is None:
        raise NodeSkipped("no HTTP action service available")

    url = render_template(target, data)
    body = _render_body(config.body, data)
    ctx.log(f"[{node.id}] Sending {config.method} {url}", node_id=node.id)
    envelope = await http.send(config.method, url, config.header_map(), body)
    ctx.log(f"[{node.id}] HTTP response status: {envelope.get('status')}", node_id=node.id)
    return envelope


HANDLERS: dict[NodeType, Handler] = {
    NodeType.TRIGGER: handle_trigger,
    NodeType.LOGIC: handle_logic,
    NodeType.AI: handle_ai,
    NodeType.GOOGLE_SHEETS: handle_google_sheets,
    NodeType.HTTP_REQUEST: handle_http,
    NodeType.ACTION: handle_http,
}
