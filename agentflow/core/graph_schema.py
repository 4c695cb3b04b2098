"""Workflow graph schema definitions using Pydantic models.

A workflow is a directed graph of typed nodes (trigger, logic, ai, action,
httpRequest, googleSheets) joined by edges. Each node type carries its own
configuration model; the right model is selected from ``Node.type`` and
validated when the graph is loaded, so unknown keys and wrongly typed values
are rejected before a run starts.

Keys that are only needed to *execute* a node (an AI provider address, a
spreadsheet id, an HTTP url) are optional here. A node missing them is skipped
with a warning at run time instead of failing the load; see
``WorkflowGraph.config_warnings`` for a pre-run report.
"""

import base64
import json
import re
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import networkx as nx
import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)


class NodeType(str, Enum):
    """Supported node types in workflow graphs"""

    TRIGGER = "trigger"  # Entry point (manual, webhook, schedule, event)
    LOGIC = "logic"  # Sandboxed transform or structured condition
    AI = "ai"  # Inference call through a compute provider
    ACTION = "action"  # Outbound action expressed as an HTTP call
    HTTP_REQUEST = "httpRequest"  # Plain HTTP call
    GOOGLE_SHEETS = "googleSheets"  # Spreadsheet read/write/append


class NodeStatus(str, Enum):
    """Execution status for nodes"""

    PENDING = "pending"  # Queued, not started yet
    RUNNING = "running"  # Handler in flight
    COMPLETED = "completed"  # Handler returned (or node skipped with a warning)
    ERROR = "error"  # Handler raised


class TransitionCondition(BaseModel):
    """
    Declarative condition for ``logic`` nodes with subtype ``condition``.
    NO arbitrary code execution - only structured operators.
    """

    field: str  # Supports dotted notation: "customer.tier"
    operator: Literal[
        "==", "!=", ">", "<", ">=", "<=", "in", "not_in", "contains", "starts_with", "ends_with"
    ]
    value: str | int | float | bool | list[str | int | float | bool]

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        """Ensure field names are safe dot-separated identifiers.

        Valid: "status", "order.total", "a.b.c"
        Invalid: "..", "a..b", ".foo", "foo.", "a-b"
        """
        pattern = r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$"
        if not re.match(pattern, v):
            raise ValueError(f"Invalid field name: {v}")
        return v

    @model_validator(mode="after")
    def check_value_type_for_operator(self) -> "TransitionCondition":
        """Ensure value type is compatible with the operator."""
        list_operators = {"in", "not_in"}
        is_list_op = self.operator in list_operators
        is_list_val = isinstance(self.value, list)

        if is_list_op and not is_list_val:
            raise ValueError(f"Operator '{self.operator}' requires value to be a list.")
        if not is_list_op and is_list_val:
            raise ValueError(f"Operator '{self.operator}' does not support list values.")
        return self


# ========== Per-type configuration ==========


class _NodeConfig(BaseModel):
    """Fields shared by every node configuration."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    timeout: float | None = Field(default=None, gt=0)  # Overrides the per-type default (seconds)


class TriggerConfig(_NodeConfig):
    """Configuration for TRIGGER nodes.

    Only ``manual`` triggers are fired by the engine itself. Webhook, schedule
    and event triggers are addressed by an external dispatcher which then
    starts a run at the trigger node.
    """

    url: str | None = None
    method: str | None = None
    cron: str | None = None
    contract: str | None = None
    event: str | None = None


class LogicConfig(_NodeConfig):
    """Configuration for LOGIC nodes - sandboxed transform or condition"""

    script: str | None = None  # Python function body; `data` is the merged input
    condition: TransitionCondition | None = None  # Used by subtype "condition"


class AIConfig(_NodeConfig):
    """Configuration for AI nodes - inference through a compute provider"""

    provider_address: str | None = Field(default=None, alias="providerAddress")
    prompt: str | None = None  # Template with {{...}} placeholders
    model: str | None = None
    temperature: float | None = None


class GoogleSheetsConfig(_NodeConfig):
    """Configuration for GOOGLE_SHEETS nodes"""

    operation: Literal["read", "write", "append"] = "read"
    spreadsheet_id: str | None = Field(default=None, alias="selectedSpreadsheet")
    sheet_name: str = Field(default="Sheet1", alias="selectedSheet")
    range: str = "A1:Z100"


class HeaderPair(BaseModel):
    """One header row as the editor stores it."""

    key: str = ""
    value: str = ""


class HttpRequestConfig(_NodeConfig):
    """Configuration for HTTP_REQUEST nodes"""

    method: str = "GET"
    url: str | None = None
    endpoint: str | None = None  # Alternative to url used by some action editors
    headers: dict[str, str] | list[HeaderPair] = Field(default_factory=dict)
    body: str | dict[str, Any] | list[Any] | None = None  # Templated with the merged input

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        method = v.strip().upper()
        if method not in {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}:
            raise ValueError(f"Unsupported HTTP method: {v}")
        return method

    def header_map(self) -> dict[str, str]:
        """Fold editor header rows into a mapping, dropping blank keys."""
        if isinstance(self.headers, dict):
            return dict(self.headers)
        return {h.key.strip(): h.value for h in self.headers if h.key.strip()}


class ActionConfig(HttpRequestConfig):
    """Configuration for ACTION nodes - HTTP call plus descriptive fields"""

    to: str | None = None
    subject: str | None = None
    template: str | None = None
    query: str | None = None


CONFIG_MODELS: dict[NodeType, type[_NodeConfig]] = {
    NodeType.TRIGGER: TriggerConfig,
    NodeType.LOGIC: LogicConfig,
    NodeType.AI: AIConfig,
    NodeType.ACTION: ActionConfig,
    NodeType.HTTP_REQUEST: HttpRequestConfig,
    NodeType.GOOGLE_SHEETS: GoogleSheetsConfig,
}

# ActionConfig must precede its base class so instances keep their own type
NodeConfig = (
    TriggerConfig
    | LogicConfig
    | AIConfig
    | GoogleSheetsConfig
    | ActionConfig
    | HttpRequestConfig
)


# ========== Nodes, edges, graphs ==========


class Node(BaseModel):
    """Graph node with type-specific configuration"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: NodeType
    subtype: str = ""  # e.g. "manual", "webhook", "transform", "condition", "llm"
    label: str | None = None
    config: NodeConfig

    # UI metadata (position, styling) for visual editor
    ui_metadata: dict[str, Any] | None = None

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Node ID must be a non-empty string")
        return v

    @model_validator(mode="before")
    @classmethod
    def select_config_model(cls, data: Any) -> Any:
        """Validate ``config`` against the model registered for ``type``."""
        if not isinstance(data, dict):
            return data
        try:
            node_type = NodeType(data.get("type"))
        except ValueError:
            return data  # field validation reports the unknown type

        config_model = CONFIG_MODELS[node_type]
        config = data.get("config")
        if isinstance(config, config_model):
            return data
        if isinstance(config, BaseModel):
            config = config.model_dump(exclude_unset=True)
        try:
            validated = config_model.model_validate(config or {})
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValueError(
                f"Node '{data.get('id')}' of type '{node_type.value}' has invalid config: {details}"
            ) from None
        return {**data, "config": validated}

    @model_validator(mode="after")
    def validate_config_for_type(self) -> "Node":
        """Ensure the config model matches the node type."""
        expected = CONFIG_MODELS[self.type]
        if type(self.config) is not expected:
            raise ValueError(
                f"Node '{self.id}' of type '{self.type.value}' requires {expected.__name__}, "
                f"got {type(self.config).__name__}"
            )
        return self

    @property
    def display_label(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    """Directed edge between nodes.

    ``source_handle`` names which output of the source node the edge leaves
    from (e.g. the "true"/"false" outputs of a condition node).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    source: str  # Source node ID
    target: str  # Target node ID
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    @model_validator(mode="after")
    def default_edge_id(self) -> "Edge":
        if not self.id:
            self.id = f"e{self.source}-{self.target}"
        return self


class WorkflowGraph(BaseModel):
    """Complete workflow definition.

    Read-only during a run: the scheduler works on a deep copy and only uses
    ``get_node``, ``incoming_edges`` and ``outgoing_edges``.
    """

    id: str = "workflow"
    name: str = "Untitled Workflow"
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)

    # ========== Read contract ==========

    def get_node(self, node_id: str) -> Node | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def incoming_edges(self, node_id: str) -> list[Edge]:
        """Edges targeting ``node_id``, in edge-list order."""
        return [e for e in self.edges if e.target == node_id]

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        """Edges leaving ``node_id``, in edge-list order."""
        return [e for e in self.edges if e.source == node_id]

    def default_start_node(self) -> str | None:
        """First trigger node, else the first node, else None."""
        trigger = next((n for n in self.nodes if n.type == NodeType.TRIGGER), None)
        if trigger:
            return trigger.id
        return self.nodes[0].id if self.nodes else None

    # ========== Validation ==========

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.

        Cyclic graphs are rejected here. The scheduler's visited set would
        stop a cycle from looping, but it would run each node in the cycle
        once and silently drop the back edge.
        """
        errors = []

        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

        for cycle in self.find_cycles():
            errors.append(f"Cycle detected: {' -> '.join(cycle + cycle[:1])}")

        return errors

    def find_cycles(self, limit: int = 100) -> list[list[str]]:
        """Enumerate up to ``limit`` simple cycles."""
        G = self._to_networkx()
        cycles = []
        for cycle in nx.simple_cycles(G):
            cycles.append(cycle)
            if len(cycles) >= limit:
                break
        return cycles

    def config_warnings(self) -> list[str]:
        """Report nodes that will be skipped at run time for missing configuration."""
        warnings = []
        for node in self.nodes:
            config = node.config
            if isinstance(config, AIConfig):
                if not config.provider_address:
                    warnings.append(f"AI node '{node.id}': missing providerAddress")
                if not config.prompt:
                    warnings.append(f"AI node '{node.id}': missing prompt")
            elif isinstance(config, GoogleSheetsConfig):
                if not config.spreadsheet_id:
                    warnings.append(f"Google Sheets node '{node.id}': missing spreadsheet id")
            elif isinstance(config, HttpRequestConfig):
                if not (config.url or config.endpoint):
                    warnings.append(f"{node.type.value} node '{node.id}': missing url")
            elif isinstance(config, LogicConfig):
                if node.subtype == "condition":
                    if config.condition is None:
                        warnings.append(f"Logic node '{node.id}': condition not configured")
                elif not config.script:
                    warnings.append(f"Logic node '{node.id}': no script configured")
        return warnings

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    # ========== Import / export ==========

    def to_export_dict(self) -> dict[str, Any]:
        """JSON-ready dict using the editor's camelCase key names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_editor_export(cls, data: dict[str, Any]) -> "WorkflowGraph":
        """Build a graph from the visual editor's export format.

        Editor nodes look like ``{"id", "type", "position", "data": {"label",
        "type", "config", ...}}`` where ``data.type`` is the subtype. Sheets and
        HTTP editors keep their settings directly under ``data``; logic editors
        store the subtype as ``config.type``. Display-only keys (``result``,
        ``lastExecuted``) are dropped.

        Editor key names are translated (``contractAddress`` -> ``contract``,
        ``transformCode`` -> ``script``, logic ``timeout`` in milliseconds ->
        seconds, HTTP ``authType``/``authData`` -> an auth header). Config keys
        the engine does not use (``maxTokens``, ``systemMessage``, ``timezone``
        and the like) are kept in ``ui_metadata["editor_fields"]``.
        """
        nodes = []
        for raw in data.get("nodes", []):
            payload = dict(raw.get("data") or {})
            node_type = raw.get("type")
            label = payload.pop("label", None)
            subtype = payload.pop("type", None) or ""
            config = dict(payload.pop("config", None) or {})

            for key in _INLINE_CONFIG_KEYS.get(node_type, ()):
                if key in payload:
                    config.setdefault(key, payload.pop(key))

            config_subtype = config.pop("type", None)
            if node_type == NodeType.LOGIC.value and config_subtype:
                subtype = config_subtype

            config = _translate_editor_config(node_type, config, payload)
            config, editor_fields = _split_declared_keys(node_type, config)

            ui_metadata = {"position": raw["position"]} if "position" in raw else None
            if editor_fields:
                ui_metadata = {**(ui_metadata or {}), "editor_fields": editor_fields}
            nodes.append(
                {
                    "id": str(raw.get("id")),
                    "type": node_type,
                    "subtype": subtype,
                    "label": label,
                    "config": config,
                    "ui_metadata": ui_metadata,
                }
            )

        edges = [
            {
                "id": raw.get("id", ""),
                "source": str(raw.get("source")),
                "target": str(raw.get("target")),
                "sourceHandle": raw.get("sourceHandle"),
                "targetHandle": raw.get("targetHandle"),
            }
            for raw in data.get("edges", [])
        ]

        metadata = dict(data.get("metadata") or {})
        return cls.model_validate(
            {
                "id": str(data.get("id") or metadata.get("id") or "workflow"),
                "name": metadata.get("name") or data.get("name") or "Untitled Workflow",
                "description": metadata.get("description") or data.get("description"),
                "version": str(metadata.get("version") or data.get("version") or "1.0.0"),
                "nodes": nodes,
                "edges": edges,
                "metadata": metadata,
            }
        )


_INLINE_CONFIG_KEYS: dict[str, tuple[str, ...]] = {
    NodeType.GOOGLE_SHEETS.value: ("operation", "selectedSpreadsheet", "selectedSheet", "range"),
    NodeType.HTTP_REQUEST.value: ("method", "url", "headers", "body"),
}

# Editor key -> config field
_EDITOR_RENAMES: dict[str, dict[str, str]] = {
    NodeType.TRIGGER.value: {"contractAddress": "contract", "eventName": "event"},
    NodeType.LOGIC.value: {"transformCode": "script"},
}


def _translate_editor_config(
    node_type: str | None, config: dict[str, Any], payload: dict[str, Any]
) -> dict[str, Any]:
    """Rewrite editor key names and units into config fields."""
    config = dict(config)
    for editor_key, key in _EDITOR_RENAMES.get(node_type, {}).items():
        if editor_key in config:
            value = config.pop(editor_key)
            if value not in (None, ""):
                config.setdefault(key, value)

    if node_type == NodeType.LOGIC.value:
        # The loop editor's filter is a free-text expression, not a structured condition
        if isinstance(config.get("condition"), str):
            config["conditionExpression"] = config.pop("condition")
        # Logic editors store the timeout in milliseconds
        timeout = config.get("timeout")
        if isinstance(timeout, (int, float)) and not isinstance(timeout, bool):
            if timeout > 0:
                config["timeout"] = timeout / 1000
            else:
                config.pop("timeout")

    if node_type in (NodeType.HTTP_REQUEST.value, NodeType.ACTION.value):
        header = _auth_header(payload.get("authType"), payload.get("authData") or {})
        if header is not None:
            config["headers"] = _with_header(config.get("headers") or {}, *header)
    return config


def _auth_header(auth_type: str | None, auth_data: dict[str, Any]) -> tuple[str, str] | None:
    if auth_type == "basic" and auth_data.get("username"):
        credentials = f"{auth_data['username']}:{auth_data.get('password') or ''}"
        return "Authorization", "Basic " + base64.b64encode(credentials.encode()).decode()
    if auth_type == "bearer" and auth_data.get("token"):
        return "Authorization", f"Bearer {auth_data['token']}"
    if auth_type == "apiKey" and auth_data.get("apiKey"):
        return auth_data.get("headerName") or "X-API-Key", str(auth_data["apiKey"])
    return None


def _with_header(headers: dict[str, str] | list[Any], name: str, value: str) -> Any:
    """Add a header unless one with the same name (any case) is already set."""
    if isinstance(headers, list):
        names = {str(h.get("key", "")).strip().lower() for h in headers if isinstance(h, dict)}
        if name.lower() in names:
            return headers
        return [*headers, {"key": name, "value": value}]
    if any(k.lower() == name.lower() for k in headers):
        return headers
    return {**headers, name: value}


def _split_declared_keys(
    node_type: str | None, config: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Separate keys the config model declares from editor-only ones."""
    try:
        model = CONFIG_MODELS[NodeType(node_type)]
    except ValueError:
        return config, {}  # node validation reports the unknown type

    declared = set()
    for name, info in model.model_fields.items():
        declared.add(name)
        if info.alias:
            declared.add(info.alias)
    kept = {k: v for k, v in config.items() if k in declared}
    extra = {k: v for k, v in config.items() if k not in declared}
    return kept, extra


def _looks_like_editor_export(data: dict[str, Any]) -> bool:
    nodes = data.get("nodes") or []
    return any(isinstance(n, dict) and "data" in n and "config" not in n for n in nodes)


def parse_workflow(data: dict[str, Any]) -> WorkflowGraph:
    """Build a graph from either the native schema or an editor export."""
    if _looks_like_editor_export(data):
        return WorkflowGraph.from_editor_export(data)
    return WorkflowGraph.model_validate(data)


def load_workflow(path: str | Path) -> WorkflowGraph:
    """Load a workflow from YAML or JSON.

    Accepts both the native schema and the visual editor's export format.

    Raises:
        ValueError: If the file content is not a mapping.
        yaml.YAMLError / json.JSONDecodeError: If the file cannot be parsed.
        pydantic.ValidationError: If the graph does not match the schema.
    """
    path = Path(path)
    text = path.read_text()
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid workflow content in '{path}'. Expected a mapping, got {type(data).__name__}."
        )
    return parse_workflow(data)
