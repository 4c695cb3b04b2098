"""Execution state and log store.

Holds per-node status, per-node outputs and the ordered log stream for the
current run. Outputs live in two maps:

- display map: last value per node, kept across runs for UI history
- runtime map: cleared when a run begins, used for propagation within a run

Only the scheduler mutates the store. Observers read snapshots or subscribe
to ``Event`` notifications.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from agentflow.core.graph_schema import NodeStatus, WorkflowGraph

if TYPE_CHECKING:
    import asyncio

    from agentflow.core.config import EngineConfig
    from agentflow.integrations.base import Collaborators
    from agentflow.sandbox.executor import SandboxExecutor

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Notifications delivered to store subscribers."""

    RUN_STARTED = "run_started"
    RUN_FINISHED = "run_finished"
    NODE_STATUS = "node_status"
    NODE_OUTPUT = "node_output"
    LOG = "log"
    LOG_CLEARED = "log_cleared"


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class LogEntry(BaseModel):
    """One line of the execution log."""

    message: str
    timestamp: datetime = Field(default_factory=_utc_now)
    level: LogLevel = LogLevel.INFO
    node_id: str | None = None


class Event(BaseModel):
    """Store notification."""

    event_type: EventType
    run_id: str | None = None
    node_id: str | None = None
    status: NodeStatus | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


Subscriber = Callable[[Event], None]


class ExecutionStateStore:
    """Process-local execution state for one engine instance."""

    def __init__(self) -> None:
        self._statuses: dict[str, NodeStatus] = {}
        self._display_outputs: dict[str, Any] = {}
        self._runtime_outputs: dict[str, Any] = {}
        self._logs: list[LogEntry] = []
        self._subscribers: list[Subscriber] = []
        self.is_running = False
        self.log_panel_open = False
        self.run_id: str | None = None
        self.last_result: dict[str, Any] | None = None

    # ========== Subscription ==========

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for every event. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, event_type: EventType, **kwargs: Any) -> None:
        event = Event(event_type=event_type, run_id=self.run_id, **kwargs)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # Observer failures never reach the scheduler
                logger.exception(f"Subscriber {callback!r} failed on {event_type.value}")

    # ========== Run lifecycle ==========

    def begin_run(self, run_id: str) -> None:
        """Reset per-run state: statuses, runtime outputs and the running flag."""
        self.run_id = run_id
        self._statuses.clear()
        self._runtime_outputs.clear()
        self.is_running = True
        self.log_panel_open = True
        self.last_result = None
        self._emit(EventType.RUN_STARTED)

    def end_run(self, result: dict[str, Any]) -> None:
        self.is_running = False
        self.last_result = result
        self._emit(EventType.RUN_FINISHED, payload=result)

    def set_log_panel_open(self, is_open: bool) -> None:
        self.log_panel_open = is_open

    # ========== Status ==========

    def set_status(self, node_id: str, status: NodeStatus) -> None:
        self._statuses[node_id] = status
        self._emit(EventType.NODE_STATUS, node_id=node_id, status=status)

    def get_status(self, node_id: str) -> NodeStatus | None:
        return self._statuses.get(node_id)

    def statuses(self) -> dict[str, NodeStatus]:
        return dict(self._statuses)

    # ========== Outputs ==========

    def set_output(
        self, node_id: str, value: Any, *, display: bool = True, runtime: bool = True
    ) -> None:
        if display:
            self._display_outputs[node_id] = value
        if runtime:
            self._runtime_outputs[node_id] = value
        self._emit(
            EventType.NODE_OUTPUT,
            node_id=node_id,
            payload={"output": value, "display": display, "runtime": runtime},
        )

    def get_output(self, node_id: str) -> Any:
        """Runtime output for ``node_id``, falling back to the display output."""
        if node_id in self._runtime_outputs:
            return self._runtime_outputs[node_id]
        return self._display_outputs.get(node_id)

    def display_outputs(self) -> dict[str, Any]:
        return dict(self._display_outputs)

    def runtime_outputs(self) -> dict[str, Any]:
        return dict(self._runtime_outputs)

    def get_runtime_input(self, graph: WorkflowGraph, node_id: str) -> dict[str, Any]:
        """Merged input for ``node_id``.

        Upstream outputs are shallow-merged in incoming-edge order, so a later
        edge overwrites keys produced by an earlier one. Non-mapping outputs
        are merged under the source node id.
        """
        merged: dict[str, Any] = {}
        for edge in graph.incoming_edges(node_id):
            output = self.get_output(edge.source)
            if output is None:
                continue
            if isinstance(output, dict):
                merged.update(output)
            else:
                merged[edge.source] = output
        return merged

    # ========== Log ==========

    def append_log(
        self, message: str, level: LogLevel = LogLevel.INFO, node_id: str | None = None
    ) -> LogEntry:
        entry = LogEntry(message=message, level=level, node_id=node_id)
        self._logs.append(entry)
        self._emit(EventType.LOG, node_id=node_id, payload=entry.model_dump(mode="json"))
        return entry

    def clear_log(self) -> None:
        self._logs.clear()
        self._emit(EventType.LOG_CLEARED)

    @property
    def logs(self) -> list[LogEntry]:
        return list(self._logs)

    # ========== Snapshot ==========

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the whole store."""
        return {
            "run_id": self.run_id,
            "is_running": self.is_running,
            "log_panel_open": self.log_panel_open,
            "statuses": {k: v.value for k, v in self._statuses.items()},
            "outputs": dict(self._display_outputs),
            "logs": [entry.model_dump(mode="json") for entry in self._logs],
            "result": self.last_result,
        }


@dataclass
class RunContext:
    """Everything one run needs, passed explicitly to the scheduler and handlers."""

    run_id: str
    graph: WorkflowGraph
    store: ExecutionStateStore
    collaborators: Collaborators
    config: EngineConfig
    sandbox: SandboxExecutor
    cancel_event: asyncio.Event
    trigger_payload: dict[str, Any] | None = None
    visited: set[str] = field(default_factory=set)

    def log(self, message: str, level: LogLevel = LogLevel.INFO, node_id: str | None = None) -> None:
        """Append to the store log and mirror to the Python logger."""
        self.store.append_log(message, level=level, node_id=node_id)
        logger.log(_PY_LEVELS[level], f"[{self.run_id}] {message}")
