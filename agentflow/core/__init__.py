"""Core modules for the agentflow engine.

Only the schema and state layers are re-exported here; import the scheduler
from ``agentflow.core.graph_engine``.
"""

from agentflow.core.graph_schema import (
    Edge,
    Node,
    NodeStatus,
    NodeType,
    WorkflowGraph,
    load_workflow,
)
from agentflow.core.state import Event, EventType, ExecutionStateStore, LogEntry

__all__ = [
    "Edge",
    "Event",
    "EventType",
    "ExecutionStateStore",
    "LogEntry",
    "Node",
    "NodeStatus",
    "NodeType",
    "WorkflowGraph",
    "load_workflow",
]
