"""Workflow graph execution scheduler.

Breadth-first traversal from a start node:

1. Pop the next node id; skip it if already visited this run.
2. Merge upstream outputs into the node's input (incoming-edge order, later
   edges overwrite earlier keys).
3. Dispatch to the handler for the node type, raced against the node timeout
   and the run's cancel event.
4. Record the output, mark the node completed and enqueue its successors.

Handlers run one at a time; there is no parallel fan-out. A handler failure
aborts the run under ``fail_fast`` (default) or only prunes the failed
node's successors under ``best_effort``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from agentflow.core.config import EngineConfig, FailurePolicy
from agentflow.core.graph_schema import (
    LogicConfig,
    Node,
    NodeStatus,
    NodeType,
    WorkflowGraph,
)
from agentflow.core.handlers import HANDLERS, Handler, HandlerError, NodeSkipped
from agentflow.core.state import ExecutionStateStore, LogLevel, RunContext
from agentflow.integrations.base import Collaborators
from agentflow.sandbox.executor import SandboxExecutor

logger = logging.getLogger(__name__)


class RunCancelled(Exception):
    """The run's cancel event fired while a node was in flight."""

    pass


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunResult(BaseModel):
    """Outcome of one run. Live progress is observable through the store."""

    run_id: str
    success: bool = False
    status: RunStatus = RunStatus.FAILED
    start_node_id: str | None = None
    executed: list[str] = Field(default_factory=list)  # Completed, in execution order
    skipped: list[str] = Field(default_factory=list)  # Completed without running
    failed_node: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


def format_elapsed(seconds: float) -> str:
    """``<n>ms`` below one second, ``<n.nn>s`` above."""
    millis = int(seconds * 1000)
    if millis < 1000:
        return f"{millis}ms"
    return f"{seconds:.2f}s"


def _preview_json(value: Any, limit: int) -> str:
    text = json.dumps(value, default=str, ensure_ascii=False)
    return text[:limit] + ("..." if len(text) > limit else "")


def _is_condition_node(node: Node) -> bool:
    return node.type == NodeType.LOGIC and (
        node.subtype == "condition"
        or (isinstance(node.config, LogicConfig) and node.config.condition is not None)
    )


class WorkflowScheduler:
    """
    Runs workflow graphs against an execution state store.

    One scheduler may run many graphs, but runs sharing a store must not
    overlap: the store holds the state of a single current run.
    """

    def __init__(
        self,
        store: ExecutionStateStore | None = None,
        collaborators: Collaborators | None = None,
        config: EngineConfig | None = None,
        sandbox: SandboxExecutor | None = None,
    ):
        self.config = config or EngineConfig()
        self.store = store or ExecutionStateStore()
        self.collaborators = collaborators or Collaborators(
            google_access_token=self.config.google_access_token,
            caller_address=self.config.caller_address,
        )
        self.sandbox = sandbox or SandboxExecutor(self.config.sandbox.to_sandbox_config())
        self._handlers: dict[NodeType, Handler] = dict(HANDLERS)

    def register_handler(self, node_type: NodeType, handler: Handler) -> None:
        """Replace the handler for ``node_type`` on this scheduler only."""
        self._handlers[node_type] = handler

    def timeout_for(self, node: Node) -> float:
        """Node's own timeout if configured, else the per-type default."""
        if node.config.timeout:
            return node.config.timeout
        return self.config.timeout_for(node.type.value)

    # ========== Run ==========

    async def run(
        self,
        graph: WorkflowGraph,
        start_node_id: str | None = None,
        *,
        trigger_payload: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Execute the subgraph reachable from ``start_node_id``.

        Args:
            graph: Workflow to run. Copied, so later edits do not affect the run.
            start_node_id: Entry node; auto-selected when None.
            trigger_payload: Data from an external dispatcher for non-manual triggers.
            cancel_event: Set it to stop the run at the next suspension point.
            run_id: Optional caller-chosen run id.
        """
        graph = graph.model_copy(deep=True)
        run_id = run_id or uuid.uuid4().hex[:12]
        ctx = RunContext(
            run_id=run_id,
            graph=graph,
            store=self.store,
            collaborators=self.collaborators,
            config=self.config,
            sandbox=self.sandbox,
            cancel_event=cancel_event or asyncio.Event(),
            trigger_payload=trigger_payload,
        )
        result = RunResult(run_id=run_id, start_node_id=start_node_id)
        started = time.monotonic()

        self.store.clear_log()
        self.store.begin_run(run_id)

        try:
            await self._traverse(ctx, result)
        except asyncio.CancelledError:
            # The run task itself was cancelled (e.g. server shutdown)
            result.status = RunStatus.CANCELLED
            result.error = result.error or "Run task cancelled"
            self._finish(ctx, result, started)
            raise
        return self._finish(ctx, result, started)

    async def _traverse(self, ctx: RunContext, result: RunResult) -> None:
        graph = ctx.graph

        start_node_id = result.start_node_id
        if start_node_id is None:
            start_node_id = graph.default_start_node()
            if start_node_id is None:
                ctx.log("Error: No nodes found in workflow", level=LogLevel.ERROR)
                result.error = "No nodes found in workflow"
                return
            start = graph.get_node(start_node_id)
            kind = "trigger" if start and start.type == NodeType.TRIGGER else "first available"
            ctx.log(f"Auto-selected start node: {start_node_id} ({kind})")
            result.start_node_id = start_node_id
        elif graph.get_node(start_node_id) is None:
            ctx.log(f"Error: Node {start_node_id} not found", level=LogLevel.ERROR)
            result.error = f"Start node {start_node_id} not found"
            return

        ctx.log(f"Workflow execution started from node {start_node_id}")
        ctx.log(f"Total nodes: {len(graph.nodes)}, Total edges: {len(graph.edges)}")

        queue: deque[str] = deque([start_node_id])
        self.store.set_status(start_node_id, NodeStatus.PENDING)

        while queue:
            if ctx.cancel_event.is_set():
                ctx.log("Execution cancelled", level=LogLevel.WARNING)
                result.status = RunStatus.CANCELLED
                result.error = "Run cancelled"
                return

            node_id = queue.popleft()
            if node_id in ctx.visited:
                continue

            node = graph.get_node(node_id)
            if node is None:
                ctx.log(f"Error: Node {node_id} not found", level=LogLevel.ERROR)
                continue
            ctx.visited.add(node_id)

            node_started = time.monotonic()
            skipped = False
            try:
                output = await self._execute_node(ctx, node)
            except NodeSkipped as e:
                output = None
                skipped = True
                ctx.log(f"[{node.id}] Skipped: {e}", level=LogLevel.WARNING, node_id=node.id)
            except RunCancelled:
                self.store.set_status(node.id, NodeStatus.ERROR)
                elapsed = format_elapsed(time.monotonic() - node_started)
                ctx.log(
                    f"[{node.id}] Cancelled after {elapsed}", level=LogLevel.WARNING, node_id=node.id
                )
                result.status = RunStatus.CANCELLED
                result.failed_node = node.id
                result.error = "Run cancelled"
                return
            except Exception as e:
                self.store.set_status(node.id, NodeStatus.ERROR)
                elapsed = format_elapsed(time.monotonic() - node_started)
                message = str(e) or type(e).__name__
                ctx.log(
                    f"[{node.id}] Error after {elapsed}: {message}",
                    level=LogLevel.ERROR,
                    node_id=node.id,
                )
                logger.debug(f"Node {node.id} failed", exc_info=True)
                if result.failed_node is None:
                    result.failed_node = node.id
                    result.error = message
                if self.config.failure_policy == FailurePolicy.FAIL_FAST:
                    return
                # best effort: successors of the failed node are not enqueued
                continue

            elapsed = format_elapsed(time.monotonic() - node_started)
            if output is not None:
                self.store.set_output(node.id, output)
                ctx.log(
                    f"[{node.id}] Output generated ({elapsed}): "
                    f"{_preview_json(output, self.config.preview_chars)}",
                    node_id=node.id,
                )
            else:
                ctx.log(f"[{node.id}] No output generated ({elapsed})", node_id=node.id)

            self.store.set_status(node.id, NodeStatus.COMPLETED)
            result.executed.append(node.id)
            if skipped:
                result.skipped.append(node.id)

            self._enqueue_successors(ctx, node, output, queue)

    async def _execute_node(self, ctx: RunContext, node: Node) -> Any:
        """Run one node's handler and return its output.

        Status is set to running here; the caller writes the final status.
        """
        self.store.set_status(node.id, NodeStatus.RUNNING)
        ctx.log(
            f'[{node.id}] Starting execution: "{node.display_label}" (type: {node.type.value})',
            node_id=node.id,
        )

        data = self.store.get_runtime_input(ctx.graph, node.id)
        if data:
            ctx.log(
                f"[{node.id}] Input data: {_preview_json(data, self.config.preview_chars)}",
                node_id=node.id,
            )
        else:
            ctx.log(f"[{node.id}] No input data", node_id=node.id)

        handler = self._handlers.get(node.type)
        if handler is None:
            raise HandlerError(f"Unknown node type: {node.type}")

        timeout = self.timeout_for(node)
        output = await self._await_with_cancel(
            handler(node, data, ctx),
            ctx.cancel_event,
            timeout,
            f"{node.type.value} node {node.id}",
        )
        # Handle Pydantic models - serialize with model_dump()
        if hasattr(output, "model_dump"):
            output = output.model_dump(mode="json")
        return output

    async def _await_with_cancel(
        self,
        awaitable: Awaitable[Any],
        cancel_event: asyncio.Event,
        timeout: float,
        operation: str,
    ) -> Any:
        """Await ``awaitable`` unless the timeout expires or the cancel event fires.

        Either way the in-flight task is cancelled and awaited, so resources it
        holds (such as a sandbox process) are released before returning.
        """
        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event.is_set():
            raise RunCancelled(f"{operation} cancelled")
        raise TimeoutError(f"{operation} timed out after {timeout:g}s")

    def _enqueue_successors(
        self, ctx: RunContext, node: Node, output: Any, queue: deque[str]
    ) -> None:
        edges = ctx.graph.outgoing_edges(node.id)
        if _is_condition_node(node) and isinstance(output, dict) and "branch" in output:
            branch = output["branch"]
            edges = [e for e in edges if not e.source_handle or e.source_handle == branch]

        if not edges:
            ctx.log(f"[{node.id}] No downstream nodes, execution path complete", node_id=node.id)
            return

        targets = [e.target for e in edges]
        ctx.log(
            f"[{node.id}] Queuing {len(targets)} downstream node(s): {', '.join(targets)}",
            node_id=node.id,
        )
        for target in targets:
            if target not in ctx.visited:
                queue.append(target)
                self.store.set_status(target, NodeStatus.PENDING)

    def _finish(self, ctx: RunContext, result: RunResult, started: float) -> RunResult:
        elapsed = format_elapsed(time.monotonic() - started)

        if result.status != RunStatus.CANCELLED:
            result.status = RunStatus.COMPLETED if result.error is None else RunStatus.FAILED
        result.success = result.status == RunStatus.COMPLETED
        result.finished_at = datetime.now(UTC)

        if result.status == RunStatus.COMPLETED:
            ctx.log(f"Workflow execution finished successfully in {elapsed}")
        elif result.status == RunStatus.CANCELLED:
            ctx.log(f"Workflow execution cancelled after {elapsed}", level=LogLevel.WARNING)
        else:
            ctx.log(f"Workflow execution failed after {elapsed}: {result.error}", level=LogLevel.ERROR)
        ctx.log(f"Executed {len(result.executed)} node(s) total")

        self.store.end_run(result.model_dump(mode="json"))
        return result
