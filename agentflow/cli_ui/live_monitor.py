"""Live execution monitoring for workflow runs.

Provides real-time terminal display of run progress, driven by execution
state store events.
"""

import asyncio
from collections.abc import Awaitable
from typing import Any

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn

from agentflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from agentflow.core.graph_schema import WorkflowGraph
from agentflow.core.state import Event, EventType, ExecutionStateStore


class LiveExecutionMonitor:
    """
    Real-time terminal UI for a run in progress.

    Features:
    - Live-updating graph visualization
    - Progress bar for completed nodes
    - Node status table
    - Log tail

    The display is redrawn whenever the store emits an event, checked at
    REFRESH_INTERVAL. The store is only read, never written.
    """

    REFRESH_INTERVAL = 0.25
    LOG_TAIL = 8

    def __init__(self, store: ExecutionStateStore, console: Console | None = None):
        self.store = store
        self.console = console or Console()
        self.graph_renderer = TerminalGraphRenderer(self.console)
        self.status_renderer = StatusTableRenderer(self.console)
        self._progress: Progress | None = None
        self._progress_task_id: int | None = None
        self._dirty = True

    def create_layout(self) -> Layout:
        """Create the terminal layout"""
        layout = Layout()

        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main"),
            Layout(name="log", size=self.LOG_TAIL + 2),
            Layout(name="footer", size=3),
        )

        layout["main"].split_row(Layout(name="graph", ratio=1), Layout(name="status", ratio=1))

        return layout

    def _on_event(self, event: Event) -> None:
        if event.event_type != EventType.NODE_OUTPUT or event.payload.get("display", True):
            self._dirty = True

    async def monitor(self, workflow: WorkflowGraph, run: Awaitable[Any]) -> Any:
        """Drive ``run`` to completion while rendering its progress.

        Returns whatever ``run`` returns; its exceptions propagate.
        """
        layout = self.create_layout()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        )
        self._progress_task_id = self._progress.add_task(
            f"Nodes: 0/{len(workflow.nodes)}", total=len(workflow.nodes) or 1
        )

        unsubscribe = self.store.subscribe(self._on_event)
        task = asyncio.ensure_future(run)
        try:
            with Live(layout, console=self.console, refresh_per_second=4):
                while not task.done():
                    if self._dirty:
                        self._dirty = False
                        self._update(layout, workflow)
                    await asyncio.wait({task}, timeout=self.REFRESH_INTERVAL)
                self._update(layout, workflow)
        finally:
            unsubscribe()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        return task.result()

    def _update(self, layout: Layout, workflow: WorkflowGraph) -> None:
        snapshot = self.store.snapshot()
        statuses = snapshot["statuses"]
        result = snapshot["result"]

        safe_name = escape(workflow.name)
        if snapshot["is_running"]:
            header_text = f"[bold blue]⟳ Executing:[/] {safe_name}"
        elif result and result.get("status") == "completed":
            header_text = f"[bold green]✓ Completed:[/] {safe_name}"
        elif result and result.get("status") == "cancelled":
            header_text = f"[bold yellow]⊘ Cancelled:[/] {safe_name}"
        elif result:
            header_text = f"[bold red]✗ Failed:[/] {safe_name}"
        else:
            header_text = f"[bold]{safe_name}[/]"
        layout["header"].update(Panel(header_text, style="bold"))

        graph_tree = self.graph_renderer.render_as_tree(workflow, statuses)
        layout["graph"].update(Panel(graph_tree, title="Workflow Graph"))

        status_table = self.status_renderer.render_status_table(
            workflow, snapshot["run_id"] or "-", statuses, snapshot["outputs"]
        )
        layout["status"].update(Panel(status_table, title="Node Status"))

        tail = snapshot["logs"][-self.LOG_TAIL :]
        log_text = "\n".join(escape(entry["message"]) for entry in tail)
        layout["log"].update(Panel(log_text, title="Log"))

        completed = sum(1 for s in statuses.values() if s == "completed")
        total = len(workflow.nodes)
        self._progress.update(
            self._progress_task_id,
            completed=completed,
            description=f"Nodes: {completed}/{total}",
        )
        layout["footer"].update(Panel(self._progress, title="Progress"))
