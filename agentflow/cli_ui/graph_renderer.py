"""Terminal graph rendering for workflow visualization.

Provides tree-based views of workflow graphs and node status tables using Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from agentflow.core.graph_schema import Edge, Node, NodeStatus, NodeType, WorkflowGraph


def _normalize_status(status: NodeStatus | str | None) -> str:
    """Normalize status to string for consistent lookup."""
    if isinstance(status, NodeStatus):
        return status.value
    return str(status) if status else ""


class TerminalGraphRenderer:
    """
    Renders workflow graphs as Rich trees.

    Roots are the nodes without incoming edges (the start node first). A node
    reached again through a second path is shown once more as a reference, so
    diamonds and cycles stay finite.
    """

    # Node type symbols and colors
    NODE_STYLES = {
        NodeType.TRIGGER: ("[T]", "green"),
        NodeType.LOGIC: ("[L]", "magenta"),
        NodeType.AI: ("[A]", "cyan"),
        NodeType.ACTION: ("[!]", "yellow"),
        NodeType.HTTP_REQUEST: ("[H]", "blue"),
        NodeType.GOOGLE_SHEETS: ("[S]", "white"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "running": "blue bold",
        "completed": "green",
        "error": "red bold",
    }

    STATUS_INDICATORS = {
        "completed": " ✓",
        "error": " ✗",
        "running": " ⟳",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _build_edge_map(self, workflow: WorkflowGraph) -> dict[str, list[Edge]]:
        """Outgoing edges by source node ID."""
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in workflow.nodes}
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
        return edge_map

    def _roots(self, workflow: WorkflowGraph, start_node_id: str | None) -> list[Node]:
        targets = {e.target for e in workflow.edges}
        roots = [n for n in workflow.nodes if n.id not in targets]
        start = workflow.get_node(start_node_id or workflow.default_start_node() or "")
        if start is not None:
            roots = [start] + [n for n in roots if n.id != start.id]
        return roots

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, NodeStatus | str] | None = None,
        start_node_id: str | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render workflow as a Rich Tree (hierarchical view).

        Args:
            workflow: The workflow graph to render
            statuses: Optional dict of node_id -> current status
            start_node_id: Node to place first; defaults to the auto-selected start
            max_depth: Maximum tree depth
        """
        # Escape user strings to prevent Rich markup injection
        tree = Tree(f"[bold]{escape(workflow.name)}[/] (v{escape(workflow.version)})")

        if not workflow.nodes:
            tree.add("[dim]No nodes[/]")
            return tree

        node_map = {n.id: n for n in workflow.nodes}
        edge_map = self._build_edge_map(workflow)
        shown: set[str] = set()

        roots = self._roots(workflow, start_node_id)
        if not roots:
            # Every node has an incoming edge (pure cycle)
            roots = [workflow.nodes[0]]
        for root in roots:
            self._add_node_to_tree(tree, root, statuses, node_map, edge_map, shown, 0, max_depth)

        for node in workflow.nodes:
            if node.id not in shown:
                self._add_node_to_tree(tree, node, statuses, node_map, edge_map, shown, 0, max_depth)

        return tree

    def _node_text(self, node: Node, statuses: dict[str, NodeStatus | str] | None) -> str:
        symbol, color = self.NODE_STYLES.get(node.type, ("[ ]", "white"))
        safe_label = escape(node.display_label)
        status = _normalize_status(statuses.get(node.id)) if statuses else ""
        if status and status != "pending":
            status_color = self.STATUS_COLORS.get(status, "white")
            indicator = self.STATUS_INDICATORS.get(status, "")
            return f"[{status_color}]{symbol} {safe_label}{indicator}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, NodeStatus | str] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        shown: set[str],
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in shown:
            parent.add(f"[dim]↩ {escape(node.id)}[/]")
            return
        shown.add(node.id)

        branch = parent.add(self._node_text(node, statuses))
        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                branch.add(f"[red]missing node {escape(edge.target)}[/]")
                continue
            target_parent = branch
            if edge.source_handle:
                target_parent = branch.add(f"[dim]({escape(edge.source_handle)})[/]")
            self._add_node_to_tree(
                target_parent, child, statuses, node_map, edge_map, shown, depth + 1, max_depth
            )


class StatusTableRenderer:
    """Renders node execution status as a Rich table.

    All user-controlled strings (node labels, outputs, run id) are escaped to
    prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(
        self,
        workflow: WorkflowGraph,
        run_id: str,
        statuses: dict[str, NodeStatus | str],
        outputs: dict[str, Any] | None = None,
    ) -> Table:
        table = Table(title=f"Run: {escape(run_id[:12])}")

        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Output", max_width=40)

        for node in workflow.nodes:
            status = _normalize_status(statuses.get(node.id))
            val = outputs.get(node.id) if outputs else None
            output = val if val is not None else ""

            if status == "completed":
                status_text = "[green]✓ Completed[/]"
            elif status == "error":
                status_text = "[red]✗ Error[/]"
            elif status == "running":
                status_text = "[blue]⟳ Running[/]"
            elif status == "pending":
                status_text = "[yellow]○ Pending[/]"
            else:
                status_text = "[dim]- Not reached[/]"

            output_str = escape(str(output))
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(escape(node.display_label), node.type.value, status_text, output_str)

        return table
