"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Visualizing workflow graphs as trees
- Real-time run monitoring
- Status tables
"""

from agentflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from agentflow.cli_ui.live_monitor import LiveExecutionMonitor

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
    "LiveExecutionMonitor",
]
