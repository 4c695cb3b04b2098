"""Agentflow - workflow execution engine for AI-agent graphs.

Runs small directed graphs of typed nodes (triggers, inference calls, HTTP
actions, spreadsheet I/O, sandboxed transforms) and exposes live execution
state to observers.
"""

__version__ = "0.1.0"
