"""Tests for the workflow scheduler.

Tests cover:
- Start node selection and empty graphs
- Input merging and at-most-once execution (diamonds)
- Skipped nodes vs handler failures, under both failure policies
- Condition routing through source handles
- Timeouts and cancellation
- End-to-end scenarios through a real sandbox
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from agentflow.core.config import EngineConfig, FailurePolicy
from agentflow.core.graph_engine import RunStatus, WorkflowScheduler, format_elapsed
from agentflow.core.graph_schema import NodeStatus, NodeType, WorkflowGraph
from agentflow.core.state import LogLevel
from agentflow.sandbox.executor import ScriptError
from tests.conftest import ai, condition, make_graph, transform, trigger


class FakeSandbox:
    """Maps script text to a result, a callable of the input, or an exception."""

    def __init__(self, results: dict[str, Any]):
        self.results = results
        self.calls: list[tuple[str, dict]] = []

    async def execute(self, code: str, data: Any, timeout: float | None = None) -> Any:
        self.calls.append((code, data))
        outcome = self.results[code]
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(data)
        return outcome


def make_scheduler(store, collaborators, sandbox=None, **config) -> WorkflowScheduler:
    return WorkflowScheduler(
        store=store,
        collaborators=collaborators,
        config=EngineConfig(**config),
        sandbox=sandbox,
    )


def messages(store) -> list[str]:
    return [entry.message for entry in store.logs]


# =============================================================================
# Start Node and Basic Runs
# =============================================================================


class TestBasicRuns:
    def test_empty_graph_fails(self, scheduler, store):
        result = asyncio.run(scheduler.run(WorkflowGraph()))

        assert result.success is False
        assert result.status == RunStatus.FAILED
        assert "Error: No nodes found in workflow" in messages(store)

    def test_auto_selects_trigger(self, scheduler, store, chain_graph):
        result = asyncio.run(scheduler.run(chain_graph))

        assert result.success is True
        assert result.start_node_id == "t1"
        assert "Auto-selected start node: t1 (trigger)" in messages(store)
        assert result.executed == ["t1", "a1"]

    def test_chain_records_outputs_and_statuses(self, scheduler, store, chain_graph):
        asyncio.run(scheduler.run(chain_graph))

        assert store.statuses() == {"t1": NodeStatus.COMPLETED, "a1": NodeStatus.COMPLETED}
        assert store.get_output("a1") == "Hello"
        assert store.get_output("t1")["trigger"] == "manual"
        assert store.is_running is False
        assert store.last_result["status"] == "completed"

    def test_explicit_start_runs_reachable_subgraph(self, scheduler, store):
        graph = make_graph([trigger(), ai("a1", prompt="one"), ai("a2", prompt="two")], [("t1", "a1"), ("a1", "a2")])
        result = asyncio.run(scheduler.run(graph, "a1"))

        assert result.executed == ["a1", "a2"]
        assert "t1" not in store.statuses()

    def test_unknown_start_node_fails(self, scheduler, store, chain_graph):
        result = asyncio.run(scheduler.run(chain_graph, "ghost"))

        assert result.success is False
        assert "Error: Node ghost not found" in messages(store)
        assert result.executed == []

    def test_log_lines_cover_run(self, scheduler, store, chain_graph):
        asyncio.run(scheduler.run(chain_graph))
        log = messages(store)

        assert "Workflow execution started from node t1" in log
        assert "Total nodes: 2, Total edges: 1" in log
        assert '[a1] Starting execution: "a1" (type: ai)' in log
        assert "[t1] No input data" in log
        assert any(m.startswith("Workflow execution finished successfully in ") for m in log)
        assert log[-1] == "Executed 2 node(s) total"

    def test_run_does_not_mutate_caller_graph(self, scheduler, chain_graph):
        before = chain_graph.model_dump()
        asyncio.run(scheduler.run(chain_graph))
        assert chain_graph.model_dump() == before

    def test_each_run_clears_log(self, scheduler, store, chain_graph):
        asyncio.run(scheduler.run(chain_graph))
        first = len(store.logs)
        asyncio.run(scheduler.run(chain_graph))
        assert len(store.logs) == first


# =============================================================================
# Input Merging and Traversal Order
# =============================================================================


class TestMergingAndOrder:
    def test_start_node_receives_empty_input(self, store, collaborators):
        sandbox = FakeSandbox({"s": {"ok": 1}})
        graph = make_graph([transform("x", "s")])
        asyncio.run(make_scheduler(store, collaborators, sandbox).run(graph))
        assert sandbox.calls == [("s", {})]

    def test_later_edge_wins(self, store, collaborators):
        sandbox = FakeSandbox({"a": {"k": "a", "only_a": 1}, "b": {"k": "b"}, "c": lambda d: d})
        graph = make_graph(
            [trigger(), transform("a", "a"), transform("b", "b"), transform("c", "c")],
            [("t1", "a"), ("t1", "b"), ("a", "c"), ("b", "c")],
        )
        asyncio.run(make_scheduler(store, collaborators, sandbox).run(graph))

        merged = sandbox.calls[-1][1]
        assert merged["k"] == "b"
        assert merged["only_a"] == 1

    def test_diamond_runs_join_once(self, store, collaborators):
        sandbox = FakeSandbox({"b": {"b": 1}, "c": {"c": 2}, "d": lambda d: d})
        graph = make_graph(
            [trigger("a"), transform("b", "b"), transform("c", "c"), transform("d", "d")],
            [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
        )
        result = asyncio.run(make_scheduler(store, collaborators, sandbox).run(graph))

        assert result.executed == ["a", "b", "c", "d"]
        assert [code for code, _ in sandbox.calls].count("d") == 1
        assert store.get_output("d")["b"] == 1
        assert store.get_output("d")["c"] == 2

    def test_cycle_terminates(self, store, collaborators):
        sandbox = FakeSandbox({"x": {"v": 1}, "y": {"v": 2}})
        graph = make_graph(
            [trigger(), transform("x", "x"), transform("y", "y")],
            [("t1", "x"), ("x", "y"), ("y", "x")],
        )
        result = asyncio.run(make_scheduler(store, collaborators, sandbox).run(graph))
        assert result.executed == ["t1", "x", "y"]

    def test_none_output_not_recorded(self, store, collaborators):
        sandbox = FakeSandbox({"n": None})
        graph = make_graph([transform("n", "n")])
        result = asyncio.run(make_scheduler(store, collaborators, sandbox).run(graph))

        assert result.success is True
        assert "n" not in store.runtime_outputs()
        assert store.get_status("n") == NodeStatus.COMPLETED


# =============================================================================
# Skips and Failures
# =============================================================================


class TestSkipsAndFailures:
    def test_skipped_ai_node_does_not_block_sibling(self, scheduler, store, fake_inference):
        graph = make_graph(
            [trigger(), ai("skip_me", provider=None), ai("sibling", prompt="hi")],
            [("t1", "skip_me"), ("t1", "sibling")],
        )
        result = asyncio.run(scheduler.run(graph))

        assert result.success is True
        assert result.skipped == ["skip_me"]
        assert store.get_status("skip_me") == NodeStatus.COMPLETED
        assert store.get_status("sibling") == NodeStatus.COMPLETED
        assert len(fake_inference.calls) == 1
        warnings = [e for e in store.logs if e.level == LogLevel.WARNING]
        assert any("[skip_me] Skipped:" in e.message for e in warnings)

    def test_skipped_node_successors_still_run(self, scheduler, store):
        graph = make_graph(
            [trigger(), ai("skip_me", provider=None), ai("after", prompt="next")],
            [("t1", "skip_me"), ("skip_me", "after")],
        )
        result = asyncio.run(scheduler.run(graph))
        assert result.executed == ["t1", "skip_me", "after"]

    def _failing_graph(self):
        return make_graph(
            [trigger(), transform("bad", "bad"), transform("after_bad", "ok"), transform("other", "ok")],
            [("t1", "bad"), ("t1", "other"), ("bad", "after_bad")],
        )

    def test_throwing_transform_aborts_run(self, store, collaborators):
        sandbox = FakeSandbox({"bad": ScriptError("ZeroDivisionError: division by zero"), "ok": {}})
        result = asyncio.run(make_scheduler(store, collaborators, sandbox).run(self._failing_graph()))

        assert result.success is False
        assert result.status == RunStatus.FAILED
        assert result.failed_node == "bad"
        assert "division by zero" in result.error
        assert store.get_status("bad") == NodeStatus.ERROR
        assert store.get_status("after_bad") is None
        assert store.get_status("other") == NodeStatus.PENDING
        assert result.executed == ["t1"]

    def test_best_effort_continues_unrelated_branch(self, store, collaborators):
        sandbox = FakeSandbox({"bad": ScriptError("boom"), "ok": {"fine": True}})
        scheduler = make_scheduler(
            store, collaborators, sandbox, failure_policy=FailurePolicy.BEST_EFFORT
        )
        result = asyncio.run(scheduler.run(self._failing_graph()))

        assert result.success is False
        assert result.failed_node == "bad"
        assert store.get_status("other") == NodeStatus.COMPLETED
        assert store.get_status("after_bad") is None

    def test_failed_node_logged_with_elapsed(self, store, collaborators):
        sandbox = FakeSandbox({"bad": ScriptError("boom"), "ok": {}})
        asyncio.run(make_scheduler(store, collaborators, sandbox).run(self._failing_graph()))
        errors = [e.message for e in store.logs if e.level == LogLevel.ERROR]
        assert any(m.startswith("[bad] Error after ") and m.endswith(": boom") for m in errors)

    def test_no_node_left_running(self, store, collaborators):
        sandbox = FakeSandbox({"bad": RuntimeError("crash"), "ok": {}})
        asyncio.run(make_scheduler(store, collaborators, sandbox).run(self._failing_graph()))
        assert NodeStatus.RUNNING not in store.statuses().values()


# =============================================================================
# Condition Routing
# =============================================================================


class TestConditionRouting:
    def _graph(self):
        return make_graph(
            [
                trigger(),
                transform("set", "set"),
                condition("check", "x", ">", 10),
                ai("yes", prompt="big"),
                ai("no", prompt="small"),
            ],
            [("t1", "set"), ("set", "check"), ("check", "yes", "true"), ("check", "no", "false")],
        )

    @pytest.mark.parametrize("x,taken,not_taken", [(11, "yes", "no"), (3, "no", "yes")])
    def test_only_matching_branch_runs(self, store, collaborators, x, taken, not_taken):
        sandbox = FakeSandbox({"set": {"x": x}})
        result = asyncio.run(make_scheduler(store, collaborators, sandbox).run(self._graph()))

        assert result.success is True
        assert taken in result.executed
        assert store.get_status(not_taken) is None
        assert store.get_output(taken) in ("big", "small")


# =============================================================================
# Timeouts and Cancellation
# =============================================================================


async def _hang(node, data, ctx):
    await asyncio.sleep(30)


class TestTimeoutsAndCancellation:
    def test_node_timeout_is_failure(self, scheduler, store):
        scheduler.register_handler(NodeType.AI, _hang)
        graph = make_graph([trigger(), {**ai("slow"), "config": {"timeout": 0.05}}], [("t1", "slow")])

        result = asyncio.run(scheduler.run(graph))

        assert result.success is False
        assert result.failed_node == "slow"
        assert "timed out after 0.05s" in result.error
        assert store.get_status("slow") == NodeStatus.ERROR

    def test_per_type_timeout_from_config(self, store, collaborators):
        scheduler = make_scheduler(store, collaborators, node_timeouts={"ai": 0.05})
        scheduler.register_handler(NodeType.AI, _hang)
        graph = make_graph([trigger(), ai("slow")], [("t1", "slow")])

        result = asyncio.run(scheduler.run(graph))
        assert "timed out" in result.error

    def test_cancel_mid_node(self, scheduler, store):
        scheduler.register_handler(NodeType.AI, _hang)
        graph = make_graph([trigger(), ai("slow"), ai("later")], [("t1", "slow"), ("slow", "later")])

        async def main():
            cancel = asyncio.Event()
            task = asyncio.create_task(scheduler.run(graph, cancel_event=cancel))
            await asyncio.sleep(0.1)
            cancel.set()
            return await task

        result = asyncio.run(main())

        assert result.status == RunStatus.CANCELLED
        assert result.success is False
        assert store.get_status("slow") == NodeStatus.ERROR
        assert store.get_status("later") is None
        assert store.is_running is False

    def test_cancel_before_start(self, scheduler, store, chain_graph):
        async def main():
            cancel = asyncio.Event()
            cancel.set()
            return await scheduler.run(chain_graph, cancel_event=cancel)

        result = asyncio.run(main())
        assert result.status == RunStatus.CANCELLED
        assert result.executed == []


def test_format_elapsed():
    assert format_elapsed(0.25) == "250ms"
    assert format_elapsed(1.5) == "1.50s"


# =============================================================================
# End-to-End Through the Real Sandbox
# =============================================================================


@pytest.mark.sandbox
class TestEndToEnd:
    def test_transform_then_prompt(self, scheduler, store, fake_inference):
        graph = make_graph(
            [
                trigger(),
                transform("seed", "return {'n': 21}"),
                transform("double", "return {'x': data['n'] * 2}"),
                ai("a1", prompt="Value: {{x}}"),
            ],
            [("t1", "seed"), ("seed", "double"), ("double", "a1")],
        )

        result = asyncio.run(scheduler.run(graph))

        assert result.success is True
        assert fake_inference.calls[0]["prompt"] == "Value: 42"
        assert store.get_output("a1") == "Value: 42"
        assert len(store.logs) >= 3

    def test_transform_reads_input(self, scheduler, store):
        graph = make_graph(
            [trigger(), transform("kind", "return {'kind': data['trigger']}")],
            [("t1", "kind")],
        )
        asyncio.run(scheduler.run(graph))
        assert store.get_output("kind") == {"kind": "manual"}

    def test_throwing_script_fails_run(self, scheduler, store):
        graph = make_graph(
            [trigger(), transform("bad", "return 1 / 0"), ai("after", prompt="x")],
            [("t1", "bad"), ("bad", "after")],
        )
        result = asyncio.run(scheduler.run(graph))

        assert result.success is False
        assert "ZeroDivisionError" in result.error
        assert store.get_status("after") is None
