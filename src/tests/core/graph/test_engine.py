"""Tests for the super-step scheduler.

This module tests:
- Sequential, parallel (fan-out/fan-in) and Command-routed execution
- Deterministic merge order
- Error wrapping and step atomicity
- Execution limits (max_steps, node_timeout, max_concurrency)
- Streaming, snapshots, history and per-thread memory
"""

import asyncio
import random
import time
from typing import Annotated, Dict, List

import pytest

from stepgraph.core.config import GraphConfig
from stepgraph.core.errors import (
    GraphRecursionError,
    InvalidUpdateError,
    NodeExecutionError,
    NodeTimeoutError,
    ReducerMismatchError,
    UnknownDestinationError,
)
from stepgraph.core.graph.base import Graph
from stepgraph.core.graph.checkpoint import InMemoryCheckpointStore
from stepgraph.core.graph.engine import CompiledGraph
from stepgraph.core.graph.nodes.base.node import terminal_node
from stepgraph.core.graph.state import StateSchema, add
from stepgraph.core.graph.types import END, START, Command, RunStatus
from tests.core.graph.helpers import appender


def delayed_appender(value: str, delay: float):
    async def step(state):
        await asyncio.sleep(delay)
        return {"log": [value]}
    return step


@pytest.fixture
def diamond(log_schema: StateSchema) -> Graph:
    """A -> (B, C) -> D."""
    graph = Graph(state_schema=log_schema)
    for node_id in "ABCD":
        graph.add_node(node_id, appender(node_id))
    graph.add_edge(START, "A")
    graph.add_edge("A", "B")
    graph.add_edge("A", "C")
    graph.add_edge("B", "D")
    graph.add_edge("C", "D")
    graph.add_edge("D", END)
    return graph


@pytest.fixture
def linear(log_schema: StateSchema) -> Graph:
    """a -> b -> c."""
    graph = Graph(state_schema=log_schema)
    for node_id in "abc":
        graph.add_node(node_id, appender(node_id))
    graph.add_edge(START, "a")
    graph.add_edge("a", "b")
    graph.add_edge("b", "c")
    graph.add_edge("c", END)
    return graph


class TestExecution:
    """Test basic graph execution."""

    @pytest.mark.asyncio
    async def test_single_node(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", appender("a"))
        graph.add_edge(START, "a")
        graph.add_edge("a", END)

        result = await graph.compile().invoke({"log": ["initial"]}, thread_id="t1")
        assert result.status == RunStatus.COMPLETED
        assert result["log"] == ["initial", "a"]
        assert not result.interrupted

    @pytest.mark.asyncio
    async def test_linear(self, linear: Graph):
        result = await linear.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == ["a", "b", "c"]
        assert result.step == 3

    @pytest.mark.asyncio
    async def test_diamond_fan_in_runs_join_once(self, diamond: Graph):
        result = await diamond.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == ["A", "B", "C", "D"]

    @pytest.mark.asyncio
    async def test_merge_order_ignores_completion_order(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("A", appender("A"))
        graph.add_node("B", delayed_appender("B", 0.05))
        graph.add_node("C", delayed_appender("C", 0.0))
        graph.add_node("D", appender("D"))
        graph.add_edge(START, "A")
        graph.add_edge("A", "B")
        graph.add_edge("A", "C")
        graph.add_edge("B", "D")
        graph.add_edge("C", "D")

        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == ["A", "B", "C", "D"]

    @pytest.mark.asyncio
    async def test_deterministic_across_runs(self, log_schema: StateSchema):
        def build():
            graph = Graph(state_schema=log_schema)
            graph.add_node("A", appender("A"))
            for node_id in ("B", "C", "E"):
                graph.add_node(node_id, delayed_appender(node_id, random.uniform(0, 0.02)))
            graph.add_node("D", appender("D"))
            graph.add_edge(START, "A")
            for node_id in ("B", "C", "E"):
                graph.add_edge("A", node_id)
                graph.add_edge(node_id, "D")
            return graph.compile()

        logs = [(await build().invoke({}, thread_id="t")).values["log"] for _ in range(5)]
        assert all(log == ["A", "B", "C", "E", "D"] for log in logs)

    @pytest.mark.asyncio
    async def test_nodes_see_step_start_snapshot(self, log_schema: StateSchema):
        seen: Dict[str, List[str]] = {}

        def reader(name):
            def step(state):
                seen[name] = list(state["log"])
                return {"log": [name]}
            return step

        graph = Graph(state_schema=log_schema)
        graph.add_node("A", appender("A"))
        graph.add_node("B", reader("B"))
        graph.add_node("C", reader("C"))
        graph.add_edge(START, "A")
        graph.add_edge("A", "B")
        graph.add_edge("A", "C")

        await graph.compile().invoke({}, thread_id="t1")
        assert seen == {"B": ["A"], "C": ["A"]}

    @pytest.mark.asyncio
    async def test_node_mutation_does_not_leak(self, log_schema: StateSchema):
        def mutate(state):
            state["log"].append("sneaky")
            return None

        graph = Graph(state_schema=log_schema)
        graph.add_node("a", mutate)
        graph.set_entry_point("a")

        result = await graph.compile().invoke({"log": ["x"]}, thread_id="t1")
        assert result.values["log"] == ["x"]

    @pytest.mark.asyncio
    async def test_terminal_node_completes(self, log_schema: StateSchema):
        @terminal_node
        def finish(state):
            return {"log": ["done"]}

        graph = Graph(state_schema=log_schema)
        graph.add_node("finish", finish)
        graph.set_entry_point("finish")

        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.status == RunStatus.COMPLETED
        assert result.values["log"] == ["done"]

    @pytest.mark.asyncio
    async def test_no_successors_completes(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", appender("a"))
        graph.set_entry_point("a")
        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_generated_thread_id(self, linear: Graph):
        result = await linear.compile().invoke({})
        assert result.thread_id


class TestRouting:
    """Test Command and conditional routing."""

    @pytest.mark.asyncio
    async def test_command_goto(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: Command(update={"log": ["a"]}, goto="c"), ends=["b", "c"])
        graph.add_node("b", appender("b"))
        graph.add_node("c", appender("c"))
        graph.add_edge(START, "a")
        graph.add_edge("a", "b")

        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_command_goto_end(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: Command(update={"log": ["a"]}, goto=END))
        graph.add_node("b", appender("b"))
        graph.add_edge(START, "a")
        graph.add_edge("a", "b")

        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == ["a"]
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_command_fan_out(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: Command(goto=["c", "b"]))
        graph.add_node("b", appender("b"))
        graph.add_node("c", appender("c"))
        graph.set_entry_point("a")

        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_goto_unknown_node(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: Command(goto="nowhere"))
        graph.set_entry_point("a")

        with pytest.raises(UnknownDestinationError) as exc_info:
            await graph.compile().invoke({}, thread_id="t1")
        assert exc_info.value.node_id == "a"
        assert exc_info.value.thread_id == "t1"

    @pytest.mark.asyncio
    async def test_goto_outside_declared_ends(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: Command(goto="c"), ends=["b"])
        graph.add_node("b", appender("b"))
        graph.add_node("c", appender("c"))
        graph.set_entry_point("a")

        with pytest.raises(UnknownDestinationError):
            await graph.compile().invoke({}, thread_id="t1")

    @pytest.mark.asyncio
    async def test_conditional_edges(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("classify", lambda s: {"topic": "bug"})
        graph.add_node("ticket", appender("ticket"))
        graph.add_node("answer", appender("answer"))
        graph.set_entry_point("classify")
        graph.add_conditional_edges(
            "classify",
            lambda s: s["topic"],
            {"bug": "ticket", "question": "answer", "spam": END},
        )
        app = graph.compile()

        result = await app.invoke({}, thread_id="bug")
        assert result.values["log"] == ["ticket"]

    @pytest.mark.asyncio
    async def test_conditional_edge_to_end(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("classify", lambda s: {"topic": "spam"})
        graph.add_node("ticket", appender("ticket"))
        graph.set_entry_point("classify")
        graph.add_conditional_edges("classify", lambda s: s["topic"], {"bug": "ticket", "spam": END})

        result = await graph.compile().invoke({}, thread_id="t1")
        assert result.values["log"] == []
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_router_error_wrapped(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", appender("a"))
        graph.add_conditional_edges(START, lambda s: s["missing"], ["a"])

        with pytest.raises(NodeExecutionError) as exc_info:
            await graph.compile().invoke({}, thread_id="t1")
        error = exc_info.value
        assert isinstance(error.__cause__, KeyError)
        assert error.node_id == START
        assert error.thread_id == "t1"
        assert error.step == 0

    @pytest.mark.asyncio
    async def test_start_path_map_miss_wrapped(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", appender("a"))
        graph.add_conditional_edges(START, lambda s: s["topic"], {"known": "a"})
        app = graph.compile()

        with pytest.raises(NodeExecutionError) as exc_info:
            await app.invoke({"topic": "other"}, thread_id="t1")
        assert exc_info.value.node_id == START
        assert app.get_state("t1").status == RunStatus.IDLE

    def test_idle_snapshot_skips_routers(self, log_schema: StateSchema):
        calls: List[str] = []

        def router(state):
            calls.append("router")
            return "b"

        graph = Graph(state_schema=log_schema)
        graph.add_node("a", appender("a"))
        graph.add_node("b", appender("b"))
        graph.set_entry_point("a")
        graph.add_conditional_edges(START, router, ["b"])

        snapshot = graph.compile().get_state("never-run")
        assert snapshot.next == ["a"]
        assert calls == []


class TestErrors:
    """Test error wrapping and step atomicity."""

    @pytest.mark.asyncio
    async def test_node_error_wrapped(self, linear: Graph):
        def broken(state):
            raise ValueError("boom")

        linear.nodes["b"].func = broken
        app = linear.compile()

        with pytest.raises(NodeExecutionError) as exc_info:
            await app.invoke({}, thread_id="t1")
        error = exc_info.value
        assert isinstance(error.__cause__, ValueError)
        assert error.node_id == "b"
        assert error.thread_id == "t1"
        assert error.step == 2

    @pytest.mark.asyncio
    async def test_failed_step_not_persisted(self, linear: Graph):
        calls = {"n": 0}

        def flaky(state):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")
            return {"log": ["b"]}

        linear.nodes["b"].func = flaky
        app = linear.compile()

        with pytest.raises(NodeExecutionError):
            await app.invoke({}, thread_id="t1")
        snapshot = app.get_state("t1")
        assert snapshot.values["log"] == ["a"]
        assert snapshot.next == ["b"]
        assert snapshot.status == RunStatus.RUNNING

        result = await app.invoke(None, thread_id="t1")
        assert result.values["log"] == ["a", "b", "c"]
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_sibling_failure_discards_whole_step(self, diamond: Graph):
        def broken(state):
            raise ValueError("C failed")

        diamond.nodes["C"].func = broken
        app = diamond.compile()

        with pytest.raises(NodeExecutionError) as exc_info:
            await app.invoke({}, thread_id="t1")
        assert exc_info.value.node_id == "C"
        assert app.get_state("t1").values["log"] == ["A"]

    @pytest.mark.asyncio
    async def test_first_failure_in_declaration_order(self, diamond: Graph):
        def broken(state):
            raise ValueError("failed")

        diamond.nodes["B"].func = broken
        diamond.nodes["C"].func = broken
        with pytest.raises(NodeExecutionError) as exc_info:
            await diamond.compile().invoke({}, thread_id="t1")
        assert exc_info.value.node_id == "B"

    @pytest.mark.asyncio
    async def test_reducer_mismatch(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: {"log": "not-a-list"})
        graph.set_entry_point("a")

        with pytest.raises(ReducerMismatchError) as exc_info:
            await graph.compile().invoke({}, thread_id="t1")
        assert exc_info.value.field == "log"
        assert exc_info.value.node_id == "a"
        assert exc_info.value.step == 1

    @pytest.mark.asyncio
    async def test_invalid_input(self, linear: Graph):
        with pytest.raises(ReducerMismatchError):
            await linear.compile().invoke({"log": "x"}, thread_id="t1")

    @pytest.mark.asyncio
    async def test_unknown_field_update(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: {"unknown": 1})
        graph.set_entry_point("a")

        with pytest.raises(InvalidUpdateError):
            await graph.compile().invoke({}, thread_id="t1")

    @pytest.mark.asyncio
    async def test_write_outside_declared_fields(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: {"log": ["a"]}, writes=["topic"])
        graph.set_entry_point("a")

        with pytest.raises(InvalidUpdateError):
            await graph.compile().invoke({}, thread_id="t1")

    @pytest.mark.asyncio
    async def test_unsupported_return_type(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("a", lambda s: "b")
        graph.set_entry_point("a")

        with pytest.raises(InvalidUpdateError):
            await graph.compile().invoke({}, thread_id="t1")


class TestLimits:
    """Test execution limits."""

    @pytest.mark.asyncio
    async def test_max_steps(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema, config=GraphConfig(max_steps=3))
        graph.add_node("ping", appender("ping"))
        graph.add_node("pong", appender("pong"))
        graph.add_edge(START, "ping")
        graph.add_edge("ping", "pong")
        graph.add_edge("pong", "ping")

        with pytest.raises(GraphRecursionError):
            await graph.compile().invoke({}, thread_id="t1")

    @pytest.mark.asyncio
    async def test_node_timeout(self, log_schema: StateSchema):
        graph = Graph(state_schema=log_schema, config=GraphConfig(node_timeout=0.05))
        graph.add_node("slow", delayed_appender("slow", 1.0))
        graph.set_entry_point("slow")

        with pytest.raises(NodeTimeoutError) as exc_info:
            await graph.compile().invoke({}, thread_id="t1")
        assert exc_info.value.node_id == "slow"
        assert isinstance(exc_info.value, NodeExecutionError)

    @pytest.mark.asyncio
    async def test_sync_node_timeout_returns_promptly(self, log_schema: StateSchema):
        def blocking(state):
            time.sleep(0.5)
            return {"log": ["late"]}

        graph = Graph(state_schema=log_schema, config=GraphConfig(node_timeout=0.05))
        graph.add_node("blocking", blocking)
        graph.set_entry_point("blocking")

        started = time.monotonic()
        with pytest.raises(NodeTimeoutError):
            await graph.compile().invoke({}, thread_id="t1")
        # The worker thread is left running; only the invocation gives up.
        assert time.monotonic() - started < 0.4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit,expected", [(None, 3), (1, 1), (2, 2)])
    async def test_max_concurrency(self, log_schema: StateSchema, limit, expected):
        active = {"now": 0, "peak": 0}

        def tracked(name):
            async def step(state):
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
                await asyncio.sleep(0.02)
                active["now"] -= 1
                return {"log": [name]}
            return step

        graph = Graph(state_schema=log_schema)
        graph.add_node("root", appender("root"))
        for name in ("x", "y", "z"):
            graph.add_node(name, tracked(name))
            graph.add_edge("root", name)
        graph.set_entry_point("root")

        result = await graph.compile(config=GraphConfig(max_concurrency=limit)).invoke({}, thread_id="t1")
        assert active["peak"] == expected
        assert result.values["log"] == ["root", "x", "y", "z"]


class TestStreamingAndState:
    """Test streaming, snapshots and history."""

    @pytest.mark.asyncio
    async def test_stream_events(self, diamond: Graph):
        events = [event async for event in diamond.compile().stream({}, thread_id="t1")]
        assert [e.nodes for e in events] == [["A"], ["B", "C"], ["D"]]
        assert [e.next for e in events] == [["B", "C"], ["D"], []]
        assert events[-1].status == RunStatus.COMPLETED
        assert events[1].updates == {"B": {"log": ["B"]}, "C": {"log": ["C"]}}

    def test_state_of_unknown_thread(self, linear: Graph):
        snapshot = linear.compile().get_state("never-run")
        assert snapshot.status == RunStatus.IDLE
        assert snapshot.values == {"log": [], "topic": None}
        assert snapshot.next == ["a"]

    @pytest.mark.asyncio
    async def test_history_oldest_first(self, linear: Graph):
        app = linear.compile()
        await app.invoke({}, thread_id="t1")
        history = app.get_state_history("t1")
        assert [s.step for s in history] == [0, 1, 2, 3]
        assert [s.next for s in history] == [["a"], ["b"], ["c"], []]
        assert history[-1].status == RunStatus.COMPLETED
        assert history[1].values["log"] == ["a"]


class TestMemory:
    """Test per-thread persistence across invocations."""

    @pytest.mark.asyncio
    async def test_same_thread_accumulates(self, linear: Graph):
        app = linear.compile()
        await app.invoke({"topic": "first"}, thread_id="t1")
        result = await app.invoke({"topic": "second"}, thread_id="t1")
        assert result.values["log"] == ["a", "b", "c", "a", "b", "c"]
        assert result.values["topic"] == "second"

    @pytest.mark.asyncio
    async def test_threads_isolated(self, linear: Graph):
        app = linear.compile()
        await app.invoke({}, thread_id="t1")
        result = await app.invoke({}, thread_id="t2")
        assert result.values["log"] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_concurrent_threads_share_store(self):
        class Counter:
            total: Annotated[int, add] = 0

        schema = StateSchema.from_class(Counter)
        graph = Graph(state_schema=schema)

        async def bump(state):
            await asyncio.sleep(random.uniform(0, 0.01))
            return {"total": 1}

        graph.add_node("bump", bump)
        graph.add_node("again", bump)
        graph.add_edge(START, "bump")
        graph.add_edge("bump", "again")
        store = InMemoryCheckpointStore()
        app = graph.compile(store=store)

        results = await asyncio.gather(*(app.invoke({}, thread_id=f"t{i}") for i in range(10)))
        assert all(r.values["total"] == 2 for r in results)
        assert sorted(store.threads()) == sorted(f"t{i}" for i in range(10))

    @pytest.mark.asyncio
    async def test_same_thread_invocations_serialised(self, linear: Graph):
        app = linear.compile()
        await asyncio.gather(*(app.invoke({}, thread_id="shared") for _ in range(3)))
        assert app.get_state("shared").values["log"] == ["a", "b", "c"] * 3

    @pytest.mark.asyncio
    async def test_thread_locks_released(self, linear: Graph):
        app = linear.compile()
        await asyncio.gather(*(app.invoke({}, thread_id=f"t{i % 3}") for i in range(9)))
        assert app._thread_locks == {}
        assert app._thread_users == {}

    @pytest.mark.asyncio
    async def test_thread_lock_released_after_failure(self, linear: Graph):
        def broken(state):
            raise ValueError("boom")

        linear.nodes["b"].func = broken
        app = linear.compile()
        with pytest.raises(NodeExecutionError):
            await app.invoke({}, thread_id="t1")
        assert app._thread_locks == {}


def test_compiled_graph_type(linear: Graph):
    assert isinstance(linear.compile(), CompiledGraph)
