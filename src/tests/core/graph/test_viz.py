"""Tests for graph visualization."""

import pytest

from stepgraph.core.graph.base import Graph
from stepgraph.core.graph.nodes.base.node import terminal_node
from stepgraph.core.graph.state import StateSnapshot
from stepgraph.core.graph.types import END, START, Interrupt
from stepgraph.core.graph.viz import GraphVisualizer, mermaid_id
from tests.core.graph.helpers import appender


@pytest.fixture
def visualizer(log_schema) -> GraphVisualizer:
    @terminal_node
    def send_reply(state):
        return None

    graph = Graph(state_schema=log_schema)
    graph.add_node("classify", appender("classify"))
    graph.add_node("ticket", appender("ticket"))
    graph.add_node("write", appender("write"), ends=["review", "send_reply"])
    graph.add_node("review", appender("review"))
    graph.add_node("send_reply", send_reply)
    graph.add_edge(START, "classify")
    graph.add_conditional_edges("classify", lambda s: "bug", {"bug": "ticket", "other": "write"})
    graph.add_edge("ticket", "write")
    return GraphVisualizer(graph)


class TestGraphVisualizer:
    """Test suite for Mermaid rendering."""

    def test_render_graph(self, visualizer: GraphVisualizer):
        diagram = visualizer.render_graph()
        assert diagram.startswith("graph TD")
        assert f"{START} --> classify" in diagram
        assert "ticket --> write" in diagram
        assert f"send_reply --> {END}" in diagram

    def test_conditional_and_command_edges_dashed(self, visualizer: GraphVisualizer):
        diagram = visualizer.render_graph()
        assert "classify -.->|bug| ticket" in diagram
        assert "classify -.->|other| write" in diagram
        assert "write -.->|goto| review" in diagram

    def test_start_end_styled(self, visualizer: GraphVisualizer):
        diagram = visualizer.render_graph()
        assert f'{START}(["START"])' in diagram
        assert f"class {START},{END} terminus" in diagram

    def test_render_execution(self, visualizer: GraphVisualizer):
        snapshot = StateSnapshot(
            thread_id="t1",
            next=["review", "ticket"],
            interrupts=[Interrupt(id="review:0", node_id="review")],
        )
        diagram = visualizer.render_execution(snapshot)
        assert "class ticket pending" in diagram
        assert "class review interrupted" in diagram

    def test_render_html(self, visualizer: GraphVisualizer):
        page = visualizer.render_html(title="Email <Workflow>")
        assert "<title>Email &lt;Workflow&gt;</title>" in page
        assert 'class="mermaid"' in page
        assert "graph TD" in page

    def test_unsafe_ids_escaped(self, log_schema):
        graph = Graph(state_schema=log_schema)
        graph.add_node("read email", appender("read"))
        graph.add_node('say "hi" [now]', appender("say"))
        graph.add_node("end", appender("end"))
        graph.add_edge(START, "read email")
        graph.add_conditional_edges("read email", lambda s: "a|b", {"a|b": 'say "hi" [now]', "stop": "end"})
        visualizer = GraphVisualizer(graph)
        diagram = visualizer.render_graph()

        read_id = mermaid_id("read email")
        say_id = mermaid_id('say "hi" [now]')
        end_id = mermaid_id("end")
        assert " " not in read_id and "[" not in say_id and end_id != "end"
        assert f'{read_id}["read email"]' in diagram
        assert f'{say_id}["say #quot;hi#quot; [now]"]' in diagram
        assert f"{START} --> {read_id}" in diagram
        assert f"{read_id} -.->|a#124;b| {say_id}" in diagram
        assert f"{read_id} -.->|stop| {end_id}" in diagram

        highlighted = visualizer.render_execution(StateSnapshot(thread_id="t1", next=["read email"]))
        assert f"class {read_id} pending" in highlighted

    def test_distinct_ids_stay_distinct(self):
        assert mermaid_id("a b") != mermaid_id("a_b")
        assert mermaid_id("plain_id") == "plain_id"
