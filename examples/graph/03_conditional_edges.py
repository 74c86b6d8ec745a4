"""
Conditional Edges Example

This example demonstrates:
1. Routing with ``Command(goto=...)`` from inside a node
2. Declaring a node's possible destinations with ``ends``
3. Ending a run early with ``END``

The workflow:
- Node ``a`` reads the last entry of ``nlist`` and routes to ``b``, ``c`` or END
"""

import asyncio
from typing import Annotated, List

from stepgraph import Graph, StateSchema, START, END, Command, append, configure_logging
from stepgraph.core.graph.viz import GraphVisualizer
from stepgraph.core.logging import LogComponent, get_logger

logger = get_logger(LogComponent.WORKFLOW)


class State:
    nlist: Annotated[List[str], append] = []


def node_a(state):
    select = state["nlist"][-1]
    goto = {"b": "b", "c": "c"}.get(select, END)
    return Command(update={"nlist": [select]}, goto=goto)


def node_b(state):
    return {"nlist": ["B"]}


def node_c(state):
    return {"nlist": ["C"]}


def build_graph():
    graph = Graph(state_schema=StateSchema.from_class(State))
    graph.add_node("a", node_a, ends=["b", "c", END])
    graph.add_node("b", node_b)
    graph.add_node("c", node_c)
    graph.add_edge(START, "a")
    graph.add_edge("b", END)
    graph.add_edge("c", END)
    return graph


async def main():
    configure_logging()
    graph = build_graph()
    print(GraphVisualizer(graph).render_graph())

    app = graph.compile()
    for i, choice in enumerate(["b", "c", "q"]):
        result = await app.invoke({"nlist": [choice]}, thread_id=f"choice-{i}")
        logger.info(f"{choice!r} -> {result.values['nlist']}")


if __name__ == "__main__":
    asyncio.run(main())
