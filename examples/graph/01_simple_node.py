"""
Simple Node Example

This example demonstrates:
1. Declaring a state schema with a reducer
2. A single step function between START and END
3. Invoking a compiled graph on a thread

The workflow:
- Starts with the caller's input in ``nlist``
- Node ``a`` appends "A"
"""

import asyncio
from typing import Annotated, List

from stepgraph import Graph, StateSchema, START, END, append, configure_logging, LogLevel
from stepgraph.core.logging import LogComponent, get_logger

logger = get_logger(LogComponent.WORKFLOW)


class State:
    nlist: Annotated[List[str], append] = []


def node_a(state):
    logger.info(f"node a received {state['nlist']}")
    return {"nlist": ["A"]}


def build_graph():
    graph = Graph(state_schema=StateSchema.from_class(State))
    graph.add_node("a", node_a)
    graph.add_edge(START, "a")
    graph.add_edge("a", END)
    return graph.compile()


async def main():
    configure_logging(default_level=LogLevel.INFO)
    app = build_graph()
    result = await app.invoke({"nlist": ["Hello"]}, thread_id="simple")
    logger.info(f"Final state: {result.values}")


if __name__ == "__main__":
    asyncio.run(main())
