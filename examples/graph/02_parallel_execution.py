"""
Parallel Execution Example

This example demonstrates:
1. Fan-out from one node to several
2. Fan-in: the join node runs once, after every branch finished
3. Deterministic merge order regardless of which branch finishes first

The workflow:
    a -> (b, c) -> d
"""

import asyncio
import random
from typing import Annotated, List

from stepgraph import Graph, StateSchema, START, END, append, configure_logging
from stepgraph.core.logging import LogComponent, get_logger

logger = get_logger(LogComponent.WORKFLOW)


class State:
    nlist: Annotated[List[str], append] = []


def make_node(name: str):
    async def node(state):
        await asyncio.sleep(random.uniform(0, 0.2))
        logger.info(f"Adding {name} to {state['nlist']}")
        return {"nlist": [name]}
    return node


def build_graph():
    graph = Graph(state_schema=StateSchema.from_class(State))
    for name in ("a", "b", "c", "d"):
        graph.add_node(name, make_node(name.upper()))
    graph.add_edge(START, "a")
    graph.add_edge("a", "b")
    graph.add_edge("a", "c")
    graph.add_edge("b", "d")
    graph.add_edge("c", "d")
    graph.add_edge("d", END)
    return graph.compile()


async def main():
    configure_logging()
    app = build_graph()
    async for event in app.stream({"nlist": ["Initial String:"]}, thread_id="parallel"):
        logger.info(f"step {event.step}: ran {event.nodes}, next {event.next or ['END']}")
    logger.info(f"Final state: {app.get_state('parallel').values}")


if __name__ == "__main__":
    asyncio.run(main())
