"""
Interrupts Example

This example demonstrates:
1. Pausing a node with ``interrupt`` when it needs human input
2. Inspecting the pending interrupt payload
3. Resuming the same thread with ``ResumeCommand``

Node ``a`` routes on the last entry of ``nlist``. Unexpected input pauses the
run and asks an operator whether to continue.
"""

import asyncio
from typing import Annotated, List

from stepgraph import (
    Graph,
    StateSchema,
    START,
    END,
    Command,
    ResumeCommand,
    append,
    interrupt,
    configure_logging,
)
from stepgraph.core.logging import LogComponent, get_logger

logger = get_logger(LogComponent.WORKFLOW)


class State:
    nlist: Annotated[List[str], append] = []


def node_a(state):
    select = state["nlist"][-1]
    if select in ("b", "c"):
        return Command(update={"nlist": [select]}, goto=select)
    if select == "q":
        return Command(goto=END)

    # Everything above this call runs again on resume.
    admin = interrupt({"message": f"Unexpected input {select!r}! Continue?"})
    if admin == "continue":
        return Command(update={"nlist": [select]}, goto="b")
    return Command(update={"nlist": ["q"]}, goto=END)


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
    return graph.compile()


async def main():
    configure_logging()
    app = build_graph()

    result = await app.invoke({"nlist": ["x"]}, thread_id="operator")
    if result.interrupted:
        logger.info(f"Paused: {result.interrupts[0].value['message']}")
        result = await app.invoke(ResumeCommand(resume="continue"), thread_id="operator")

    logger.info(f"Final state: {result.values['nlist']}")


if __name__ == "__main__":
    asyncio.run(main())
