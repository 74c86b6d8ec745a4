"""
Memory Example

This example demonstrates:
1. Persisting threads with a file checkpoint store
2. Continuing a conversation on the same thread
3. Isolation between threads
4. Inspecting checkpoint history

Set STEPGRAPH_CHECKPOINT_DIR to keep checkpoints between runs.
"""

import asyncio
import tempfile
from typing import Annotated, List

from stepgraph import Graph, GraphConfig, StateSchema, START, END, append, configure_logging
from stepgraph import JsonFileCheckpointStore
from stepgraph.core.logging import LogComponent, get_logger

logger = get_logger(LogComponent.WORKFLOW)


class State:
    nlist: Annotated[List[str], append] = []


def node_a(state):
    return {"nlist": [f"seen {len(state['nlist'])} entries"]}


def build_graph(config: GraphConfig):
    graph = Graph(state_schema=StateSchema.from_class(State), config=config)
    graph.add_node("a", node_a)
    graph.add_edge(START, "a")
    graph.add_edge("a", END)
    checkpoint_dir = config.checkpoint_dir or tempfile.mkdtemp(prefix="stepgraph-")
    return graph.compile(store=JsonFileCheckpointStore(checkpoint_dir))


async def main():
    configure_logging()
    app = build_graph(GraphConfig.from_env())

    await app.invoke({"nlist": ["hello"]}, thread_id="alice")
    result = await app.invoke({"nlist": ["again"]}, thread_id="alice")
    logger.info(f"alice: {result.values['nlist']}")

    result = await app.invoke({"nlist": ["hi"]}, thread_id="bob")
    logger.info(f"bob: {result.values['nlist']}")

    for snapshot in app.get_state_history("alice"):
        logger.info(f"alice #{snapshot.step} [{snapshot.status.value}] next={snapshot.next}")


if __name__ == "__main__":
    asyncio.run(main())
