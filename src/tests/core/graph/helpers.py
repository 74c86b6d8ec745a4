"""Step functions and state classes shared by graph tests."""

from typing import Annotated, List, Optional

from stepgraph.core.graph.state import append


class LogState:
    log: Annotated[List[str], append] = []
    topic: Optional[str] = None


def appender(value: str):
    """Step function that appends ``value`` to the log."""
    def step(state):
        return {"log": [value]}
    step.__name__ = f"append_{value}"
    return step
