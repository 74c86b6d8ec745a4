"""Human-in-the-loop interrupts.

A node calls ``interrupt(value)`` to pause the run and hand ``value`` to the
caller. The caller answers with ``ResumeCommand(resume=...)`` on the same
thread; the scheduler then re-runs the interrupted node from its first line,
and each ``interrupt`` call returns the recorded answer for its position
instead of pausing again.

Resume values are kept per node in call order (the resume log) inside the
paused checkpoint. Everything a node does before its first ``interrupt`` runs
again on every resume, so that code must be safe to repeat.

Example:
    ```python
    def review(state):
        decision = interrupt({"draft": state["draft"]})
        if decision.get("approved"):
            return Command(goto="send_reply")
        return Command(goto=END)
    ```
"""

import contextvars
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

from stepgraph.core.graph.types import Interrupt
from stepgraph.core.logging import get_logger, LogComponent

logger = get_logger(LogComponent.INTERRUPT)


class GraphInterrupt(Exception):
    """Raised inside a node to suspend it; caught by the scheduler."""

    def __init__(self, interrupt: Interrupt):
        self.interrupt = interrupt
        super().__init__(f"Node {interrupt.node_id} interrupted: {interrupt.value!r}")


class ResumeScratchpad:
    """Per-invocation replay state for one node."""

    def __init__(self, node_id: str, thread_id: Optional[str], resume_values: Optional[List[Any]] = None):
        self.node_id = node_id
        self.thread_id = thread_id
        self.resume_values = list(resume_values or [])
        self.counter = 0

    def next_value(self, value: Any) -> Any:
        index = self.counter
        self.counter += 1
        if index < len(self.resume_values):
            logger.debug(f"Node {self.node_id}: replaying resume value #{index}")
            return self.resume_values[index]
        raise GraphInterrupt(
            Interrupt(
                id=Interrupt.make_id(self.node_id, index),
                node_id=self.node_id,
                thread_id=self.thread_id,
                index=index,
                value=value,
            )
        )


_scratchpad: contextvars.ContextVar[Optional[ResumeScratchpad]] = contextvars.ContextVar(
    "stepgraph_resume_scratchpad", default=None
)


@contextmanager
def node_scope(scratchpad: ResumeScratchpad) -> Iterator[ResumeScratchpad]:
    """Bind ``scratchpad`` for the node invocation running in this context."""
    token = _scratchpad.set(scratchpad)
    try:
        yield scratchpad
    finally:
        _scratchpad.reset(token)


def interrupt(value: Any = None) -> Any:
    """Pause the current node until the caller resumes with a value.

    Returns the resume value when the node is being replayed after a resume.

    Raises:
        RuntimeError: If called outside a running graph node
    """
    scratchpad = _scratchpad.get()
    if scratchpad is None:
        raise RuntimeError("interrupt() can only be called from inside a running graph node")
    return scratchpad.next_value(value)
