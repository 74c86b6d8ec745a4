"""Exceptions raised by graph construction and execution.

Every error carries whatever run context was known when it was raised
(thread id, node id, super-step number) so a failed run can be replayed from
its last committed checkpoint.
"""

from typing import Optional, List


class GraphError(Exception):
    """Base class for stepgraph errors."""

    def __init__(
        self,
        message: str,
        *,
        thread_id: Optional[str] = None,
        node_id: Optional[str] = None,
        step: Optional[int] = None,
    ):
        self.message = message
        self.thread_id = thread_id
        self.node_id = node_id
        self.step = step
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.thread_id is not None:
            context.append(f"thread={self.thread_id}")
        if self.node_id is not None:
            context.append(f"node={self.node_id}")
        if self.step is not None:
            context.append(f"step={self.step}")
        if not context:
            return self.message
        return f"{self.message} [{', '.join(context)}]"


class GraphValidationError(GraphError):
    """The graph structure is invalid; carries every problem found."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Graph validation failed: " + "; ".join(self.errors))


class UnknownDestinationError(GraphValidationError):
    """An edge, command destination or entry point names an unknown node."""

    def __init__(self, errors: List[str], *, node_id: Optional[str] = None, step: Optional[int] = None,
                 thread_id: Optional[str] = None):
        self.errors = list(errors)
        GraphError.__init__(
            self,
            "Unknown destination: " + "; ".join(self.errors),
            thread_id=thread_id,
            node_id=node_id,
            step=step,
        )


class NodeExecutionError(GraphError):
    """A step function raised; the original exception is chained as ``__cause__``."""


class NodeTimeoutError(NodeExecutionError):
    """A step function exceeded ``GraphConfig.node_timeout``."""


class MissingCheckpointError(GraphError):
    """A resume was requested for a thread that is not paused."""


class InvalidUpdateError(GraphError):
    """A node returned an update the schema cannot accept."""


class ReducerMismatchError(InvalidUpdateError):
    """A value does not match the type declared for its field."""

    def __init__(self, message: str, *, field: str, **context):
        self.field = field
        super().__init__(message, **context)


class GraphRecursionError(GraphError):
    """The run exceeded ``GraphConfig.max_steps`` super-steps."""
