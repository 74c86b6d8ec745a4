"""Base node class for the graph system.

This module defines the Node abstraction for the Graph framework. A Node is an
individual unit of work (an LLM call, a tool invocation, a routing decision)
executed within a larger workflow. A node reads the snapshot taken at the start
of its super-step and returns one of:

    - a partial update ``{"field": value, ...}``, merged via each field's reducer
    - a ``Command(update=..., goto=...)`` that also picks the next node(s)
    - ``None`` (no update)

Typical Usage:
    - Subclass Node and override ``process``, or
    - Pass a plain (sync or async) function to ``Graph.add_node``
"""

import asyncio
import logging
import inspect
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Union
from pydantic import BaseModel, ConfigDict, Field, model_validator

from stepgraph.core.errors import InvalidUpdateError
from stepgraph.core.graph.types import Command, NodeOutcome, RESERVED_NODE_IDS
from stepgraph.core.logging import get_logger, LogComponent, Colors

logger = get_logger(LogComponent.NODES)

NodeReturn = Union[Mapping[str, Any], Command, None]

TERMINAL_MARKER = "__stepgraph_terminal__"


def terminal_node(target):
    """Decorator marking a node class or step function as terminal.

    A terminal node with no outgoing edges is routed to ``END`` automatically.

    Example:
        @terminal_node
        def send_reply(state):
            return {"sent": True}
    """
    setattr(target, TERMINAL_MARKER, True)
    return target


class Node(BaseModel):
    """
    Abstract base node for graph operations.

    Attributes:
        id: Unique node identifier
        ends: Destinations a returned Command may name (None = any registered node)
        writes: Fields the node may update (None = any schema field)
        metadata: Optional node metadata
        terminal: Whether the node ends the workflow when it has no outgoing edges
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(..., description="Unique identifier for this node")
    ends: Optional[List[str]] = Field(default=None)
    writes: Optional[Set[str]] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    terminal: bool = Field(default=False)

    @model_validator(mode='after')
    def validate_node(self) -> 'Node':
        """Validate node configuration."""
        if not self.id:
            raise ValueError("Node must have an ID")
        if self.id in RESERVED_NODE_IDS:
            raise ValueError(f"Node id '{self.id}' is reserved")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.terminal or getattr(type(self), TERMINAL_MARKER, False)

    async def process(self, state: Dict[str, Any]) -> NodeReturn:
        """Process node logic. Must be implemented by subclasses."""
        raise NotImplementedError("Subclasses must implement process()")

    def validate(self) -> bool:
        """
        Validate node configuration.

        Override in subclasses if additional checks are required.

        Returns:
            True if the node is considered valid.
        """
        return True

    async def invoke(self, state: Dict[str, Any]) -> NodeOutcome:
        """Run ``process`` and normalise its return value."""
        result = await self.process(state)
        outcome = self.to_outcome(result)
        self._log_node_result(outcome)
        return outcome

    def to_outcome(self, result: NodeReturn) -> NodeOutcome:
        if result is None:
            return NodeOutcome(node_id=self.id)
        if isinstance(result, Command):
            return NodeOutcome(
                node_id=self.id,
                update=dict(result.update),
                goto=result.destinations if result.goto is not None else None,
            )
        if isinstance(result, Mapping):
            return NodeOutcome(node_id=self.id, update=dict(result))
        raise InvalidUpdateError(
            f"Node returned unsupported type {type(result).__name__}; "
            "expected a dict, Command or None",
            node_id=self.id,
        )

    def _log_node_result(self, outcome: NodeOutcome) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        try:
            formatted = json.dumps(outcome.update, indent=2, default=repr)
        except (TypeError, ValueError):
            formatted = repr(outcome.update)
        goto = f" -> {outcome.goto}" if outcome.goto is not None else ""
        logger.debug(
            f"\n{Colors.BOLD}Node {self.id} Output{goto}:{Colors.RESET}\n"
            f"{Colors.INFO}{formatted}{Colors.RESET}"
        )

    # Helper methods for node configuration
    def set_metadata(self, key: str, value: Any) -> None:
        """Set metadata value."""
        self.metadata[key] = value

    def get_metadata(self, key: str, default: Any = None) -> Any:
        """Get metadata value."""
        return self.metadata.get(key, default)


class FunctionNode(Node):
    """Node wrapping a plain step function.

    Coroutine functions are awaited; regular functions run in a worker thread
    so a blocking step cannot stall the other nodes of its super-step.
    """
    func: Callable[[Dict[str, Any]], Any] = Field(..., description="Step function")

    @property
    def is_terminal(self) -> bool:
        return super().is_terminal or getattr(self.func, TERMINAL_MARKER, False)

    async def process(self, state: Dict[str, Any]) -> NodeReturn:
        if inspect.iscoroutinefunction(self.func):
            return await self.func(state)
        result = await asyncio.to_thread(self.func, state)
        if inspect.isawaitable(result):
            result = await result
        return result
