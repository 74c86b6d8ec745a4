"""Node package initialization.

Exposes node types and helpers for building workflows.
"""

from stepgraph.core.graph.nodes.base.node import (
    Node,
    FunctionNode,
    terminal_node,
)

__all__ = [
    # Base node types
    "Node",
    "FunctionNode",

    # Decorators and helpers
    "terminal_node",
]
