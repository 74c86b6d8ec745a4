"""Base node types."""

from stepgraph.core.graph.nodes.base.node import Node, FunctionNode, terminal_node

__all__ = ["Node", "FunctionNode", "terminal_node"]
