"""Graph package initialization.

Exposes core graph components and helpers for building workflows.
"""

from stepgraph.core.graph.types import (
    START,
    END,
    Command,
    ResumeCommand,
    Interrupt,
    RunResult,
    RunStatus,
    StepEvent,
)
from stepgraph.core.graph.state import (
    StateField,
    StateSchema,
    StateSnapshot,
    replace,
    append,
    merge_dicts,
    add,
)
from stepgraph.core.graph.nodes.base.node import Node, FunctionNode, terminal_node
from stepgraph.core.graph.base import Graph, Branch
from stepgraph.core.graph.engine import CompiledGraph
from stepgraph.core.graph.checkpoint import (
    Checkpoint,
    CheckpointStore,
    InMemoryCheckpointStore,
    JsonFileCheckpointStore,
)
from stepgraph.core.graph.interrupt import interrupt
from stepgraph.core.graph.viz import GraphVisualizer

__all__ = [
    # Core classes
    "Graph",
    "Branch",
    "CompiledGraph",
    "Node",
    "FunctionNode",
    "StateField",
    "StateSchema",
    "StateSnapshot",

    # Control flow
    "START",
    "END",
    "Command",
    "ResumeCommand",
    "Interrupt",
    "interrupt",
    "RunResult",
    "RunStatus",
    "StepEvent",

    # Reducers
    "replace",
    "append",
    "merge_dicts",
    "add",

    # Persistence
    "Checkpoint",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "JsonFileCheckpointStore",

    # Decorators and helpers
    "terminal_node",
    "GraphVisualizer",
]
