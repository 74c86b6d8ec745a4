"""Stepgraph - stateful graph workflows with checkpoints and human-in-the-loop interrupts."""

from stepgraph.core import (
    GraphConfig,
    GraphError,
    GraphValidationError,
    UnknownDestinationError,
    NodeExecutionError,
    NodeTimeoutError,
    MissingCheckpointError,
    InvalidUpdateError,
    ReducerMismatchError,
    GraphRecursionError,
    configure_logging,
    LogLevel,
    LogComponent,
)
from stepgraph.core.graph import (
    Graph,
    CompiledGraph,
    StateSchema,
    START,
    END,
    Command,
    ResumeCommand,
    interrupt,
    terminal_node,
    replace,
    append,
    merge_dicts,
    add,
    InMemoryCheckpointStore,
    JsonFileCheckpointStore,
)

__all__ = [
    'Graph',
    'CompiledGraph',
    'StateSchema',
    'START',
    'END',
    'Command',
    'ResumeCommand',
    'interrupt',
    'terminal_node',
    'replace',
    'append',
    'merge_dicts',
    'add',
    'InMemoryCheckpointStore',
    'JsonFileCheckpointStore',
    'GraphConfig',
    'GraphError',
    'GraphValidationError',
    'UnknownDestinationError',
    'NodeExecutionError',
    'NodeTimeoutError',
    'MissingCheckpointError',
    'InvalidUpdateError',
    'ReducerMismatchError',
    'GraphRecursionError',
    'configure_logging',
    'LogLevel',
    'LogComponent',
]
