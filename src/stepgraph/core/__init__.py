"""Core modules for stepgraph."""

from stepgraph.core.config import GraphConfig
from stepgraph.core.errors import (
    GraphError,
    GraphValidationError,
    UnknownDestinationError,
    NodeExecutionError,
    NodeTimeoutError,
    MissingCheckpointError,
    InvalidUpdateError,
    ReducerMismatchError,
    GraphRecursionError,
)
from stepgraph.core.logging import configure_logging, LogLevel, LogComponent, StepLoggingConfig
from stepgraph.core.collaborators import Generate, Search, CreateTicket, MirascopeGenerator

__all__ = [
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
    'StepLoggingConfig',
    'Generate',
    'Search',
    'CreateTicket',
    'MirascopeGenerator',
]
