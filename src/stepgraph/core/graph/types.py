"""Value types exchanged between nodes, the scheduler and callers."""

from typing import Any, Dict, List, Optional, Sequence, Union
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator

START = "__start__"
END = "__end__"

RESERVED_NODE_IDS = frozenset({START, END})


def as_destination_list(goto: Union[str, Sequence[str], None]) -> List[str]:
    if goto is None:
        return []
    if isinstance(goto, str):
        return [goto]
    return list(goto)


class RunStatus(str, Enum):
    """Scheduler states for a thread."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class Command(BaseModel):
    """Node return value that updates state and picks the next node(s).

    ``goto`` overrides the node's static edges. Use ``END`` to stop the run.

    Example:
        ```python
        def route(state):
            return Command(update={"log": ["a"]}, goto="b")
        ```
    """
    model_config = ConfigDict(frozen=True)

    update: Dict[str, Any] = Field(default_factory=dict)
    goto: Union[str, List[str], None] = None

    @property
    def destinations(self) -> List[str]:
        return as_destination_list(self.goto)


class ResumeCommand(BaseModel):
    """Caller input that resumes a paused thread.

    ``resume`` is handed to every pending interrupt unless ``resume_map``
    names a value for that interrupt's id.
    """
    model_config = ConfigDict(frozen=True)

    resume: Any = None
    resume_map: Optional[Dict[str, Any]] = None

    def value_for(self, interrupt_id: str) -> Any:
        if self.resume_map and interrupt_id in self.resume_map:
            return self.resume_map[interrupt_id]
        return self.resume


class Interrupt(BaseModel):
    """A node's request for external input."""
    model_config = ConfigDict(frozen=True)

    id: str
    node_id: str
    thread_id: Optional[str] = None
    index: int = 0
    value: Any = None

    @classmethod
    def make_id(cls, node_id: str, index: int) -> str:
        return f"{node_id}:{index}"


class NodeOutcome(BaseModel):
    """Normalised result of one node invocation."""
    node_id: str
    update: Dict[str, Any] = Field(default_factory=dict)
    goto: Optional[List[str]] = None

    @field_validator("goto", mode="before")
    @classmethod
    def _listify(cls, value):
        if isinstance(value, str):
            return [value]
        return value


class RunResult(BaseModel):
    """What ``invoke`` hands back: a final snapshot or a paused one.

    Attributes:
        thread_id: Thread the run belongs to
        status: COMPLETED or PAUSED
        values: Snapshot values (final, or as of the pause)
        interrupts: Pending interrupt requests when paused
        step: Checkpoint sequence number of the returned state
    """
    thread_id: str
    status: RunStatus
    values: Dict[str, Any] = Field(default_factory=dict)
    interrupts: List[Interrupt] = Field(default_factory=list)
    step: int = 0

    @property
    def interrupted(self) -> bool:
        return self.status == RunStatus.PAUSED

    def __getitem__(self, key: str) -> Any:
        return self.values[key]


class StepEvent(BaseModel):
    """Emitted by ``stream`` after each committed super-step."""
    thread_id: str
    step: int
    nodes: List[str] = Field(default_factory=list)
    updates: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    next: List[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    interrupts: List[Interrupt] = Field(default_factory=list)
