"""State management for the graph system.

This module provides:
1. Reducers: merge functions combining a field's current value with an incoming write
2. StateField: one named field with its type tag, reducer and default factory
3. StateSchema: the ordered set of fields a graph's state is made of
4. StateSnapshot: a read-only view of one checkpointed point in a thread's execution

Updates are validated strictly against each field's type before they are
reduced, so a node returning the wrong shape fails loudly instead of leaking a
coerced value to downstream nodes.

Example:
    ```python
    from typing import Annotated, List

    class State:
        log: Annotated[List[str], append] = []
        topic: str = ""

    schema = StateSchema.from_class(State)
    values = schema.initial_values()
    values = schema.apply(values, [("a", {"log": ["A"]}), ("b", {"log": ["B"]})])
    # values["log"] == ["A", "B"]
    ```
"""

import copy
import typing
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Mapping
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, TypeAdapter, ValidationError

from stepgraph.core.errors import InvalidUpdateError, ReducerMismatchError
from stepgraph.core.graph.types import Interrupt, RunStatus

Reducer = Callable[[Any, Any], Any]

_MISSING = object()


def replace(current: Any, incoming: Any) -> Any:
    """Last write wins."""
    return incoming


def append(current: Any, incoming: Any) -> List[Any]:
    """Concatenate sequences, keeping the order writes were applied in."""
    return [*(current or []), *incoming]


def merge_dicts(current: Any, incoming: Mapping[str, Any]) -> Dict[str, Any]:
    """Shallow dict merge; incoming keys win."""
    return {**(current or {}), **incoming}


def add(current: Any, incoming: Any) -> Any:
    """Numeric (or ``+``-compatible) accumulation."""
    if current is None:
        return incoming
    return current + incoming


def _built_model(raw: Any, validated: Any) -> bool:
    """True if validation turned something that was not a model into one."""
    if isinstance(validated, BaseModel):
        return not isinstance(raw, BaseModel)
    if isinstance(validated, (list, tuple)) and isinstance(raw, (list, tuple)):
        return any(_built_model(r, v) for r, v in zip(raw, validated))
    if isinstance(validated, dict) and isinstance(raw, Mapping):
        return any(_built_model(raw[k], v) for k, v in validated.items() if k in raw)
    return False


class StateField(BaseModel):
    """A single state field.

    Attributes:
        name: Field name as it appears in updates and snapshots
        type: Type tag used to validate incoming writes
        reducer: ``(accumulated, incoming) -> merged``
        default: Factory producing the value for a fresh thread (None = field starts as None)
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    type: Any = Field(default=Any)
    reducer: Reducer = replace
    default: Optional[Callable[[], Any]] = None
    _adapter: TypeAdapter = PrivateAttr()

    def model_post_init(self, __context: Any) -> None:
        self._adapter = TypeAdapter(self.type)

    def initial(self) -> Any:
        return self.default() if self.default is not None else None

    def validate_value(self, value: Any, **context) -> Any:
        """Strictly check ``value`` against the field type.

        Strict pydantic validation still builds models from plain dicts, so the
        result is compared against the input and any model that was not passed
        in as an instance is rejected.
        """
        try:
            validated = self._adapter.validate_python(value, strict=True)
        except ValidationError as e:
            raise ReducerMismatchError(
                f"Value {value!r} does not match type of field '{self.name}': "
                f"{e.errors()[0]['msg']}",
                field=self.name,
                **context,
            ) from e
        if _built_model(value, validated):
            raise ReducerMismatchError(
                f"Value {value!r} does not match type of field '{self.name}': "
                f"expected a model instance, not its fields",
                field=self.name,
                **context,
            )
        return validated

    def decode(self, raw: Any) -> Any:
        """Rebuild a value from its encoded form."""
        if raw is None:
            return None
        return self._adapter.validate_python(raw)


class StateSchema(BaseModel):
    """Ordered mapping of field name to ``StateField``."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    fields: Dict[str, StateField] = Field(default_factory=dict)

    @classmethod
    def build(cls, **specs: Any) -> "StateSchema":
        """Build a schema from keyword specs.

        Each value is a type, or a ``(type, reducer)`` / ``(type, reducer, default)`` tuple.
        """
        fields = {}
        for name, spec in specs.items():
            if isinstance(spec, tuple):
                type_, reducer, *rest = spec
                default = rest[0] if rest else None
            else:
                type_, reducer, default = spec, replace, None
            fields[name] = StateField(name=name, type=type_, reducer=reducer, default=default)
        return cls(fields=fields)

    @classmethod
    def from_class(cls, state_cls: type) -> "StateSchema":
        """Derive a schema from class annotations.

        ``Annotated[T, reducer]`` picks the reducer; a class attribute sets the
        default (deep-copied per thread).
        """
        hints = typing.get_type_hints(state_cls, include_extras=True)
        fields = {}
        for name, hint in hints.items():
            if name.startswith("_"):
                continue
            reducer: Reducer = replace
            type_ = hint
            if typing.get_origin(hint) is typing.Annotated:
                type_, *metadata = typing.get_args(hint)
                for item in metadata:
                    if callable(item):
                        reducer = item
                        break
            attr = getattr(state_cls, name, _MISSING)
            default = None
            if attr is not _MISSING:
                default = (lambda v=attr: copy.deepcopy(v))
            fields[name] = StateField(name=name, type=type_, reducer=reducer, default=default)
        return cls(fields=fields)

    @property
    def names(self) -> List[str]:
        return list(self.fields)

    def initial_values(self) -> Dict[str, Any]:
        """Fresh values for a new thread; each default factory runs once."""
        return {name: f.initial() for name, f in self.fields.items()}

    def validate_update(
        self,
        update: Mapping[str, Any],
        *,
        writes: Optional[Set[str]] = None,
        node_id: Optional[str] = None,
        **context,
    ) -> Dict[str, Any]:
        """Check an update's keys and value shapes, returning the validated values."""
        if not isinstance(update, Mapping):
            raise InvalidUpdateError(
                f"Expected a mapping update, got {type(update).__name__}",
                node_id=node_id, **context,
            )
        validated = {}
        for key, value in update.items():
            field = self.fields.get(key)
            if field is None:
                raise InvalidUpdateError(
                    f"Unknown state field '{key}' (known: {self.names})",
                    node_id=node_id, **context,
                )
            if writes is not None and key not in writes:
                raise InvalidUpdateError(
                    f"Field '{key}' is not among the node's declared writes {sorted(writes)}",
                    node_id=node_id, **context,
                )
            validated[key] = field.validate_value(value, node_id=node_id, **context)
        return validated

    def apply(
        self,
        values: Mapping[str, Any],
        updates: Sequence[Tuple[str, Mapping[str, Any]]],
    ) -> Dict[str, Any]:
        """Fold ``(writer, update)`` pairs into a new values dict, in the given order.

        ``values`` is never modified. Fields nobody writes keep their value.
        """
        merged = dict(values)
        for _writer, update in updates:
            for key, incoming in update.items():
                field = self.fields[key]
                current = merged.get(key)
                merged[key] = field.reducer(current, incoming)
        return merged

    def decode(self, raw: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            key: (self.fields[key].decode(value) if key in self.fields else value)
            for key, value in raw.items()
        }


class StateSnapshot(BaseModel):
    """
    Read-only view of a thread at one checkpoint.

    Attributes:
        thread_id: Owning thread
        values: Field values as of this checkpoint
        next: Node ids scheduled for the next super-step
        step: Checkpoint sequence number
        status: Scheduler state when the checkpoint was written
        interrupts: Pending interrupt requests when paused
        created_at: Time the checkpoint was written
    """
    thread_id: str
    values: Dict[str, Any] = Field(default_factory=dict)
    next: List[str] = Field(default_factory=list)
    step: int = 0
    status: RunStatus = RunStatus.IDLE
    interrupts: List[Interrupt] = Field(default_factory=list)
    created_at: Optional[datetime] = None
