"""Checkpoint persistence.

A checkpoint is written after every super-step and captures everything needed
to continue a thread: its state values, the frontier of nodes due to run next,
and, for a paused thread, the pending interrupts, the outcomes of sibling nodes
that already finished in the paused step, and each node's resume log.

Per-thread histories are append-only: a new checkpoint supersedes the previous
one and never modifies it. Stores are plain objects handed to
``Graph.compile``; any number of threads can share one store.

Backends:
    InMemoryCheckpointStore: lock-protected dict, for tests and single-process use
    JsonFileCheckpointStore: one JSON file per checkpoint, written atomically
"""

import base64
import importlib
import os
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field

from stepgraph.core.graph.types import Interrupt, NodeOutcome, RunStatus
from stepgraph.core.logging import get_logger, LogComponent

logger = get_logger(LogComponent.CHECKPOINT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


MODEL_KEY = "__model__"


def pack_value(value: Any) -> Any:
    """Wrap models found in ``value`` so their class survives a JSON round trip.

    Resume values and interrupt payloads have no schema field to decode them
    against, so each model is stored as ``{"__model__": "<module>:<qualname>", "data": ...}``.
    """
    if isinstance(value, BaseModel):
        cls = type(value)
        return {MODEL_KEY: f"{cls.__module__}:{cls.__qualname__}", "data": value.model_dump(mode="json")}
    if isinstance(value, (list, tuple)):
        return [pack_value(item) for item in value]
    if isinstance(value, dict):
        return {key: pack_value(item) for key, item in value.items()}
    return value


def unpack_value(raw: Any) -> Any:
    """Inverse of ``pack_value``."""
    if isinstance(raw, list):
        return [unpack_value(item) for item in raw]
    if not isinstance(raw, dict):
        return raw
    if set(raw) == {MODEL_KEY, "data"}:
        cls = _import_model(raw[MODEL_KEY])
        if cls is not None:
            return cls.model_validate(raw["data"])
        return raw["data"]
    return {key: unpack_value(item) for key, item in raw.items()}


def _import_model(path: str) -> Optional[type]:
    module_name, _, qualname = path.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError):
        logger.warning(f"Cannot import model {path}; restoring its fields as a dict")
        return None
    if not (isinstance(target, type) and issubclass(target, BaseModel)):
        logger.warning(f"{path} is not a pydantic model; restoring its fields as a dict")
        return None
    return target


class Checkpoint(BaseModel):
    """
    Saved execution state of one thread after one super-step.

    Attributes:
        thread_id: Owning thread
        seq: Sequence number, strictly increasing per thread
        values: State values as of this checkpoint
        frontier: Node ids to run in the next super-step (the paused step when paused)
        status: Scheduler state at save time
        interrupts: Pending interrupt requests (paused only)
        pending_writes: Outcomes of nodes that finished in the paused step
        resume_log: Resume values per node, in interrupt order
        created_at: Save time
    """
    thread_id: str
    seq: int = Field(ge=0)
    values: Dict[str, Any] = Field(default_factory=dict)
    frontier: List[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    interrupts: List[Interrupt] = Field(default_factory=list)
    pending_writes: List[NodeOutcome] = Field(default_factory=list)
    resume_log: Dict[str, List[Any]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class CheckpointStore(ABC):
    """Storage interface for per-thread checkpoint histories."""

    @abstractmethod
    def save(self, checkpoint: Checkpoint) -> None:
        """Persist ``checkpoint``; all-or-nothing.

        Raises:
            ValueError: If ``checkpoint.seq`` does not advance the thread's history
        """

    @abstractmethod
    def load_latest(self, thread_id: str) -> Optional[Checkpoint]:
        """Most recently saved checkpoint for ``thread_id``, or None."""

    @abstractmethod
    def list(self, thread_id: str) -> List[Checkpoint]:
        """All retained checkpoints for ``thread_id``, oldest first."""

    def get(self, thread_id: str, seq: int) -> Optional[Checkpoint]:
        for checkpoint in self.list(thread_id):
            if checkpoint.seq == seq:
                return checkpoint
        return None

    @staticmethod
    def _check_seq(checkpoint: Checkpoint, latest_seq: Optional[int]) -> None:
        if latest_seq is not None and checkpoint.seq <= latest_seq:
            raise ValueError(
                f"Checkpoint seq {checkpoint.seq} for thread '{checkpoint.thread_id}' "
                f"does not advance latest seq {latest_seq}"
            )


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store. Checkpoints are deep-copied in and out."""

    def __init__(self, retain: Optional[int] = None):
        if retain is not None and retain < 1:
            raise ValueError("retain must be at least 1")
        self._retain = retain
        self._threads: Dict[str, List[Checkpoint]] = {}
        self._lock = threading.Lock()

    def save(self, checkpoint: Checkpoint) -> None:
        stored = checkpoint.model_copy(deep=True)
        with self._lock:
            history = self._threads.setdefault(checkpoint.thread_id, [])
            self._check_seq(checkpoint, history[-1].seq if history else None)
            history.append(stored)
            if self._retain is not None and len(history) > self._retain:
                del history[: len(history) - self._retain]
        logger.debug(f"Saved checkpoint {checkpoint.thread_id}#{checkpoint.seq} ({checkpoint.status.value})")

    def load_latest(self, thread_id: str) -> Optional[Checkpoint]:
        with self._lock:
            history = self._threads.get(thread_id)
            latest = history[-1] if history else None
        return latest.model_copy(deep=True) if latest is not None else None

    def list(self, thread_id: str) -> List[Checkpoint]:
        with self._lock:
            history = list(self._threads.get(thread_id, []))
        return [c.model_copy(deep=True) for c in history]

    def threads(self) -> List[str]:
        with self._lock:
            return list(self._threads)


class JsonFileCheckpointStore(CheckpointStore):
    """File-based store: ``<base>/thread_<id>/ckpt_<seq>.json``.

    ``<id>`` is the urlsafe base64 of the thread id, so any id maps to one
    directory directly under ``<base>``.

    Each checkpoint is written to a temp file in the thread directory, fsynced
    and renamed over its final name, so readers see either the complete file or
    nothing. Leftover temp files from an interrupted save are ignored.
    """

    PREFIX = "ckpt_"
    SUFFIX = ".json"

    def __init__(self, base_dir: Union[str, Path], retain: Optional[int] = None):
        if retain is not None and retain < 1:
            raise ValueError("retain must be at least 1")
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)
        self._retain = retain
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _thread_lock(self, thread_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(thread_id, threading.Lock())

    def _thread_dir(self, thread_id: str) -> Path:
        encoded = base64.urlsafe_b64encode(thread_id.encode("utf-8")).decode("ascii").rstrip("=")
        return self._base / f"thread_{encoded}"

    def _path(self, thread_id: str, seq: int) -> Path:
        return self._thread_dir(thread_id) / f"{self.PREFIX}{seq:010d}{self.SUFFIX}"

    def _paths(self, thread_id: str) -> List[Path]:
        directory = self._thread_dir(thread_id)
        if not directory.is_dir():
            return []
        return sorted(
            p for p in directory.iterdir()
            if p.name.startswith(self.PREFIX) and p.name.endswith(self.SUFFIX)
        )

    def _read(self, path: Path) -> Checkpoint:
        checkpoint = Checkpoint.model_validate_json(path.read_text(encoding="utf-8"))
        return checkpoint.model_copy(update={
            "resume_log": {node: unpack_value(vals) for node, vals in checkpoint.resume_log.items()},
            "interrupts": [
                i.model_copy(update={"value": unpack_value(i.value)}) for i in checkpoint.interrupts
            ],
        })

    def _write_atomic(self, path: Path, payload: str) -> None:
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        finally:
            if tmp.exists():
                tmp.unlink()

    def save(self, checkpoint: Checkpoint) -> None:
        payload = checkpoint.model_copy(update={
            "resume_log": {node: pack_value(vals) for node, vals in checkpoint.resume_log.items()},
            "interrupts": [
                i.model_copy(update={"value": pack_value(i.value)}) for i in checkpoint.interrupts
            ],
        }).model_dump_json(indent=2)
        with self._thread_lock(checkpoint.thread_id):
            paths = self._paths(checkpoint.thread_id)
            latest_seq = self._seq_of(paths[-1]) if paths else None
            self._check_seq(checkpoint, latest_seq)
            self._thread_dir(checkpoint.thread_id).mkdir(parents=True, exist_ok=True)
            self._write_atomic(self._path(checkpoint.thread_id, checkpoint.seq), payload)
            if self._retain is not None:
                for stale in self._paths(checkpoint.thread_id)[: -self._retain]:
                    stale.unlink()
        logger.debug(f"Wrote checkpoint {checkpoint.thread_id}#{checkpoint.seq} ({checkpoint.status.value})")

    def load_latest(self, thread_id: str) -> Optional[Checkpoint]:
        paths = self._paths(thread_id)
        if not paths:
            return None
        return self._read(paths[-1])

    def list(self, thread_id: str) -> List[Checkpoint]:
        return [self._read(p) for p in self._paths(thread_id)]

    def get(self, thread_id: str, seq: int) -> Optional[Checkpoint]:
        path = self._path(thread_id, seq)
        return self._read(path) if path.exists() else None

    def _seq_of(self, path: Path) -> int:
        return int(path.name[len(self.PREFIX):-len(self.SUFFIX)])
