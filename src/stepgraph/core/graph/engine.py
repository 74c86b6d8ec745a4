"""Super-step scheduler.

``CompiledGraph`` runs a validated ``Graph`` against a checkpoint store:

1. Load the thread's latest checkpoint (or start from schema defaults)
2. Fold the caller's input into state, or replay a ResumeCommand
3. Run every node of the frontier concurrently against the step-start snapshot
4. Merge their updates through the reducers in declaration order
5. Compute the next frontier from Commands, static edges and branches
6. Persist a checkpoint, then repeat until nothing is left to run

A node that calls ``interrupt`` pauses the run instead: nothing from that step
is merged, a PAUSED checkpoint records the step's frontier and the outcomes of
siblings that already finished, and the caller receives the interrupt payloads.
Resuming re-runs only the interrupted nodes and then merges the whole step.
"""

import asyncio
import contextlib
import copy
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, PrivateAttr

from stepgraph.core.config import GraphConfig
from stepgraph.core.errors import (
    GraphError,
    GraphRecursionError,
    MissingCheckpointError,
    NodeExecutionError,
    NodeTimeoutError,
    UnknownDestinationError,
)
from stepgraph.core.graph.base import Graph
from stepgraph.core.graph.checkpoint import Checkpoint, CheckpointStore
from stepgraph.core.graph.interrupt import GraphInterrupt, ResumeScratchpad, node_scope
from stepgraph.core.graph.state import StateSnapshot
from stepgraph.core.graph.types import (
    END,
    START,
    Interrupt,
    NodeOutcome,
    ResumeCommand,
    RunResult,
    RunStatus,
    StepEvent,
)
from stepgraph.core.logging import LogComponent, LogLevel, get_logger, log_state, log_step

GraphInput = Union[Mapping[str, Any], ResumeCommand, None]


class CompiledGraph(BaseModel):
    """A graph bound to a checkpoint store and execution limits.

    Attributes:
        graph: The validated graph definition
        store: Checkpoint store shared by every thread run through this graph
        config: Execution limits
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    graph: Graph
    store: CheckpointStore
    config: GraphConfig
    _logger: logging.Logger = PrivateAttr()
    _order: Dict[str, int] = PrivateAttr()
    _thread_locks: Dict[str, asyncio.Lock] = PrivateAttr(default_factory=dict)
    _thread_users: Dict[str, int] = PrivateAttr(default_factory=dict)

    def __init__(self, **data):
        super().__init__(**data)
        self._logger = get_logger(LogComponent.SCHEDULER)
        self._order = {node_id: i for i, node_id in enumerate(self.graph.nodes)}

    @property
    def state_schema(self):
        return self.graph.state_schema

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def invoke(self, input: GraphInput = None, thread_id: Optional[str] = None) -> RunResult:
        """Run the thread until it completes or pauses.

        Args:
            input: Partial state to fold in, a ResumeCommand, or None to retry
                a thread whose last run failed mid-way
            thread_id: Thread to run on (a new one is generated if omitted)

        Returns:
            RunResult with status COMPLETED or PAUSED

        Raises:
            MissingCheckpointError: If resuming a thread that is not paused
            NodeExecutionError: If a node fails; the failed step is not persisted
        """
        thread_id = thread_id or uuid.uuid4().hex
        async for _event in self.stream(input, thread_id):
            pass
        snapshot = self.get_state(thread_id)
        return RunResult(
            thread_id=thread_id,
            status=snapshot.status,
            values=snapshot.values,
            interrupts=snapshot.interrupts,
            step=snapshot.step,
        )

    async def stream(self, input: GraphInput = None, thread_id: Optional[str] = None) -> AsyncIterator[StepEvent]:
        """Run the thread, yielding a StepEvent after every committed super-step."""
        thread_id = thread_id or uuid.uuid4().hex
        async with self._hold_thread(thread_id):
            run = self._prepare(input, thread_id)
            async for event in self._run(run):
                yield event

    def get_state(self, thread_id: str) -> StateSnapshot:
        """Current snapshot of a thread.

        A thread that never ran is IDLE with schema defaults; its ``next`` lists
        the static START edges only, since routers are not called before a run.
        """
        checkpoint = self._load(thread_id)
        if checkpoint is None:
            return StateSnapshot(
                thread_id=thread_id,
                values=self.state_schema.initial_values(),
                next=self._sorted_frontier(self.graph.edges.get(START, [])),
                status=RunStatus.IDLE,
            )
        return self._to_snapshot(checkpoint)

    def get_state_history(self, thread_id: str) -> List[StateSnapshot]:
        """Every retained checkpoint of a thread, oldest first."""
        return [
            self._to_snapshot(self._decode(checkpoint))
            for checkpoint in self.store.list(thread_id)
        ]

    # ------------------------------------------------------------------ #
    # Run preparation
    # ------------------------------------------------------------------ #

    def _prepare(self, input: GraphInput, thread_id: str) -> "_Run":
        checkpoint = self._load(thread_id)

        if isinstance(input, ResumeCommand):
            if checkpoint is None or checkpoint.status != RunStatus.PAUSED:
                raise MissingCheckpointError(
                    "No paused checkpoint to resume", thread_id=thread_id,
                    step=checkpoint.seq if checkpoint else None,
                )
            resume_log = {node: list(vals) for node, vals in checkpoint.resume_log.items()}
            for pending in checkpoint.interrupts:
                resume_log.setdefault(pending.node_id, []).append(input.value_for(pending.id))
            self._logger.info(
                f"[{thread_id}] Resuming {[i.node_id for i in checkpoint.interrupts]} "
                f"from checkpoint {checkpoint.seq}"
            )
            return _Run(
                thread_id=thread_id,
                seq=checkpoint.seq,
                values=checkpoint.values,
                frontier=list(checkpoint.frontier),
                resume_log=resume_log,
                carried={o.node_id: o for o in checkpoint.pending_writes},
            )

        if input is None and checkpoint is not None and checkpoint.status == RunStatus.RUNNING:
            self._logger.info(f"[{thread_id}] Retrying from checkpoint {checkpoint.seq}")
            return _Run(
                thread_id=thread_id,
                seq=checkpoint.seq,
                values=checkpoint.values,
                frontier=list(checkpoint.frontier),
            )

        if checkpoint is None:
            seq, values = -1, self.state_schema.initial_values()
        else:
            seq, values = checkpoint.seq, checkpoint.values
            if checkpoint.status == RunStatus.PAUSED:
                self._logger.warning(
                    f"[{thread_id}] New input on a paused thread; dropping "
                    f"{len(checkpoint.interrupts)} pending interrupt(s)"
                )

        update = self.state_schema.validate_update(input or {}, node_id=START, thread_id=thread_id, step=seq + 1)
        values = self.state_schema.apply(values, [(START, update)])
        seq += 1
        frontier = self._entry_nodes(values, thread_id, seq)
        self._save(Checkpoint(
            thread_id=thread_id,
            seq=seq,
            values=values,
            frontier=frontier,
            status=RunStatus.RUNNING if frontier else RunStatus.COMPLETED,
        ))
        return _Run(thread_id=thread_id, seq=seq, values=values, frontier=frontier)

    # ------------------------------------------------------------------ #
    # Super-step loop
    # ------------------------------------------------------------------ #

    async def _run(self, run: "_Run") -> AsyncIterator[StepEvent]:
        steps = 0
        while run.frontier:
            if steps >= self.config.max_steps:
                raise GraphRecursionError(
                    f"Exceeded max_steps={self.config.max_steps} without completing",
                    thread_id=run.thread_id, step=run.seq + 1,
                )
            step = run.seq + 1
            outcomes, interrupts = await self._execute_step(run, step)

            if interrupts:
                self._save(Checkpoint(
                    thread_id=run.thread_id,
                    seq=step,
                    values=run.values,
                    frontier=run.frontier,
                    status=RunStatus.PAUSED,
                    interrupts=interrupts,
                    pending_writes=outcomes,
                    resume_log=run.resume_log,
                ))
                self._logger.log(
                    LogLevel.INTERRUPT,
                    f"[{run.thread_id}] Paused at step {step} awaiting input for "
                    f"{[i.node_id for i in interrupts]}",
                )
                yield StepEvent(
                    thread_id=run.thread_id,
                    step=step,
                    nodes=list(run.frontier),
                    updates={o.node_id: o.update for o in outcomes},
                    next=list(run.frontier),
                    status=RunStatus.PAUSED,
                    interrupts=interrupts,
                )
                return

            values = self.state_schema.apply(run.values, [(o.node_id, o.update) for o in outcomes])
            next_frontier = self._next_frontier(outcomes, values, run.thread_id, step)
            status = RunStatus.RUNNING if next_frontier else RunStatus.COMPLETED
            self._save(Checkpoint(
                thread_id=run.thread_id,
                seq=step,
                values=values,
                frontier=next_frontier,
                status=status,
            ))
            if self.graph.logging_config.show_step_transitions:
                log_step(self._logger, f"[{run.thread_id}] step {step}: {run.frontier} -> {next_frontier or [END]}")
            if self.graph.logging_config.show_state:
                log_state(self._logger, values, prefix=f"[{run.thread_id}] ")

            event = StepEvent(
                thread_id=run.thread_id,
                step=step,
                nodes=list(run.frontier),
                updates={o.node_id: o.update for o in outcomes},
                next=next_frontier,
                status=status,
            )
            run.advance(step, values, next_frontier)
            steps += 1
            yield event

    async def _execute_step(self, run: "_Run", step: int) -> Tuple[List[NodeOutcome], List[Interrupt]]:
        """Run the frontier concurrently; return outcomes (declaration order) and interrupts."""
        limit = self.config.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        async def run_node(node_id: str) -> NodeOutcome:
            if node_id in run.carried:
                return run.carried[node_id]
            node = self.graph.nodes[node_id]
            scratchpad = ResumeScratchpad(node_id, run.thread_id, run.resume_log.get(node_id))
            state = copy.deepcopy(run.values)
            async with (semaphore or contextlib.nullcontext()):
                with node_scope(scratchpad):
                    if self.config.node_timeout:
                        outcome = await asyncio.wait_for(node.invoke(state), self.config.node_timeout)
                    else:
                        outcome = await node.invoke(state)
            update = self.state_schema.validate_update(
                outcome.update,
                writes=node.writes,
                node_id=node_id,
                thread_id=run.thread_id,
                step=step,
            )
            return outcome.model_copy(update={"update": update})

        results = await asyncio.gather(
            *(run_node(node_id) for node_id in run.frontier),
            return_exceptions=True,
        )

        outcomes: List[NodeOutcome] = []
        interrupts: List[Interrupt] = []
        for node_id, result in zip(run.frontier, results):
            if isinstance(result, GraphInterrupt):
                interrupts.append(result.interrupt)
            elif isinstance(result, BaseException):
                raise self._wrap_error(result, node_id, run.thread_id, step)
            else:
                outcomes.append(result)
        return outcomes, interrupts

    def _wrap_error(self, error: BaseException, node_id: str, thread_id: str, step: int) -> BaseException:
        if isinstance(error, GraphError):
            error.thread_id = error.thread_id or thread_id
            error.node_id = error.node_id or node_id
            error.step = error.step if error.step is not None else step
            error.args = (error._format(),)
            self._logger.error(f"Node {node_id} failed at step {step}: {error}")
            return error
        if not isinstance(error, Exception):
            return error
        if isinstance(error, asyncio.TimeoutError):
            wrapped: NodeExecutionError = NodeTimeoutError(
                f"Node timed out after {self.config.node_timeout}s",
                thread_id=thread_id, node_id=node_id, step=step,
            )
        else:
            wrapped = NodeExecutionError(
                f"{type(error).__name__}: {error}",
                thread_id=thread_id, node_id=node_id, step=step,
            )
        wrapped.__cause__ = error
        self._logger.error(f"Error in node {node_id}: {error}")
        return wrapped

    # ------------------------------------------------------------------ #
    # Routing
    # ------------------------------------------------------------------ #

    def _entry_nodes(self, values: Dict[str, Any], thread_id: str, step: int) -> List[str]:
        targets = list(self.graph.edges.get(START, []))
        for branch in self.graph.branches.get(START, []):
            try:
                routed = branch.resolve(values)
            except Exception as e:
                raise self._wrap_error(e, START, thread_id, step)
            for dest in routed:
                self._check_destination(START, dest, declared=branch.destinations,
                                        thread_id=thread_id, step=step)
            targets.extend(routed)
        return self._sorted_frontier(targets)

    def _next_frontier(self, outcomes: List[NodeOutcome], values: Dict[str, Any],
                       thread_id: str, step: int) -> List[str]:
        targets: List[str] = []
        for outcome in outcomes:
            node = self.graph.nodes[outcome.node_id]
            if outcome.goto is not None:
                for dest in outcome.goto:
                    self._check_destination(outcome.node_id, dest, declared=node.ends,
                                            thread_id=thread_id, step=step)
                targets.extend(outcome.goto)
                continue
            targets.extend(self.graph.successors(outcome.node_id))
            for branch in self.graph.branches.get(outcome.node_id, []):
                try:
                    routed = branch.resolve(values)
                except Exception as e:
                    raise self._wrap_error(e, outcome.node_id, thread_id, step)
                for dest in routed:
                    self._check_destination(outcome.node_id, dest, declared=branch.destinations,
                                            thread_id=thread_id, step=step)
                targets.extend(routed)
        return self._sorted_frontier(targets)

    def _check_destination(self, source: str, dest: str, declared: Optional[List[str]] = None,
                           thread_id: Optional[str] = None, step: Optional[int] = None) -> None:
        if dest == END:
            return
        if dest not in self.graph.nodes:
            raise UnknownDestinationError(
                [f"{source} routed to unknown node '{dest}'"],
                node_id=source, thread_id=thread_id, step=step,
            )
        if declared is not None and dest not in declared:
            raise UnknownDestinationError(
                [f"{source} routed to '{dest}', which is not among its declared destinations {declared}"],
                node_id=source, thread_id=thread_id, step=step,
            )

    def _sorted_frontier(self, targets: List[str]) -> List[str]:
        """Drop END, collapse duplicates and order by declaration."""
        unique = {t for t in targets if t != END}
        return sorted(unique, key=self._order.__getitem__)

    # ------------------------------------------------------------------ #
    # Persistence helpers
    # ------------------------------------------------------------------ #

    @contextlib.asynccontextmanager
    async def _hold_thread(self, thread_id: str) -> AsyncIterator[None]:
        """Serialise invocations of one thread; the lock is dropped once nobody holds or awaits it."""
        lock = self._thread_locks.get(thread_id)
        if lock is None:
            lock = self._thread_locks[thread_id] = asyncio.Lock()
        self._thread_users[thread_id] = self._thread_users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._thread_users[thread_id] -= 1
            if not self._thread_users[thread_id]:
                del self._thread_users[thread_id]
                del self._thread_locks[thread_id]

    def _save(self, checkpoint: Checkpoint) -> None:
        self.store.save(checkpoint)

    def _load(self, thread_id: str) -> Optional[Checkpoint]:
        checkpoint = self.store.load_latest(thread_id)
        return self._decode(checkpoint) if checkpoint is not None else None

    def _decode(self, checkpoint: Checkpoint) -> Checkpoint:
        """Restore typed values from a checkpoint that may have been read from JSON."""
        return checkpoint.model_copy(update={
            "values": self.state_schema.decode(checkpoint.values),
            "pending_writes": [
                o.model_copy(update={"update": self.state_schema.decode(o.update)})
                for o in checkpoint.pending_writes
            ],
        })

    def _to_snapshot(self, checkpoint: Checkpoint) -> StateSnapshot:
        return StateSnapshot(
            thread_id=checkpoint.thread_id,
            values=checkpoint.values,
            next=list(checkpoint.frontier),
            step=checkpoint.seq,
            status=checkpoint.status,
            interrupts=list(checkpoint.interrupts),
            created_at=checkpoint.created_at,
        )


class _Run:
    """Mutable bookkeeping for one invocation."""

    def __init__(
        self,
        thread_id: str,
        seq: int,
        values: Dict[str, Any],
        frontier: List[str],
        resume_log: Optional[Dict[str, List[Any]]] = None,
        carried: Optional[Dict[str, NodeOutcome]] = None,
    ):
        self.thread_id = thread_id
        self.seq = seq
        self.values = values
        self.frontier = frontier
        self.resume_log = resume_log or {}
        self.carried = carried or {}

    def advance(self, seq: int, values: Dict[str, Any], frontier: List[str]) -> None:
        self.seq = seq
        self.values = values
        self.frontier = frontier
        self.resume_log = {}
        self.carried = {}
