"""Graph Base Classes

This module defines the graph builder for orchestrating stateful workflows.
The graph provides a lightweight way to:
1. Declare a state schema whose fields merge through reducers
2. Register nodes (step functions or Node subclasses)
3. Connect them with static edges, conditional edges and Command destinations
4. Validate the structure and compile it into a runnable engine

Example:
    ```python
    from typing import Annotated, List

    class State:
        log: Annotated[List[str], append] = []

    graph = Graph(state_schema=StateSchema.from_class(State))
    graph.add_node("a", lambda s: {"log": ["A"]})
    graph.add_node("b", lambda s: {"log": ["B"]})
    graph.add_edge(START, "a")
    graph.add_edge("a", "b")
    graph.add_edge("b", END)

    app = graph.compile()
    result = await app.invoke({}, thread_id="t1")
    ```
"""

import logging
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from stepgraph.core.config import GraphConfig
from stepgraph.core.errors import GraphValidationError, UnknownDestinationError
from stepgraph.core.graph.nodes.base.node import FunctionNode, Node
from stepgraph.core.graph.state import StateSchema
from stepgraph.core.graph.types import END, START, as_destination_list
from stepgraph.core.logging import LogComponent, StepLoggingConfig, get_logger

Router = Callable[[Dict[str, Any]], Union[str, Sequence[str], None]]


class Branch(BaseModel):
    """A conditional edge: ``router`` picks destinations from the merged state.

    Attributes:
        router: Callable returning a destination, a list of them, or a path_map key
        path_map: Router result -> node id (None = router returns node ids directly)
        destinations: Declared reachable node ids, used for validation
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    router: Router
    path_map: Optional[Dict[Any, str]] = None
    destinations: Optional[List[str]] = None

    def resolve(self, values: Dict[str, Any]) -> List[str]:
        result = self.router(values)
        keys = as_destination_list(result) if not isinstance(result, (bool, int)) else [result]
        if self.path_map is None:
            return keys
        return [self.path_map[key] for key in keys]


class Graph(BaseModel):
    """A directed graph of state-transforming steps.

    The graph manages:
    - Node registration (declaration order fixes merge order)
    - Static edges and conditional edges
    - Structural validation
    - Compilation into a CompiledGraph bound to a checkpoint store

    Attributes:
        state_schema: State schema shared by every node
        nodes: Node id -> Node, in declaration order
        edges: Node id (or START) -> static successor ids
        branches: Node id -> conditional edges leaving it
        config: Execution limits for compiled graphs
        logging_config: Controls scheduler log output
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    state_schema: StateSchema = Field(default_factory=StateSchema)
    nodes: Dict[str, Node] = Field(default_factory=dict)
    edges: Dict[str, List[str]] = Field(default_factory=dict)
    branches: Dict[str, List[Branch]] = Field(default_factory=dict)
    config: GraphConfig = Field(default_factory=GraphConfig)
    logging_config: StepLoggingConfig = Field(default_factory=StepLoggingConfig)
    _logger: logging.Logger = PrivateAttr()

    def __init__(self, **data):
        super().__init__(**data)
        self._logger = get_logger(LogComponent.GRAPH)

    def add_node(
        self,
        node: Union[Node, str],
        func: Optional[Callable] = None,
        *,
        ends: Optional[Sequence[str]] = None,
        writes: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Node:
        """Register a node with the graph.

        Args:
            node: Node instance, or the id for a step function given as ``func``
            func: Step function (sync or async) when ``node`` is an id
            ends: Destinations a Command returned by this node may name
            writes: Fields the node may update
            metadata: Optional node metadata

        Returns:
            The registered Node

        Raises:
            GraphValidationError: If the id is taken or the node fails validation
        """
        if isinstance(node, str):
            if not node or node in (START, END):
                raise GraphValidationError([f"Invalid node id: {node!r}"])
            if func is None:
                raise GraphValidationError([f"Node '{node}' needs a step function"])
            node = FunctionNode(
                id=node,
                func=func,
                ends=list(ends) if ends is not None else None,
                writes=set(writes) if writes is not None else None,
                metadata=metadata or {},
            )
        elif func is not None:
            raise GraphValidationError([f"Node '{node.id}' given both a Node instance and a function"])

        if node.id in self.nodes:
            raise GraphValidationError([f"Duplicate node id: {node.id}"])
        if not node.validate():
            raise GraphValidationError([f"Node {node.id} failed validation"])

        self.nodes[node.id] = node
        self._logger.info(f"Added node: {node.id} of type {type(node).__name__}")
        return node

    def _require_known(self, node_id: str, *, allow: Tuple[str, ...]) -> None:
        if node_id not in self.nodes and node_id not in allow:
            raise UnknownDestinationError([f"Node not found: {node_id}"])

    def add_edge(self, from_node_id: str, to_node_id: str) -> None:
        """Add a static edge.

        Args:
            from_node_id: Source node ID (or START)
            to_node_id: Target node ID (or END)

        Raises:
            UnknownDestinationError: If either node ID is not registered
        """
        self._require_known(from_node_id, allow=(START,))
        self._require_known(to_node_id, allow=(END,))
        successors = self.edges.setdefault(from_node_id, [])
        if to_node_id not in successors:
            successors.append(to_node_id)
        self._logger.info(f"Added edge: {from_node_id} --> {to_node_id}")

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        path_map: Optional[Union[Dict[Any, str], Sequence[str]]] = None,
    ) -> None:
        """Route from ``source`` according to ``router(state)``.

        Args:
            source: Node the branch leaves from (or START)
            router: Called with the merged state after ``source`` runs
            path_map: Dict mapping router results to node ids, or a list of the
                node ids the router may return
        """
        self._require_known(source, allow=(START,))
        if isinstance(path_map, dict):
            branch = Branch(router=router, path_map=dict(path_map), destinations=list(path_map.values()))
        elif path_map is not None:
            branch = Branch(router=router, destinations=list(path_map))
        else:
            branch = Branch(router=router)
        for dest in branch.destinations or []:
            self._require_known(dest, allow=(END,))
        self.branches.setdefault(source, []).append(branch)
        self._logger.info(f"Added conditional edge from {source} -> {branch.destinations or '<dynamic>'}")

    def set_entry_point(self, node_id: str) -> None:
        """Start runs at ``node_id``."""
        self.add_edge(START, node_id)

    def set_finish_point(self, node_id: str) -> None:
        """End runs after ``node_id``."""
        self.add_edge(node_id, END)

    def chain(self, nodes: List[Node]) -> None:
        """Register and connect a sequence of nodes in order."""
        for node in nodes:
            self.add_node(node)

        for i in range(len(nodes) - 1):
            self.add_edge(nodes[i].id, nodes[i + 1].id)

        if not self.edges.get(START):
            self.set_entry_point(nodes[0].id)

    def successors(self, node_id: str) -> List[str]:
        """Static successors, with terminal nodes routed to END when they have none."""
        successors = list(self.edges.get(node_id, []))
        if not successors and node_id in self.nodes and self.nodes[node_id].is_terminal:
            successors = [END]
        return successors

    def _reachable_targets(self, node_id: str) -> Optional[Set[str]]:
        """Everything ``node_id`` can hand control to; None if not statically known."""
        targets = set(self.successors(node_id))
        for branch in self.branches.get(node_id, []):
            if branch.destinations is None:
                return None
            targets.update(branch.destinations)
        node = self.nodes.get(node_id)
        if node is not None and node.ends is not None:
            targets.update(node.ends)
        return targets

    def _collect_errors(self) -> Tuple[List[str], List[str]]:
        unknown: List[str] = []
        other: List[str] = []

        if not self.nodes:
            other.append("Graph has no nodes")
            return unknown, other

        if not self.edges.get(START) and not self.branches.get(START):
            other.append("Graph has no entry point")

        for node_id, node in self.nodes.items():
            if not node.validate():
                other.append(f"Node {node_id} failed validation")
            for end in node.ends or []:
                if end != END and end not in self.nodes:
                    unknown.append(f"Node {node_id} declares unknown destination: {end}")
            for field in node.writes or []:
                if field not in self.state_schema.fields:
                    other.append(f"Node {node_id} declares write to unknown field: {field}")

        for source, targets in self.edges.items():
            if source != START and source not in self.nodes:
                unknown.append(f"Edge from unknown node: {source}")
            for target in targets:
                if target != END and target not in self.nodes:
                    unknown.append(f"Node {source} references unknown node: {target}")

        for source, branches in self.branches.items():
            for branch in branches:
                for target in branch.destinations or []:
                    if target != END and target not in self.nodes:
                        unknown.append(f"Branch from {source} references unknown node: {target}")

        return unknown, other

    def unreachable(self) -> List[str]:
        """Nodes with no static path from START (empty if routing is dynamic)."""
        seen: Set[str] = set()
        queue = deque([START])
        while queue:
            current = queue.popleft()
            targets = self._reachable_targets(current) if current != START else (
                set(self.edges.get(START, [])) | {
                    d for b in self.branches.get(START, []) for d in (b.destinations or self.nodes)
                }
            )
            if targets is None:
                return []
            for target in targets:
                if target in self.nodes and target not in seen:
                    seen.add(target)
                    queue.append(target)
        return [node_id for node_id in self.nodes if node_id not in seen]

    def validate(self) -> List[str]:
        """Validate the graph configuration.

        Returns:
            List of validation error messages (empty if valid)
        """
        unknown, other = self._collect_errors()
        return unknown + other

    def compile(self, store=None, config: Optional[GraphConfig] = None):
        """Validate the graph and bind it to a checkpoint store.

        Args:
            store: CheckpointStore for thread persistence (a private in-memory store if None)
            config: Overrides the graph's execution config

        Returns:
            CompiledGraph ready to ``invoke``

        Raises:
            UnknownDestinationError: If any edge or destination names an unknown node
            GraphValidationError: For any other structural problem
        """
        from stepgraph.core.graph.engine import CompiledGraph
        from stepgraph.core.graph.checkpoint import InMemoryCheckpointStore

        unknown, other = self._collect_errors()
        if unknown:
            raise UnknownDestinationError(unknown)
        if other:
            raise GraphValidationError(other)
        for node_id in self.unreachable():
            self._logger.warning(
                f"Node {node_id} has no static path from the entry point; "
                "it can only run if a Command routes to it"
            )

        compiled = CompiledGraph(
            graph=self,
            store=store if store is not None else InMemoryCheckpointStore(),
            config=config or self.config,
        )
        self._logger.info(
            f"Compiled graph with {len(self.nodes)} nodes using {type(compiled.store).__name__}"
        )
        return compiled
