# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""StateGraph builder for stateful, cyclic workflows.

Nodes are functions of the state that return a partial delta (or None).
Edges are plain (``add_edge``) or conditional (``add_conditional_edges``,
a router returning one or more branch keys). Cycles are allowed; the
compiled graph bounds them with a recursion limit.

Example:
    from typing import Annotated, TypedDict
    from graphloom.framework.channels import append
    from graphloom.framework.graph import StateGraph, START, END

    class State(TypedDict):
        aggregate: Annotated[list, append]

    graph = StateGraph(State)
    graph.add_node("a", lambda s: {"aggregate": ["A"]})
    graph.add_node("b", lambda s: {"aggregate": ["B"]})
    graph.add_edge(START, "a")
    graph.add_edge("a", "b")
    graph.add_edge("b", END)

    app = graph.compile()
    result = await app.invoke({"aggregate": []})
    assert result.state["aggregate"] == ["A", "B"]

The compiled structure is a GraphTopology: node names live in an arena
(a tuple whose index is the registration order) and edges reference
nodes by index, so the structure serializes cleanly and frontiers sort
deterministically.
"""

from __future__ import annotations

import inspect
import logging
import typing
from dataclasses import dataclass, field
from enum import Enum, EnumMeta
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Iterable,
    Optional,
    Sequence,
    Union,
)

from graphloom.core.errors import (
    DuplicateNodeError,
    GraphValidationError,
    UnknownNodeError,
)
from graphloom.framework.channels import (
    LastValue,
    StateSchema,
    accumulate,
    add_messages,
    append,
    append_or_reset,
    overwrite_if_present,
)

if TYPE_CHECKING:
    from graphloom.framework.checkpoint import BaseCheckpointer
    from graphloom.framework.pregel import CompiledGraph

logger = logging.getLogger(__name__)

# Sentinel node names
START = "__start__"
END = "__end__"

RESERVED_NAMES = frozenset({START, END})

Router = Callable[..., Union[str, Sequence[str], Awaitable[Any]]]
PathMap = Union[dict[Any, str], Sequence[str], EnumMeta, None]


class EdgeType(Enum):
    """Type of edge in the graph."""

    NORMAL = "normal"
    CONDITIONAL = "conditional"


def _accepts_config(func: Callable[..., Any]) -> bool:
    """True when ``func`` takes ``(state, config)`` rather than ``(state)``."""
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    if "config" in sig.parameters:
        return True
    positional = [
        p
        for p in sig.parameters.values()
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2


def _callable_name(func: Callable[..., Any]) -> str:
    return getattr(func, "__name__", None) or type(func).__name__


@dataclass
class Node:
    """Represents a node in the graph.

    Attributes:
        name: Unique node identifier
        func: Sync function, async function or async generator function
        metadata: Additional node metadata
    """

    name: str
    func: Callable[..., Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    accepts_config: bool = field(init=False)

    def __post_init__(self) -> None:
        self.accepts_config = _accepts_config(self.func)

    def call(self, state: dict[str, Any], config: Any) -> Any:
        """Invoke the function; the result may be a value, awaitable or async generator."""
        if self.accepts_config:
            return self.func(state, config)
        return self.func(state)


@dataclass
class Branch:
    """Conditional edge: a router plus the closed table of its targets.

    Attributes:
        source: Node the branch leaves from (START for a conditional entry)
        router: Returns a branch key, a list of keys, or an Enum member
        path_map: Branch key -> node name; None means keys are node names
        ends: Closed set of possible targets, or None when it can only be
            checked at run time
    """

    source: str
    router: Router
    path_map: Optional[dict[str, str]] = None
    ends: Optional[tuple[str, ...]] = None
    accepts_config: bool = field(init=False)

    def __post_init__(self) -> None:
        self.accepts_config = _accepts_config(self.router)

    @classmethod
    def create(cls, source: str, router: Router, path_map: PathMap = None) -> "Branch":
        table = _normalize_path_map(router, path_map)
        ends = tuple(dict.fromkeys(table.values())) if table is not None else None
        return cls(source=source, router=router, path_map=table, ends=ends)

    async def resolve(self, state: dict[str, Any], config: Any) -> list[str]:
        """Evaluate the router and map its result to node names."""
        result = self.router(state, config) if self.accepts_config else self.router(state)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, (list, tuple, set, frozenset)):
            keys = list(result)
        else:
            keys = [result]

        targets = []
        for key in keys:
            if isinstance(key, Enum):
                key = key.value
            if self.path_map is not None:
                if key not in self.path_map:
                    raise UnknownNodeError(
                        str(key),
                        context=f"router of '{self.source}' returned a key missing from its path map",
                    )
                targets.append(self.path_map[key])
            else:
                targets.append(key)
        return targets


def _normalize_path_map(router: Router, path_map: PathMap) -> Optional[dict[str, str]]:
    """Turn the accepted path map forms into a closed key -> node table."""

    def _name(value: Any) -> str:
        return value.value if isinstance(value, Enum) else value

    if path_map is None:
        return _literal_path_map(router)
    if isinstance(path_map, EnumMeta):
        return {member.value: member.value for member in path_map}
    if isinstance(path_map, dict):
        return {_name(k): _name(v) for k, v in path_map.items()}
    if isinstance(path_map, (list, tuple)):
        return {_name(v): _name(v) for v in path_map}
    raise TypeError(f"path_map must be a dict, a list of node names or an Enum, got {path_map!r}")


def _literal_path_map(router: Router) -> Optional[dict[str, str]]:
    """Infer targets from a ``-> Literal["a", "b"]`` return annotation."""
    func = router if inspect.isfunction(router) or inspect.ismethod(router) else getattr(router, "__call__", router)
    try:
        hints = typing.get_type_hints(func)
    except (NameError, TypeError):
        return None
    ret = hints.get("return")
    if ret is None:
        return None
    # list[Literal[...]] routes to several targets.
    if typing.get_origin(ret) in (list, tuple, set):
        args = typing.get_args(ret)
        ret = args[0] if args else None
    if typing.get_origin(ret) is typing.Literal:
        return {str(v): str(v) for v in typing.get_args(ret)}
    return None


@dataclass(frozen=True)
class GraphTopology:
    """Compiled, serializable adjacency table.

    ``names`` is the arena: ``names[0]`` is START, ``names[-1]`` is END and
    the user nodes sit in between in registration order. ``edges[i]`` holds
    the indexes of the plain successors of ``names[i]``.
    """

    names: tuple[str, ...]
    edges: tuple[tuple[int, ...], ...]
    branches: dict[str, tuple[Branch, ...]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        nodes: Sequence[str],
        edges: Iterable[tuple[str, str]],
        branches: dict[str, list[Branch]],
    ) -> "GraphTopology":
        names = (START, *nodes, END)
        index = {name: i for i, name in enumerate(names)}
        adjacency: list[set[int]] = [set() for _ in names]
        for source, target in edges:
            adjacency[index[source]].add(index[target])
        return cls(
            names=names,
            edges=tuple(tuple(sorted(targets)) for targets in adjacency),
            branches={src: tuple(b) for src, b in branches.items()},
        )

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise UnknownNodeError(name) from None

    @property
    def nodes(self) -> tuple[str, ...]:
        """User nodes in registration order."""
        return self.names[1:-1]

    def static_successors(self, name: str) -> list[str]:
        return [self.names[i] for i in self.edges[self.index(name)]]

    def order(self, names: Iterable[str]) -> tuple[str, ...]:
        """Deduplicate and sort by registration order, dropping END."""
        unique = {n for n in names if n != END}
        for n in unique:
            self.index(n)
        return tuple(sorted(unique, key=self.names.index))

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": list(self.nodes),
            "edges": [
                {"source": self.names[i], "target": self.names[j]}
                for i, targets in enumerate(self.edges)
                for j in targets
            ],
            "branches": [
                {
                    "source": branch.source,
                    "router": _callable_name(branch.router),
                    "path_map": dict(branch.path_map) if branch.path_map is not None else None,
                }
                for branches in self.branches.values()
                for branch in branches
            ],
        }

    def to_mermaid(self) -> str:
        """Render as a Mermaid flowchart."""

        def node_id(name: str) -> str:
            # Lowercase "end" is a Mermaid keyword.
            return name.strip("_").upper() if name in RESERVED_NAMES else name

        lines = ["graph TD"]
        lines.append(f"    {node_id(START)}([{START}])")
        for name in self.nodes:
            lines.append(f"    {node_id(name)}[{name}]")
        lines.append(f"    {node_id(END)}([{END}])")
        for i, targets in enumerate(self.edges):
            for j in targets:
                lines.append(f"    {node_id(self.names[i])} --> {node_id(self.names[j])}")
        for branches in self.branches.values():
            for branch in branches:
                if branch.path_map is None:
                    lines.append(f"    {node_id(branch.source)} -.-> {node_id(END)}")
                    continue
                for key, target in branch.path_map.items():
                    label = f"|{key}|" if key != target else ""
                    lines.append(f"    {node_id(branch.source)} -.->{label} {node_id(target)}")
        return "\n".join(lines)


class StateGraph:
    """StateGraph builder for creating stateful workflows.

    Example:
        graph = StateGraph(AgentState)
        graph.add_node("analyze", analyze_func)
        graph.add_node("execute", execute_func)
        graph.add_edge("analyze", "execute")
        graph.add_conditional_edges(
            "execute",
            should_retry,
            {"retry": "analyze", "done": END}
        )
        graph.set_entry_point("analyze")

        app = graph.compile()
        result = await app.invoke(initial_state)
    """

    def __init__(self, state_schema: Any = None):
        """Initialize StateGraph.

        Args:
            state_schema: TypedDict/annotated class, ``{name: Channel}``
                mapping, StateSchema, or None for a dynamic last-write-wins state
        """
        self.state_type = state_schema
        self._nodes: dict[str, Node] = {}
        self._edges: list[tuple[str, str]] = []
        self._branches: dict[str, list[Branch]] = {}

    @property
    def nodes(self) -> dict[str, Node]:
        return dict(self._nodes)

    def add_node(
        self,
        name: Union[str, Callable[..., Any]],
        func: Optional[Callable[..., Any]] = None,
        **metadata: Any,
    ) -> "StateGraph":
        """Add a node to the graph.

        Args:
            name: Unique node identifier (or the function, named after itself)
            func: Node function ``(state)`` or ``(state, config)`` returning
                a delta mapping or None; may be async or an async generator
            **metadata: Additional metadata

        Returns:
            Self for chaining

        Raises:
            DuplicateNodeError: If node already exists
        """
        if func is None and callable(name):
            func, name = name, _callable_name(name)
        if not isinstance(name, str) or not name:
            raise GraphValidationError(f"Node name must be a non-empty string, got {name!r}")
        if name in RESERVED_NAMES:
            raise GraphValidationError(f"Node name '{name}' is reserved")
        if func is None or not callable(func):
            raise GraphValidationError(f"Node '{name}' needs a callable, got {func!r}")
        if name in self._nodes:
            raise DuplicateNodeError(name)

        self._nodes[name] = Node(name=name, func=func, metadata=metadata)
        logger.debug(f"Added node: {name}")
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph":
        """Add a normal edge between nodes.

        Args:
            source: Source node ID (or START)
            target: Target node ID (or END)

        Returns:
            Self for chaining
        """
        if source == END:
            raise GraphValidationError("END cannot be an edge source")
        if target == START:
            raise GraphValidationError("START cannot be an edge target")
        self._edges.append((source, target))
        logger.debug(f"Added edge: {source} -> {target}")
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        path_map: PathMap = None,
    ) -> "StateGraph":
        """Add a conditional edge with one or more branches.

        Args:
            source: Source node ID (or START)
            router: ``(state)`` or ``(state, config)``, sync or async, returning
                a branch key, a list of keys (fan-out) or an Enum member
            path_map: Branch key -> node name dict, a list of node names, or an
                Enum class whose values are node names. When omitted, a
                ``Literal`` return annotation of the router closes the set.

        Returns:
            Self for chaining
        """
        if source == END:
            raise GraphValidationError("END cannot be an edge source")
        branch = Branch.create(source, router, path_map)
        self._branches.setdefault(source, []).append(branch)
        logger.debug(f"Added conditional edge: {source} -> {list(branch.ends or ['*'])}")
        return self

    def set_entry_point(self, name: str) -> "StateGraph":
        """Set the entry point node (edge from START)."""
        return self.add_edge(START, name)

    def set_conditional_entry_point(self, router: Router, path_map: PathMap = None) -> "StateGraph":
        """Route from START with a router."""
        return self.add_conditional_edges(START, router, path_map)

    def set_finish_point(self, name: str) -> "StateGraph":
        """Set a node as finish point (adds edge to END)."""
        return self.add_edge(name, END)

    def _check_endpoints(self) -> None:
        for source, target in self._edges:
            if source != START and source not in self._nodes:
                raise UnknownNodeError(source, context=f"edge source of {source} -> {target}")
            if target != END and target not in self._nodes:
                raise UnknownNodeError(target, context=f"edge target of {source} -> {target}")
        for source, branches in self._branches.items():
            if source != START and source not in self._nodes:
                raise UnknownNodeError(source, context="conditional edge source")
            for branch in branches:
                for target in branch.ends or ():
                    if target != END and target not in self._nodes:
                        raise UnknownNodeError(target, context=f"path map of '{source}'")

    def validate(self) -> list[str]:
        """Validate graph structure.

        Raises UnknownNodeError for edges that reference unregistered
        nodes; returns every other structural problem as a message.
        """
        self._check_endpoints()
        errors = []

        if not self._nodes:
            errors.append("Graph has no nodes")

        has_entry = any(s == START for s, _ in self._edges) or START in self._branches
        if not has_entry:
            errors.append("Graph has no entry point; call set_entry_point() or add_edge(START, ...)")

        sources = {s for s, _ in self._edges} | set(self._branches)
        for name in self._nodes:
            if name not in sources:
                errors.append(f"Node '{name}' has no outgoing edge; add an edge to END to make it terminal")

        if has_entry:
            reachable = self._find_reachable()
            for name in self._nodes:
                if name not in reachable:
                    errors.append(f"Node '{name}' is unreachable")

        return errors

    def _find_reachable(self) -> set[str]:
        """Find all nodes reachable from START."""
        successors: dict[str, set[str]] = {}
        for source, target in self._edges:
            successors.setdefault(source, set()).add(target)
        for source, branches in self._branches.items():
            for branch in branches:
                # An open router can reach any node.
                targets = branch.ends if branch.ends is not None else tuple(self._nodes)
                successors.setdefault(source, set()).update(targets)

        reachable: set[str] = set()
        to_visit = [START]
        while to_visit:
            name = to_visit.pop()
            if name in reachable or name == END:
                continue
            reachable.add(name)
            to_visit.extend(successors.get(name, ()))
        reachable.discard(START)
        return reachable

    def compile(
        self,
        checkpointer: Optional["BaseCheckpointer"] = None,
        *,
        interrupt_before: Optional[Sequence[str]] = None,
        interrupt_after: Optional[Sequence[str]] = None,
        recursion_limit: Optional[int] = None,
        step_timeout: Optional[float] = None,
        name: Optional[str] = None,
    ) -> "CompiledGraph":
        """Compile the graph for execution.

        Every call returns a new immutable CompiledGraph; the builder can
        keep being edited without affecting graphs already compiled.

        Args:
            checkpointer: Optional checkpointer for persistence
            interrupt_before: Nodes to pause before (requires a checkpointer)
            interrupt_after: Nodes to pause after (requires a checkpointer)
            recursion_limit: Tick ceiling (defaults from Settings)
            step_timeout: Seconds per tick (defaults from Settings)
            name: Graph name used in logs

        Returns:
            CompiledGraph ready for execution

        Raises:
            UnknownNodeError: If an edge or interrupt names an unknown node
            GraphValidationError: If graph is invalid
        """
        from graphloom.framework.config import GraphConfig
        from graphloom.framework.hitl import InterruptController
        from graphloom.framework.pregel import CompiledGraph

        errors = self.validate()
        if errors:
            raise GraphValidationError(f"Invalid graph: {'; '.join(errors)}", errors=errors)

        config = GraphConfig.create(
            checkpointer,
            interrupt_before=interrupt_before,
            interrupt_after=interrupt_after,
            recursion_limit=recursion_limit,
            step_timeout=step_timeout,
        )
        interrupts = InterruptController(
            config.interrupt.interrupt_before, config.interrupt.interrupt_after
        )
        interrupts.validate(self._nodes)
        if interrupts.enabled and checkpointer is None:
            raise GraphValidationError(
                "Interrupts require a checkpointer",
                recovery_hint="Pass checkpointer=MemoryCheckpointer() (or a persistent one) to compile().",
            )
        topology = GraphTopology.build(
            list(self._nodes),
            self._edges,
            {src: list(b) for src, b in self._branches.items()},
        )
        logger.debug(f"Compiled graph {name or ''} with {len(self._nodes)} nodes")
        return CompiledGraph(
            nodes=dict(self._nodes),
            topology=topology,
            schema=StateSchema.coerce(self.state_type).copy(),
            config=config,
            name=name or "graph",
        )

    @classmethod
    def from_schema(
        cls,
        schema: Union[dict[str, Any], str],
        state_schema: Any = None,
        node_registry: Optional[dict[str, Callable[..., Any]]] = None,
        condition_registry: Optional[dict[str, Callable[..., Any]]] = None,
        reducer_registry: Optional[dict[str, Callable[[Any, Any], Any]]] = None,
    ) -> "StateGraph":
        """Create StateGraph from schema dictionary or YAML string.

        Args:
            schema: Either a dictionary schema or YAML string containing:
                - nodes: List of node definitions with id and type
                  (``function`` or ``passthrough``)
                - edges: List of edge definitions with source, target, type
                  (``normal`` or ``conditional``)
                - entry_point: Starting node ID
                - Optional: channels (channel name -> reducer name)
            state_schema: Optional state type; overrides ``channels``
            node_registry: Maps node function names to callables
            condition_registry: Maps router names to callables
            reducer_registry: Extra reducers by name, on top of the built-in
                ``last_value``, ``append``, ``overwrite_if_present``,
                ``accumulate``, ``append_or_reset`` and ``add_messages``

        Returns:
            StateGraph instance ready for compilation

        Raises:
            ValueError: If schema is invalid or missing required fields
            TypeError: If node/edge types are unsupported

        Example with YAML:
            yaml_schema = \"""
            channels:
              notes: append
            nodes:
              - id: analyze
                type: function
                func: analyze_task
              - id: execute
                type: function
                func: execute_task
            edges:
              - source: analyze
                target: execute
              - source: execute
                target:
                  retry: analyze
                  done: __end__
                type: conditional
                condition: should_retry
            entry_point: analyze
            \"""

            graph = StateGraph.from_schema(
                yaml_schema,
                node_registry={"analyze_task": analyze, "execute_task": execute},
                condition_registry={"should_retry": should_retry},
            )
        """
        import yaml

        if isinstance(schema, str):
            try:
                schema_dict = yaml.safe_load(schema)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML schema: {e}") from e
        else:
            schema_dict = schema
        if not isinstance(schema_dict, dict):
            raise ValueError(f"Schema must be a mapping, got {type(schema_dict).__name__}")

        required_fields = ["nodes", "edges", "entry_point"]
        missing_fields = [f for f in required_fields if f not in schema_dict]
        if missing_fields:
            raise ValueError(f"Schema missing required fields: {missing_fields}")

        node_registry = node_registry or {}
        condition_registry = condition_registry or {}
        reducers: dict[str, Callable[[Any, Any], Any]] = {
            "append": append,
            "overwrite_if_present": overwrite_if_present,
            "accumulate": accumulate,
            "append_or_reset": append_or_reset,
            "add_messages": add_messages,
        }
        reducers.update(reducer_registry or {})

        if state_schema is None and schema_dict.get("channels"):
            channels: dict[str, Any] = {}
            for channel, reducer_name in schema_dict["channels"].items():
                if reducer_name in (None, "last_value"):
                    channels[channel] = LastValue()
                elif reducer_name in reducers:
                    channels[channel] = reducers[reducer_name]
                else:
                    raise ValueError(
                        f"Reducer '{reducer_name}' for channel '{channel}' not found. "
                        f"Available: {sorted(reducers) + ['last_value']}"
                    )
            state_schema = StateSchema.coerce(channels)

        graph = cls(state_schema)

        for node_def in schema_dict["nodes"]:
            if not isinstance(node_def, dict):
                raise ValueError(f"Invalid node definition: {node_def}")

            node_id = node_def.get("id")
            if not node_id:
                raise ValueError("Node definition must have 'id' field")

            node_type = node_def.get("type", "function")

            if node_type == "function":
                func_name = node_def.get("func")
                if not func_name:
                    raise ValueError(f"Function node '{node_id}' must specify 'func'")
                if func_name not in node_registry:
                    raise ValueError(
                        f"Node function '{func_name}' not found in node_registry. "
                        f"Available: {list(node_registry.keys())}"
                    )
                metadata = {k: v for k, v in node_def.items() if k not in ["id", "type", "func"]}
                graph.add_node(node_id, node_registry[func_name], **metadata)

            elif node_type == "passthrough":

                def passthrough(state: dict[str, Any]) -> None:
                    return None

                metadata = {k: v for k, v in node_def.items() if k not in ["id", "type"]}
                graph.add_node(node_id, passthrough, **metadata)

            else:
                raise TypeError(f"Unsupported node type: {node_type}")

        for edge_def in schema_dict["edges"]:
            if not isinstance(edge_def, dict):
                raise ValueError(f"Invalid edge definition: {edge_def}")

            source = edge_def.get("source")
            if not source:
                raise ValueError("Edge definition must have 'source' field")

            target = edge_def.get("target")
            if target is None:
                raise ValueError("Edge definition must have 'target' field")

            edge_type = edge_def.get("type", EdgeType.NORMAL.value)

            if edge_type == EdgeType.NORMAL.value:
                targets = target if isinstance(target, list) else [target]
                for t in targets:
                    graph.add_edge(source, t)

            elif edge_type == EdgeType.CONDITIONAL.value:
                condition_name = edge_def.get("condition")
                if not condition_name:
                    raise ValueError(f"Conditional edge from '{source}' must specify 'condition'")
                if condition_name not in condition_registry:
                    raise ValueError(
                        f"Condition function '{condition_name}' not found in "
                        f"condition_registry. Available: {list(condition_registry.keys())}"
                    )
                if not isinstance(target, (dict, list)):
                    raise ValueError(
                        f"Conditional edge target must map branches to nodes, got: {type(target)}"
                    )
                graph.add_conditional_edges(source, condition_registry[condition_name], target)

            else:
                raise TypeError(f"Unsupported edge type: {edge_type}")

        entry_point = schema_dict["entry_point"]
        if entry_point not in graph._nodes:
            raise ValueError(
                f"Entry point '{entry_point}' not found in nodes. "
                f"Available nodes: {list(graph._nodes.keys())}"
            )
        graph.set_entry_point(entry_point)

        for finish_point in schema_dict.get("finish_points", []) or []:
            graph.set_finish_point(finish_point)

        return graph


__all__ = [
    "START",
    "END",
    "EdgeType",
    "Node",
    "Branch",
    "GraphTopology",
    "StateGraph",
]
