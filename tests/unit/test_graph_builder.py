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

"""Tests for StateGraph construction, validation and compilation."""

from enum import Enum
from typing import Annotated, List, Literal, TypedDict

import pytest

from graphloom.core.errors import DuplicateNodeError, GraphValidationError, UnknownNodeError
from graphloom.framework.channels import StateSchema, append
from graphloom.framework.graph import END, START, Branch, GraphTopology, StateGraph
from graphloom.framework.pregel import CompiledGraph


class SimpleState(TypedDict):
    value: int
    log: Annotated[List[str], append]


def noop(state):
    return None


class Route(Enum):
    LEFT = "left"
    RIGHT = "right"


def literal_router(state) -> Literal["left", "__end__"]:
    return "left"


def multi_router(state) -> List[Literal["left", "right"]]:
    return ["left", "right"]


def _linear_graph() -> StateGraph:
    graph = StateGraph(SimpleState)
    graph.add_node("a", noop)
    graph.add_node("b", noop)
    graph.add_edge(START, "a")
    graph.add_edge("a", "b")
    graph.add_edge("b", END)
    return graph


class TestAddNode:
    """Tests for node registration."""

    def test_duplicate_node_raises(self):
        graph = StateGraph()
        graph.add_node("a", noop)
        with pytest.raises(DuplicateNodeError) as exc_info:
            graph.add_node("a", noop)
        assert exc_info.value.node == "a"

    def test_reserved_name_rejected(self):
        graph = StateGraph()
        with pytest.raises(GraphValidationError, match="reserved"):
            graph.add_node(START, noop)
        with pytest.raises(GraphValidationError, match="reserved"):
            graph.add_node(END, noop)

    def test_non_callable_rejected(self):
        with pytest.raises(GraphValidationError):
            StateGraph().add_node("a", "not callable")

    def test_function_names_itself(self):
        graph = StateGraph()
        graph.add_node(noop)
        assert "noop" in graph.nodes

    def test_metadata_kept(self):
        graph = StateGraph()
        graph.add_node("a", noop, description="first")
        assert graph.nodes["a"].metadata == {"description": "first"}

    def test_config_detection(self):
        graph = StateGraph()
        graph.add_node("one", lambda state: None)
        graph.add_node("two", lambda state, config: None)
        assert graph.nodes["one"].accepts_config is False
        assert graph.nodes["two"].accepts_config is True


class TestEdges:
    """Tests for edge registration."""

    def test_end_cannot_be_source(self):
        with pytest.raises(GraphValidationError):
            StateGraph().add_edge(END, "a")

    def test_start_cannot_be_target(self):
        with pytest.raises(GraphValidationError):
            StateGraph().add_edge("a", START)

    def test_unknown_edge_target_fails_compile(self):
        graph = _linear_graph()
        graph.add_edge("b", "missing")
        with pytest.raises(UnknownNodeError) as exc_info:
            graph.compile()
        assert exc_info.value.node == "missing"

    def test_unknown_path_map_target_fails_compile(self):
        graph = _linear_graph()
        graph.add_conditional_edges("a", noop, {"x": "ghost"})
        with pytest.raises(UnknownNodeError):
            graph.compile()


class TestPathMaps:
    """Tests for branch path map normalization."""

    def test_literal_return_annotation(self):
        branch = Branch.create("a", literal_router)
        assert branch.path_map == {"left": "left", "__end__": "__end__"}
        assert branch.ends == ("left", "__end__")

    def test_list_of_literal_annotation(self):
        branch = Branch.create("a", multi_router)
        assert set(branch.ends) == {"left", "right"}

    def test_enum_path_map(self):
        branch = Branch.create("a", noop, Route)
        assert branch.path_map == {"left": "left", "right": "right"}

    def test_list_path_map(self):
        branch = Branch.create("a", noop, ["left", END])
        assert branch.ends == ("left", END)

    def test_unannotated_router_is_open(self):
        branch = Branch.create("a", lambda state: "left")
        assert branch.path_map is None
        assert branch.ends is None

    def test_invalid_path_map_type(self):
        with pytest.raises(TypeError):
            Branch.create("a", noop, 42)

    @pytest.mark.asyncio
    async def test_resolve_maps_keys(self):
        branch = Branch.create("a", lambda state: "go", {"go": "left", "stop": END})
        assert await branch.resolve({}, None) == ["left"]

    @pytest.mark.asyncio
    async def test_resolve_enum_member(self):
        branch = Branch.create("a", lambda state: Route.RIGHT, Route)
        assert await branch.resolve({}, None) == ["right"]

    @pytest.mark.asyncio
    async def test_resolve_async_router(self):
        async def router(state):
            return ["left", "right"]

        branch = Branch.create("a", router, ["left", "right"])
        assert await branch.resolve({}, None) == ["left", "right"]

    @pytest.mark.asyncio
    async def test_resolve_unknown_key_raises(self):
        branch = Branch.create("a", lambda state: "nope", {"go": "left"})
        with pytest.raises(UnknownNodeError):
            await branch.resolve({}, None)


class TestValidation:
    """Tests for StateGraph.validate and compile."""

    def test_valid_graph(self):
        assert _linear_graph().validate() == []

    def test_empty_graph(self):
        errors = StateGraph().validate()
        assert "Graph has no nodes" in errors

    def test_missing_entry(self):
        graph = StateGraph()
        graph.add_node("a", noop)
        graph.add_edge("a", END)
        with pytest.raises(GraphValidationError, match="entry point"):
            graph.compile()

    def test_node_without_outgoing_edge(self):
        graph = StateGraph()
        graph.add_node("a", noop)
        graph.set_entry_point("a")
        errors = graph.validate()
        assert any("no outgoing edge" in e for e in errors)

    def test_unreachable_node(self):
        graph = _linear_graph()
        graph.add_node("island", noop)
        graph.add_edge("island", END)
        errors = graph.validate()
        assert errors == ["Node 'island' is unreachable"]

    def test_open_router_reaches_every_node(self):
        graph = StateGraph()
        graph.add_node("a", noop)
        graph.add_node("b", noop)
        graph.add_edge("b", END)
        graph.set_entry_point("a")
        graph.add_conditional_edges("a", lambda state: "b")
        assert graph.validate() == []

    def test_validation_error_lists_problems(self):
        graph = StateGraph()
        graph.add_node("a", noop)
        with pytest.raises(GraphValidationError) as exc_info:
            graph.compile()
        assert len(exc_info.value.errors) == 2

    def test_interrupt_on_unknown_node(self, memory_checkpointer):
        with pytest.raises(UnknownNodeError):
            _linear_graph().compile(memory_checkpointer, interrupt_before=["ghost"])

    def test_interrupts_require_checkpointer(self):
        with pytest.raises(GraphValidationError, match="checkpointer"):
            _linear_graph().compile(interrupt_before=["b"])

    def test_compile_returns_independent_graphs(self):
        graph = _linear_graph()
        first = graph.compile()
        graph.add_node("c", noop)
        graph.add_edge("b", "c")
        graph.add_edge("c", END)
        second = graph.compile()
        assert isinstance(first, CompiledGraph)
        assert first.topology.nodes == ("a", "b")
        assert second.topology.nodes == ("a", "b", "c")

    def test_compile_routes_interrupts_through_config(self, memory_checkpointer):
        app = _linear_graph().compile(memory_checkpointer, interrupt_before=["b"], interrupt_after=["a"])
        assert app.config.interrupt.interrupt_before == ("b",)
        assert app.config.interrupt.interrupt_after == ("a",)
        assert app.interrupts.interrupt_before == ("b",)
        assert app.get_graph_schema()["interrupt_after"] == ["a"]

    @pytest.mark.asyncio
    async def test_compiled_graphs_do_not_share_schema(self):
        schema = StateSchema()
        graph = StateGraph(schema)
        graph.add_node("a", lambda state: {"x": 1})
        graph.set_entry_point("a")
        graph.set_finish_point("a")
        first, second = graph.compile(), graph.compile()
        assert first.schema is not second.schema

        await first.invoke({"y": 2})
        assert sorted(first.schema.keys) == ["x", "y"]
        assert second.schema.keys == []
        assert schema.keys == []

    def test_compile_applies_limits(self):
        app = _linear_graph().compile(recursion_limit=7, step_timeout=1.5)
        assert app.config.execution.recursion_limit == 7
        assert app.config.execution.step_timeout == 1.5


class TestTopology:
    """Tests for the compiled adjacency table."""

    def test_arena_layout(self):
        topology = _linear_graph().compile().topology
        assert topology.names == (START, "a", "b", END)
        assert topology.static_successors(START) == ["a"]
        assert topology.static_successors("b") == [END]

    def test_order_sorts_by_registration_and_drops_end(self):
        topology = GraphTopology.build(["x", "y", "z"], [], {})
        assert topology.order(["z", END, "x", "z"]) == ("x", "z")

    def test_order_rejects_unknown(self):
        topology = GraphTopology.build(["x"], [], {})
        with pytest.raises(UnknownNodeError):
            topology.order(["ghost"])

    def test_graph_schema(self):
        app = _linear_graph().compile(name="linear")
        schema = app.get_graph_schema()
        assert schema["name"] == "linear"
        assert schema["nodes"] == ["a", "b"]
        assert {"source": "a", "target": "b"} in schema["edges"]
        assert schema["channels"]["log"] == "BinaryOperatorChannel(append)"

    def test_mermaid(self):
        graph = _linear_graph()
        graph.add_conditional_edges("a", noop, {"again": "a", "done": END})
        mermaid = graph.compile().to_mermaid()
        lines = mermaid.splitlines()
        assert lines[0] == "graph TD"
        assert "    START --> a" in lines
        assert "    a --> b" in lines
        assert "    a -.->|again| a" in lines
        assert "    a -.->|done| END" in lines


class TestFromSchema:
    """Tests for building graphs from YAML definitions."""

    YAML = """
channels:
  log: append
  value: last_value
nodes:
  - id: first
    type: function
    func: write_first
    description: writes first
  - id: pause
    type: passthrough
  - id: second
    type: function
    func: write_second
edges:
  - source: first
    target: pause
  - source: pause
    type: conditional
    condition: pick
    target:
      go: second
      stop: __end__
  - source: second
    target: __end__
entry_point: first
"""

    def _registries(self):
        nodes = {
            "write_first": lambda state: {"log": ["first"], "value": 1},
            "write_second": lambda state: {"log": ["second"], "value": 2},
        }
        conditions = {"pick": lambda state: "go"}
        return nodes, conditions

    def test_builds_graph(self):
        nodes, conditions = self._registries()
        graph = StateGraph.from_schema(self.YAML, node_registry=nodes, condition_registry=conditions)
        assert list(graph.nodes) == ["first", "pause", "second"]
        assert graph.nodes["first"].metadata == {"description": "writes first"}
        assert graph.validate() == []

    @pytest.mark.asyncio
    async def test_runs(self):
        nodes, conditions = self._registries()
        graph = StateGraph.from_schema(self.YAML, node_registry=nodes, condition_registry=conditions)
        result = await graph.compile().invoke({"log": []})
        assert result.success
        assert result.state == {"log": ["first", "second"], "value": 2}
        assert result.node_history == ["first", "pause", "second"]

    def test_missing_fields(self):
        with pytest.raises(ValueError, match="missing required fields"):
            StateGraph.from_schema({"nodes": []})

    def test_unknown_function(self):
        with pytest.raises(ValueError, match="not found in node_registry"):
            StateGraph.from_schema(self.YAML, condition_registry={"pick": noop})

    def test_unknown_reducer(self):
        schema = {
            "channels": {"log": "mystery"},
            "nodes": [{"id": "a", "type": "passthrough"}],
            "edges": [{"source": "a", "target": END}],
            "entry_point": "a",
        }
        with pytest.raises(ValueError, match="mystery"):
            StateGraph.from_schema(schema)

    def test_unsupported_node_type(self):
        schema = {
            "nodes": [{"id": "a", "type": "shell"}],
            "edges": [],
            "entry_point": "a",
        }
        with pytest.raises(TypeError):
            StateGraph.from_schema(schema)

    def test_invalid_yaml(self):
        with pytest.raises(ValueError):
            StateGraph.from_schema("nodes: [unclosed")
