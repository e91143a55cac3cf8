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

"""graphloom framework - stateful graph execution with checkpoints.

Core concepts:

1. **StateGraph** - Register nodes and edges over a typed state
2. **Channels** - Per-key reducers folding the deltas of one tick
3. **CompiledGraph** - Superstep scheduler (invoke / stream)
4. **Checkpointer** - Per-thread checkpoint chains for resume, replay, branching
5. **Interrupts** - Pause before/after nodes; resume with a null input

Quick Start:
    from graphloom.framework import StateGraph, START, END, MemoryCheckpointer

    graph = StateGraph(State)
    graph.add_node("plan", plan)
    graph.add_node("act", act)
    graph.add_edge(START, "plan")
    graph.add_edge("plan", "act")
    graph.add_edge("act", END)

    app = graph.compile(checkpointer=MemoryCheckpointer(), interrupt_before=["act"])
    result = await app.invoke({"task": "deploy"}, {"thread_id": "t1"})
    result = await app.invoke(None, {"thread_id": "t1"})  # resume
"""

from graphloom.framework.channels import (
    RESET,
    BinaryOperatorChannel,
    Channel,
    LastValue,
    Reset,
    StateSchema,
    accumulate,
    add_messages,
    append,
    append_or_reset,
    overwrite_if_present,
)
from graphloom.framework.checkpoint import (
    BaseCheckpointer,
    Checkpoint,
    CheckpointHistory,
    MemoryCheckpointer,
    StateSnapshot,
)
from graphloom.framework.checkpointer import JSONFileCheckpointer, SQLiteCheckpointer
from graphloom.framework.config import GraphConfig, RunConfig
from graphloom.framework.graph import END, START, GraphTopology, StateGraph
from graphloom.framework.hitl import Interrupt, InterruptController, InterruptWhen, NodeInterrupt
from graphloom.framework.messages import Message, MessageChunk, RemoveMessage, ToolCall
from graphloom.framework.prebuilt import ChatModel, Tool, ToolNode, model_node, tool, tools_condition
from graphloom.framework.pregel import CompiledGraph, GraphExecutionResult, RunStatus
from graphloom.framework.streaming import Chunk, GraphEvent, StreamMode, TextChunk, fold_chunks

__all__ = [
    # Graph
    "StateGraph",
    "CompiledGraph",
    "GraphTopology",
    "START",
    "END",
    # Execution
    "GraphExecutionResult",
    "RunStatus",
    "GraphConfig",
    "RunConfig",
    # State
    "StateSchema",
    "Channel",
    "LastValue",
    "BinaryOperatorChannel",
    "append",
    "overwrite_if_present",
    "accumulate",
    "append_or_reset",
    "add_messages",
    "Reset",
    "RESET",
    # Checkpointing
    "Checkpoint",
    "CheckpointHistory",
    "StateSnapshot",
    "BaseCheckpointer",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "JSONFileCheckpointer",
    # Interrupts
    "Interrupt",
    "InterruptController",
    "InterruptWhen",
    "NodeInterrupt",
    # Streaming
    "Chunk",
    "TextChunk",
    "fold_chunks",
    "GraphEvent",
    "StreamMode",
    # Messages and tools
    "Message",
    "MessageChunk",
    "RemoveMessage",
    "ToolCall",
    "ChatModel",
    "Tool",
    "tool",
    "ToolNode",
    "model_node",
    "tools_condition",
]
