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

"""
graphloom - deterministic graph execution with checkpointed state.

Build a StateGraph of nodes over channel-reduced state, compile it, and run
it in supersteps. With a checkpointer every tick is persisted per thread,
so runs can pause at interrupts, resume, replay and branch from history.

Simple API:
    from graphloom import StateGraph, START, END, MemoryCheckpointer

    app = graph.compile(checkpointer=MemoryCheckpointer())
    result = await app.invoke({"messages": [("user", "hi")]}, {"thread_id": "t1"})
"""

__version__ = "0.1.0"
__author__ = "Vijaykumar Singh"
__email__ = "singhvjd@gmail.com"
__license__ = "Apache-2.0"

from graphloom.config.settings import Settings, load_settings
from graphloom.core.errors import (
    CheckpointNotFoundError,
    ConcurrentWriteHazard,
    DuplicateNodeError,
    GraphError,
    GraphValidationError,
    InvalidUpdateError,
    NodeExecutionError,
    RecursionLimitExceeded,
    UnknownNodeError,
)
from graphloom.framework import (
    END,
    START,
    CompiledGraph,
    GraphExecutionResult,
    JSONFileCheckpointer,
    MemoryCheckpointer,
    NodeInterrupt,
    RunStatus,
    SQLiteCheckpointer,
    StateGraph,
    add_messages,
    append,
)

__all__ = [
    "__version__",
    "Settings",
    "load_settings",
    "StateGraph",
    "CompiledGraph",
    "GraphExecutionResult",
    "RunStatus",
    "START",
    "END",
    "append",
    "add_messages",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "JSONFileCheckpointer",
    "NodeInterrupt",
    "GraphError",
    "GraphValidationError",
    "DuplicateNodeError",
    "UnknownNodeError",
    "InvalidUpdateError",
    "RecursionLimitExceeded",
    "NodeExecutionError",
    "CheckpointNotFoundError",
    "ConcurrentWriteHazard",
]
