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

"""Centralized error types for graphloom.

This module provides:
- A base exception carrying structured details and a correlation ID
- Graph construction errors raised at compile time
- Execution errors raised when a tick aborts
- Checkpoint lookup errors raised on resume/update

Propagation policy:
    Construction errors fail fast in ``StateGraph.compile()``. Execution
    errors abort the current tick before anything is merged, so the last
    committed checkpoint is always intact and the run can be retried or
    resumed from it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence


class ErrorCategory(Enum):
    """Categories of errors for classification and handling."""

    GRAPH_INVALID = "graph_invalid"
    STATE_UPDATE = "state_update"
    NODE_EXECUTION = "node_execution"
    RECURSION = "recursion"
    CHECKPOINT = "checkpoint"
    UNKNOWN = "unknown"


# =============================================================================
# Base Exception
# =============================================================================


class GraphError(Exception):
    """Base exception for all graphloom errors.

    Provides structured error information including:
    - Error category
    - Correlation ID for tracking
    - Recovery suggestions
    - Original exception chain
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: Optional[str] = None,
        correlation_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.details = details or {}
        self.recovery_hint = recovery_hint
        self.correlation_id = correlation_id or str(uuid.uuid4())[:8]
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.message,
            "category": self.category.value,
            "correlation_id": self.correlation_id,
            "recovery_hint": self.recovery_hint,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        result = f"[{self.correlation_id}] {self.message}"
        if self.recovery_hint:
            result += f"\nRecovery hint: {self.recovery_hint}"
        return result


# =============================================================================
# Graph Construction Errors
# =============================================================================


class GraphValidationError(GraphError):
    """Graph structure is invalid and cannot be compiled."""

    def __init__(self, message: str, errors: Optional[Sequence[str]] = None, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.GRAPH_INVALID)
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])
        if self.errors:
            self.details["errors"] = self.errors


class DuplicateNodeError(GraphValidationError):
    """A node name was registered twice."""

    def __init__(self, node: str, **kwargs: Any):
        super().__init__(
            f"Node '{node}' already exists",
            recovery_hint="Node names must be unique within a graph.",
            **kwargs,
        )
        self.node = node
        self.details["node"] = node


class UnknownNodeError(GraphValidationError):
    """An edge, branch or interrupt references a node that was never added."""

    def __init__(self, node: str, context: str = "", **kwargs: Any):
        message = f"Unknown node '{node}'"
        if context:
            message += f" ({context})"
        super().__init__(
            message,
            recovery_hint="Call add_node() for every node referenced by edges and interrupts.",
            **kwargs,
        )
        self.node = node
        self.details["node"] = node


# =============================================================================
# Execution Errors
# =============================================================================


class InvalidUpdateError(GraphError):
    """A node (or update_state call) produced a delta the state schema rejects."""

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("category", ErrorCategory.STATE_UPDATE)
        super().__init__(message, **kwargs)


class RecursionLimitExceeded(GraphError):
    """The run did not reach END within the configured number of ticks."""

    def __init__(self, limit: int, **kwargs: Any):
        super().__init__(
            f"Recursion limit of {limit} ticks reached without hitting END",
            category=ErrorCategory.RECURSION,
            recovery_hint=(
                "Check the graph for a cycle without an exit condition, "
                "or raise recursion_limit in the run config."
            ),
            **kwargs,
        )
        self.limit = limit
        self.details["recursion_limit"] = limit


class NodeExecutionError(GraphError):
    """A node, router, tool or model call failed and the tick was aborted.

    Attributes:
        node: Name of the failing node
        checkpoint_config: Config of the last committed checkpoint (resume token),
            or None when the run has no checkpointer
    """

    def __init__(
        self,
        node: str,
        cause: BaseException,
        checkpoint_config: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ):
        super().__init__(
            f"Node '{node}' failed: {type(cause).__name__}: {cause}",
            category=ErrorCategory.NODE_EXECUTION,
            cause=cause,
            recovery_hint="The tick was discarded; resume from the last checkpoint to retry.",
            **kwargs,
        )
        self.node = node
        self.checkpoint_config = checkpoint_config
        self.details["node"] = node
        self.details["checkpoint_config"] = checkpoint_config


class CheckpointNotFoundError(GraphError):
    """Resume or update targeted a thread or checkpoint that does not exist."""

    def __init__(self, thread_id: Optional[str], checkpoint_id: Optional[str] = None, **kwargs: Any):
        if checkpoint_id:
            message = f"Checkpoint '{checkpoint_id}' not found in thread '{thread_id}'"
        else:
            message = f"No checkpoint found for thread '{thread_id}'"
        super().__init__(message, category=ErrorCategory.CHECKPOINT, **kwargs)
        self.thread_id = thread_id
        self.checkpoint_id = checkpoint_id
        self.details["thread_id"] = thread_id
        self.details["checkpoint_id"] = checkpoint_id


class ConcurrentWriteHazard(UserWarning):
    """Two runs appended to the same thread id at the same time.

    Writers to one thread must be serialized by the caller. The engine does
    not lock threads; it only warns when it sees overlapping runs on the
    same compiled graph in one process.
    """


__all__ = [
    "ErrorCategory",
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
