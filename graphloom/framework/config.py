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

"""Compile-time and run-time configuration for compiled graphs.

GraphConfig is a facade composing focused configs (one concern each):
    - ExecutionConfig: tick ceiling and per-tick timeout
    - CheckpointConfig: state persistence
    - InterruptConfig: human-in-the-loop pause points

RunConfig is the per-invocation config. It always identifies the thread
(conversation) being read/written and may pin a historical checkpoint:

    config = {"thread_id": "conv-1"}
    config = {"thread_id": "conv-1", "checkpoint_id": "000004"}
    config = {"configurable": {"thread_id": "conv-1"}, "recursion_limit": 50}
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple, Union

from graphloom.config.settings import Settings, load_settings

if TYPE_CHECKING:
    from graphloom.framework.checkpoint import BaseCheckpointer


def _check_recursion_limit(value: int) -> None:
    if value < 0:
        raise ValueError(f"recursion_limit must be >= 0, got {value}")


@dataclass(frozen=True)
class ExecutionConfig:
    """Execution limits.

    Attributes:
        recursion_limit: Maximum ticks per invocation
        step_timeout: Seconds a single tick may take (None = no limit)
    """

    recursion_limit: int = 25
    step_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        _check_recursion_limit(self.recursion_limit)


@dataclass(frozen=True)
class CheckpointConfig:
    """State persistence."""

    checkpointer: Optional["BaseCheckpointer"] = None


@dataclass(frozen=True)
class InterruptConfig:
    """Nodes to pause before or after."""

    interrupt_before: Tuple[str, ...] = ()
    interrupt_after: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GraphConfig:
    """Facade composing the focused configs of a compiled graph."""

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    interrupt: InterruptConfig = field(default_factory=InterruptConfig)

    @classmethod
    def create(
        cls,
        checkpointer: Optional["BaseCheckpointer"] = None,
        *,
        interrupt_before: Any = (),
        interrupt_after: Any = (),
        recursion_limit: Optional[int] = None,
        step_timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ) -> "GraphConfig":
        """Build a GraphConfig, filling unset limits from Settings."""
        settings = settings or load_settings()
        return cls(
            execution=ExecutionConfig(
                recursion_limit=(
                    recursion_limit if recursion_limit is not None else settings.recursion_limit
                ),
                step_timeout=step_timeout if step_timeout is not None else settings.step_timeout,
            ),
            checkpoint=CheckpointConfig(checkpointer=checkpointer),
            interrupt=InterruptConfig(
                interrupt_before=tuple(interrupt_before or ()),
                interrupt_after=tuple(interrupt_after or ()),
            ),
        )


@dataclass(frozen=True)
class RunConfig:
    """Per-invocation configuration.

    Attributes:
        thread_id: Conversation/run identifier selecting the checkpoint chain
        checkpoint_id: Optional historical checkpoint to read from or branch off
        recursion_limit: Override of the compiled tick ceiling
        step_timeout: Override of the compiled per-tick timeout
        cancel_event: Checked between ticks; when set the run stops as CANCELLED
        metadata: Caller metadata copied into every checkpoint written by the run
    """

    thread_id: Optional[str] = None
    checkpoint_id: Optional[str] = None
    recursion_limit: Optional[int] = None
    step_timeout: Optional[float] = None
    cancel_event: Optional[asyncio.Event] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.recursion_limit is not None:
            _check_recursion_limit(self.recursion_limit)

    @classmethod
    def coerce(cls, config: Union["RunConfig", Mapping[str, Any], None]) -> "RunConfig":
        """Accept a RunConfig, a flat dict, or a ``{"configurable": {...}}`` dict."""
        if config is None:
            return cls()
        if isinstance(config, RunConfig):
            return config
        if not isinstance(config, Mapping):
            raise TypeError(f"Run config must be a mapping or RunConfig, got {type(config).__name__}")

        flat: Dict[str, Any] = dict(config)
        configurable = flat.pop("configurable", None) or {}
        flat.update(configurable)
        known = {
            "thread_id",
            "checkpoint_id",
            "recursion_limit",
            "step_timeout",
            "cancel_event",
            "metadata",
        }
        unknown = set(flat) - known
        if unknown:
            raise ValueError(f"Unknown run config keys: {sorted(unknown)}")
        thread_id = flat.get("thread_id")
        return cls(
            thread_id=str(thread_id) if thread_id is not None else None,
            checkpoint_id=flat.get("checkpoint_id"),
            recursion_limit=flat.get("recursion_limit"),
            step_timeout=flat.get("step_timeout"),
            cancel_event=flat.get("cancel_event"),
            metadata=dict(flat.get("metadata") or {}),
        )

    def with_checkpoint(self, checkpoint_id: Optional[str]) -> "RunConfig":
        return replace(self, checkpoint_id=checkpoint_id)

    def to_dict(self) -> Dict[str, Any]:
        """Resumption token form: thread id plus optional checkpoint id."""
        data: Dict[str, Any] = {"thread_id": self.thread_id}
        if self.checkpoint_id is not None:
            data["checkpoint_id"] = self.checkpoint_id
        return data


__all__ = [
    "ExecutionConfig",
    "CheckpointConfig",
    "InterruptConfig",
    "GraphConfig",
    "RunConfig",
]
