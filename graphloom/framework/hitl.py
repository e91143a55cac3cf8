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

"""Human-in-the-Loop (HITL) interrupts for graph runs.

A compiled graph can pause at tick boundaries, before or after designated
nodes, and hand the caller a resumption token (thread id + checkpoint id).
Nodes can also pause the run themselves by raising ``NodeInterrupt``.

Example:
    app = graph.compile(checkpointer=MemoryCheckpointer(), interrupt_before=["act"])
    config = {"thread_id": "review-1"}

    result = await app.invoke({"task": "deploy"}, config)
    assert result.status is RunStatus.INTERRUPTED and result.next == ("act",)

    # Optionally correct the state while paused
    await app.update_state(config, {"approved": True})

    # Resume with a null input: the recorded frontier runs as if never paused
    result = await app.invoke(None, config)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from graphloom.core.errors import UnknownNodeError

logger = logging.getLogger(__name__)


class InterruptWhen(str, Enum):
    """Where a run paused.

    Attributes:
        BEFORE: Before running a node in ``interrupt_before``
        AFTER: After a tick that ran a node in ``interrupt_after``
        NODE: A node raised NodeInterrupt
    """

    BEFORE = "before"
    AFTER = "after"
    NODE = "node"


@dataclass(frozen=True)
class Interrupt:
    """Record of a pause, attached to the run result.

    Attributes:
        when: Which boundary triggered the pause
        nodes: Nodes that triggered it
        step: Superstep of the checkpoint the run paused at
        value: Payload of a NodeInterrupt (None otherwise)
    """

    when: InterruptWhen
    nodes: Tuple[str, ...]
    step: int
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "when": self.when.value,
            "nodes": list(self.nodes),
            "step": self.step,
            "value": self.value,
        }


class NodeInterrupt(Exception):
    """Raised inside a node to pause the run before its tick commits.

    The tick is discarded like a failure, but the run ends as INTERRUPTED.
    Resuming re-runs the whole frontier of that tick, so the node should
    check the state (typically updated through ``update_state``) to decide
    whether to raise again.
    """

    def __init__(self, value: Any = None):
        super().__init__(value)
        self.value = value


@dataclass
class InterruptController:
    """Decides whether a run pauses at a tick boundary.

    Attributes:
        interrupt_before: Nodes to pause before
        interrupt_after: Nodes to pause after
    """

    interrupt_before: Tuple[str, ...] = ()
    interrupt_after: Tuple[str, ...] = ()
    _before: frozenset = field(init=False, repr=False)
    _after: frozenset = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.interrupt_before = tuple(self.interrupt_before)
        self.interrupt_after = tuple(self.interrupt_after)
        self._before = frozenset(self.interrupt_before)
        self._after = frozenset(self.interrupt_after)

    @property
    def enabled(self) -> bool:
        return bool(self._before or self._after)

    def validate(self, known_nodes: Iterable[str]) -> None:
        """Fail fast on interrupt points that are not graph nodes."""
        known = set(known_nodes)
        for kind, names in (("interrupt_before", self.interrupt_before), ("interrupt_after", self.interrupt_after)):
            for name in names:
                if name not in known:
                    raise UnknownNodeError(name, context=kind)

    def before(self, frontier: Sequence[str], delivered: Iterable[str] = ()) -> List[str]:
        """Frontier nodes that require a pause before the tick runs.

        Nodes in ``delivered`` already paused the caller at this frontier
        (recorded on the checkpoint being resumed) and do not pause again.
        """
        skip = set(delivered)
        hits = [node for node in frontier if node in self._before and node not in skip]
        if hits:
            logger.info(f"Interrupting before {hits}")
        return hits

    def after(self, executed: Sequence[str], next_frontier: Sequence[str]) -> List[str]:
        """Executed nodes that require a pause now that the tick committed.

        A tick that leaves nothing to run completes the graph instead.
        """
        if not next_frontier:
            return []
        hits = [node for node in executed if node in self._after]
        if hits:
            logger.info(f"Interrupting after {hits}")
        return hits


__all__ = [
    "InterruptWhen",
    "Interrupt",
    "NodeInterrupt",
    "InterruptController",
]
