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

"""Checkpoint types and the checkpointer contract.

A thread is an append-only chain of checkpoints. Every checkpoint records
the state values after a tick, the frontier scheduled to run next, the
write provenance, and its parent. Checkpoint ids are the zero-padded
per-thread sequence number, so ids sort in creation order and
``(thread_id, checkpoint_id)`` addresses a checkpoint forever.

Branching never rewrites history: a checkpoint whose parent is not the
thread's previous latest starts a new branch that shares the prefix up
to that parent.

Implementations:
    - MemoryCheckpointer: in-process dict (this module)
    - SQLiteCheckpointer, JSONFileCheckpointer: see ``checkpointer.py``
"""

from __future__ import annotations

import builtins
import copy
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Tuple

from graphloom.framework.config import RunConfig

logger = logging.getLogger(__name__)

CHECKPOINT_ID_WIDTH = 6


def format_checkpoint_id(seq: int) -> str:
    return str(seq).zfill(CHECKPOINT_ID_WIDTH)


def parse_checkpoint_id(checkpoint_id: str) -> int:
    try:
        return int(checkpoint_id)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Malformed checkpoint id: {checkpoint_id!r}") from e


def checkpoint_seq(checkpoint_id: str) -> Optional[int]:
    """Sequence number named by ``checkpoint_id``, or None when it names none."""
    try:
        seq = parse_checkpoint_id(checkpoint_id)
    except ValueError:
        return None
    return seq if seq >= 0 else None


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot committed after a tick.

    Attributes:
        thread_id: Thread the checkpoint belongs to
        checkpoint_id: Zero-padded sequence number, assigned by the checkpointer
        seq: Per-thread sequence number (0-based)
        step: Superstep that produced it (-1 for the input step)
        values: Channel values after the tick
        next: Frontier to run next, in registration order (empty = done)
        metadata: ``source`` (input/loop/update/interrupt), ``step``, ``writes``,
            ``interrupt_before`` when a pause was delivered here, and caller metadata
        parent_id: Checkpoint this one was derived from
        created_at: Unix timestamp
    """

    thread_id: str
    values: Dict[str, Any] = field(default_factory=dict)
    next: Tuple[str, ...] = ()
    step: int = -1
    metadata: Dict[str, Any] = field(default_factory=dict)
    parent_id: Optional[str] = None
    checkpoint_id: str = ""
    seq: int = -1
    created_at: float = field(default_factory=time.time)

    @property
    def config(self) -> Dict[str, Any]:
        """Resumption token of this checkpoint."""
        return {"thread_id": self.thread_id, "checkpoint_id": self.checkpoint_id}

    @property
    def parent_config(self) -> Optional[Dict[str, Any]]:
        if self.parent_id is None:
            return None
        return {"thread_id": self.thread_id, "checkpoint_id": self.parent_id}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "checkpoint_id": self.checkpoint_id,
            "seq": self.seq,
            "step": self.step,
            "values": self.values,
            "next": list(self.next),
            "metadata": self.metadata,
            "parent_id": self.parent_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Checkpoint":
        return cls(
            thread_id=data["thread_id"],
            checkpoint_id=data["checkpoint_id"],
            seq=data["seq"],
            step=data["step"],
            values=dict(data.get("values") or {}),
            next=tuple(data.get("next") or ()),
            metadata=dict(data.get("metadata") or {}),
            parent_id=data.get("parent_id"),
            created_at=data.get("created_at", 0.0),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Caller-facing view of a checkpoint returned by ``get_state``.

    Attributes:
        values: Channel values
        next: Nodes that will run when the thread is resumed
        config: Resumption token (thread id + checkpoint id)
        metadata: Checkpoint metadata
        step: Superstep of the checkpoint
        created_at: Unix timestamp (None for an empty thread)
        parent_config: Token of the parent checkpoint
    """

    values: Dict[str, Any]
    next: Tuple[str, ...]
    config: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)
    step: int = -1
    created_at: Optional[float] = None
    parent_config: Optional[Dict[str, Any]] = None

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "StateSnapshot":
        return cls(
            values=copy.deepcopy(checkpoint.values),
            next=tuple(checkpoint.next),
            config=checkpoint.config,
            metadata=copy.deepcopy(checkpoint.metadata),
            step=checkpoint.step,
            created_at=checkpoint.created_at,
            parent_config=checkpoint.parent_config,
        )


class CheckpointHistory:
    """Lazy, finite, restartable sequence of checkpoints (newest first).

    Each ``async for`` starts a fresh scan of the store.
    """

    def __init__(self, factory: Callable[[], AsyncIterator[Checkpoint]]):
        self._factory = factory

    def __aiter__(self) -> AsyncIterator[Checkpoint]:
        return self._factory()

    async def to_list(self) -> List[Checkpoint]:
        return [checkpoint async for checkpoint in self]


class BaseCheckpointer(ABC):
    """Contract of every checkpoint store.

    ``put`` is the only write. Stores never mutate or delete a committed
    checkpoint. Writers to one thread id must be serialized by the caller.
    """

    @abstractmethod
    async def put(self, thread_id: str, checkpoint: Checkpoint) -> Checkpoint:
        """Append ``checkpoint`` to the thread and return the stored copy.

        The store assigns ``seq`` and ``checkpoint_id``. ``parent_id``
        defaults to the thread's previous latest checkpoint.
        """

    @abstractmethod
    async def get(self, config: Any) -> Optional[Checkpoint]:
        """Latest checkpoint of ``config``'s thread, or the one it names."""

    @abstractmethod
    def list(
        self,
        thread_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> CheckpointHistory:
        """Checkpoints of a thread, newest first.

        Args:
            thread_id: Thread to scan
            limit: Stop after this many checkpoints
            before: Only checkpoints older than this checkpoint id
        """

    @abstractmethod
    async def list_threads(self) -> builtins.list[str]:
        """Ids of every thread with at least one checkpoint."""

    @staticmethod
    def _stamp(
        thread_id: str, checkpoint: Checkpoint, latest: Optional[Checkpoint]
    ) -> Checkpoint:
        """Assign sequence, id and default parent; copy mutable payloads."""
        seq = 0 if latest is None else latest.seq + 1
        parent_id = checkpoint.parent_id
        if parent_id is None and latest is not None:
            parent_id = latest.checkpoint_id
        return replace(
            checkpoint,
            thread_id=thread_id,
            seq=seq,
            checkpoint_id=format_checkpoint_id(seq),
            parent_id=parent_id,
            values=copy.deepcopy(checkpoint.values),
            next=tuple(checkpoint.next),
            metadata=copy.deepcopy(checkpoint.metadata),
        )


class MemoryCheckpointer(BaseCheckpointer):
    """In-memory checkpoint storage.

    Suitable for development and testing.
    """

    def __init__(self) -> None:
        self._checkpoints: Dict[str, builtins.list[Checkpoint]] = {}

    async def put(self, thread_id: str, checkpoint: Checkpoint) -> Checkpoint:
        chain = self._checkpoints.setdefault(thread_id, [])
        stored = self._stamp(thread_id, checkpoint, chain[-1] if chain else None)
        chain.append(stored)
        logger.debug(f"Saved checkpoint {stored.checkpoint_id} (thread: {thread_id}, step: {stored.step})")
        return copy.deepcopy(stored)

    async def get(self, config: Any) -> Optional[Checkpoint]:
        run = RunConfig.coerce(config)
        chain = self._checkpoints.get(run.thread_id or "", [])
        if not chain:
            return None
        if run.checkpoint_id is None:
            return copy.deepcopy(chain[-1])
        seq = checkpoint_seq(run.checkpoint_id)
        if seq is not None and seq < len(chain):
            return copy.deepcopy(chain[seq])
        return None

    def list(
        self,
        thread_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> CheckpointHistory:
        async def scan() -> AsyncIterator[Checkpoint]:
            chain = builtins.list(self._checkpoints.get(thread_id, []))
            upper = len(chain) if before is None else min(len(chain), parse_checkpoint_id(before))
            emitted = 0
            for seq in range(upper - 1, -1, -1):
                if limit is not None and emitted >= limit:
                    return
                emitted += 1
                yield copy.deepcopy(chain[seq])

        return CheckpointHistory(scan)

    async def list_threads(self) -> builtins.list[str]:
        return sorted(tid for tid, chain in self._checkpoints.items() if chain)


__all__ = [
    "Checkpoint",
    "StateSnapshot",
    "CheckpointHistory",
    "BaseCheckpointer",
    "MemoryCheckpointer",
    "format_checkpoint_id",
    "parse_checkpoint_id",
    "checkpoint_seq",
]
