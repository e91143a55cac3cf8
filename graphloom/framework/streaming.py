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

"""Streaming primitives: chunk monoid and granular run events.

Incremental model output is modelled as chunks with an associative
``combine``. The scheduler never inspects chunk fields; it only folds
what a streaming node yields, per channel, and converts the folded chunk
to a channel value with ``to_value()``.

Example:
    async def talk(state):
        yield {"reply": TextChunk("Hel")}
        yield {"reply": TextChunk("lo")}
    # delta written by the node: {"reply": "Hello"}
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from functools import reduce
from typing import Any, Dict, Iterable, List, Optional, Tuple


class Chunk:
    """Base class for associatively concatenable partial outputs.

    Subclasses implement ``combine``; ``a + b`` is an alias. ``to_value``
    converts the folded chunk into the value written to the channel.
    """

    def combine(self, other: "Chunk") -> "Chunk":
        raise NotImplementedError

    def __add__(self, other: "Chunk") -> "Chunk":
        return self.combine(other)

    def to_value(self) -> Any:
        return self


@dataclass(frozen=True)
class TextChunk(Chunk):
    """Plain text fragment."""

    text: str = ""

    def combine(self, other: Chunk) -> "TextChunk":
        if not isinstance(other, TextChunk):
            raise TypeError(f"Cannot combine TextChunk with {type(other).__name__}")
        return TextChunk(self.text + other.text)

    def to_value(self) -> str:
        return self.text


def fold_chunks(chunks: Iterable[Chunk]) -> Optional[Chunk]:
    """Fold chunks left to right with ``combine`` (None when empty)."""
    items = list(chunks)
    if not items:
        return None
    return reduce(lambda acc, chunk: acc.combine(chunk), items)


class ChunkAccumulator:
    """Per-channel fold of the chunks yielded by one streaming node."""

    def __init__(self) -> None:
        self._folded: Dict[str, Chunk] = {}
        self._plain: Dict[str, Any] = {}

    def add(self, channel: str, item: Any) -> None:
        if isinstance(item, Chunk):
            current = self._folded.get(channel)
            self._folded[channel] = item if current is None else current.combine(item)
        else:
            # Non-chunk yields behave like a regular delta: last one wins.
            self._plain[channel] = item

    def to_delta(self) -> Optional[Dict[str, Any]]:
        if not self._folded and not self._plain:
            return None
        delta = {channel: chunk.to_value() for channel, chunk in self._folded.items()}
        delta.update(self._plain)
        return delta


class StreamMode(str, Enum):
    """What ``CompiledGraph.stream`` yields.

    Attributes:
        VALUES: Full state after the input step and after every tick
        UPDATES: ``{node: delta}`` for every tick
        MESSAGES: ``(node, channel, chunk)`` for every chunk a streaming node yields
        DEBUG: GraphEvent records (checkpoints, tasks, results, interrupts)
    """

    VALUES = "values"
    UPDATES = "updates"
    MESSAGES = "messages"
    DEBUG = "debug"


class EventType(str, Enum):
    CHECKPOINT = "checkpoint"
    TASK = "task"
    TASK_RESULT = "task_result"
    INTERRUPT = "interrupt"


@dataclass
class GraphEvent:
    """Granular execution record emitted in debug stream mode.

    Attributes:
        type: Event kind
        step: Superstep number (-1 for the input step)
        node: Node the event refers to (None for checkpoint events)
        payload: Event data (delta, error, checkpoint config, ...)
        timestamp: When the event was created
    """

    type: EventType
    step: int
    node: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "step": self.step,
            "node": self.node,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


def normalize_stream_mode(mode: Any) -> Tuple[List[StreamMode], bool]:
    """Return (modes, multi) where multi means payloads are (mode, data) pairs."""
    if isinstance(mode, (list, tuple)):
        return [StreamMode(m) for m in mode], True
    return [StreamMode(mode)], False


__all__ = [
    "Chunk",
    "TextChunk",
    "fold_chunks",
    "ChunkAccumulator",
    "StreamMode",
    "EventType",
    "GraphEvent",
    "normalize_stream_mode",
]
