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

"""State channels and reducers.

A state schema maps every channel name to a Channel that knows how to fold
the deltas written in one tick into the channel's next value. Channels
are declared on a TypedDict (or any annotated class) with ``Annotated``:

    class AgentState(TypedDict):
        messages: Annotated[list, add_messages]
        aggregate: Annotated[list, append]
        plan: Annotated[Optional[str], overwrite_if_present]
        which: str                      # last-write-wins

Merge contract:
    ``Channel.update(current, deltas)`` runs once per tick per channel, and
    only for channels that at least one node wrote. ``deltas`` holds every
    value written to the channel in that tick, ordered by node registration.
    Writing an empty list is a write; leaving the key out is not.
"""

from __future__ import annotations

import copy
import logging
import typing
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import reduce
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

from graphloom.core.errors import InvalidUpdateError
from graphloom.framework.messages import Message, RemoveMessage, coerce_message, new_message_id

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


# =============================================================================
# Reducers
# =============================================================================


@dataclass(frozen=True)
class Reset:
    """Explicit reset marker for ``accumulate``: replace the accumulator with ``values``."""

    values: Tuple[Any, ...] = field(default_factory=tuple)


RESET = Reset()


def _as_items(delta: Any) -> List[Any]:
    if isinstance(delta, (list, tuple)):
        return list(delta)
    return [delta]


def append(current: Any, delta: Any) -> List[Any]:
    """Concatenate ``delta`` onto ``current``; a non-list delta is one item."""
    return list(current or []) + _as_items(delta)


def overwrite_if_present(current: Any, delta: Any) -> Any:
    """Take ``delta`` unless it is None."""
    return current if delta is None else delta


def accumulate(current: Any, delta: Any) -> List[Any]:
    """Append, or reset when the delta is ``RESET`` / ``Reset(values)``.

    An empty list appends nothing.
    """
    if isinstance(delta, Reset):
        return list(delta.values)
    return append(current, delta)


def append_or_reset(current: Any, delta: Any) -> List[Any]:
    """Append, except that an empty list clears the accumulator.

    Prefer ``accumulate`` with ``RESET`` in new graphs.
    """
    if isinstance(delta, list) and not delta:
        return []
    return append(current, delta)


def add_messages(current: Any, delta: Any) -> List[Any]:
    """Merge message lists by id.

    New messages without an id get one. A message whose id already exists
    replaces it in place; ``RemoveMessage(id)`` deletes it.
    """
    existing = [coerce_message(m) for m in (current or [])]
    # A tuple is a single ("role", "content") message here, not a sequence.
    incoming = [coerce_message(m) for m in (delta if isinstance(delta, list) else [delta])]

    merged: List[Message] = list(existing)
    index: Dict[str, int] = {m.id: i for i, m in enumerate(merged) if m.id is not None}
    removed: Set[str] = set()

    for message in incoming:
        if isinstance(message, RemoveMessage):
            if message.id not in index:
                raise InvalidUpdateError(
                    f"Attempting to delete a message with an id that doesn't exist ('{message.id}')"
                )
            removed.add(message.id)
            continue
        if message.id is None:
            message = message.model_copy(update={"id": new_message_id()})
        if message.id in index:
            merged[index[message.id]] = message
            removed.discard(message.id)
        else:
            index[message.id] = len(merged)
            merged.append(message)

    return [m for m in merged if m.id not in removed]


# =============================================================================
# Channels
# =============================================================================


class Channel(ABC):
    """Storage slot of one state key with a merge rule."""

    def __init__(self, key: str = "", default_factory: Optional[Callable[[], Any]] = None):
        self.key = key
        self.default_factory = default_factory

    @property
    def has_default(self) -> bool:
        return self.default_factory is not None

    def default(self) -> Any:
        return self.default_factory() if self.default_factory else None

    @abstractmethod
    def update(self, current: Any, deltas: Sequence[Any]) -> Any:
        """Fold one tick's deltas (registration order) into ``current``."""

    def keyed(self, key: str) -> "Channel":
        """Shallow copy bound to ``key``; the original is left untouched."""
        channel = copy.copy(self)
        channel.key = key
        return channel

    def describe(self) -> str:
        return type(self).__name__

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r})"


class LastValue(Channel):
    """Last-write-wins channel (the default)."""

    def update(self, current: Any, deltas: Sequence[Any]) -> Any:
        if not deltas:
            return current
        return deltas[-1]


class BinaryOperatorChannel(Channel):
    """Channel folding deltas with a ``reducer(current, delta)``."""

    def __init__(
        self,
        reducer: Reducer,
        key: str = "",
        default_factory: Optional[Callable[[], Any]] = None,
    ):
        super().__init__(key, default_factory)
        self.reducer = reducer

    def update(self, current: Any, deltas: Sequence[Any]) -> Any:
        return reduce(self.reducer, deltas, current)

    def describe(self) -> str:
        return f"{type(self).__name__}({getattr(self.reducer, '__name__', repr(self.reducer))})"


_CONTAINER_DEFAULTS: Dict[Any, Callable[[], Any]] = {
    list: list,
    dict: dict,
    set: set,
}


def _default_for(annotation: Any) -> Optional[Callable[[], Any]]:
    origin = typing.get_origin(annotation) or annotation
    if origin is Union:
        return None
    return _CONTAINER_DEFAULTS.get(origin)


def channel_from_annotation(key: str, annotation: Any) -> Channel:
    """Build the channel for one annotated field."""
    if typing.get_origin(annotation) is typing.Annotated:
        base, *metadata = typing.get_args(annotation)
        for item in reversed(metadata):
            if isinstance(item, Channel):
                return item.keyed(key)
            if callable(item):
                return BinaryOperatorChannel(item, key=key, default_factory=_default_for(base))
    return LastValue(key=key)


# =============================================================================
# State schema
# =============================================================================


class StateSchema:
    """Channel table of a graph's state.

    A schema without channels is dynamic: every key a node writes becomes a
    LastValue channel on first write.
    """

    def __init__(self, channels: Optional[Mapping[str, Channel]] = None, dynamic: bool = False):
        self.channels: Dict[str, Channel] = {
            key: channel.keyed(key) for key, channel in (channels or {}).items()
        }
        self.dynamic = dynamic or not self.channels

    @classmethod
    def from_type(cls, state_type: type) -> "StateSchema":
        """Read channels from the annotations of a TypedDict or annotated class."""
        if state_type is dict:
            return cls(dynamic=True)
        try:
            hints = typing.get_type_hints(state_type, include_extras=True)
        except TypeError as e:
            raise TypeError(f"Cannot read state annotations from {state_type!r}: {e}") from e
        channels = {key: channel_from_annotation(key, ann) for key, ann in hints.items()}
        return cls(channels)

    @classmethod
    def coerce(cls, schema: Any) -> "StateSchema":
        if schema is None:
            return cls(dynamic=True)
        if isinstance(schema, StateSchema):
            return schema
        if isinstance(schema, Mapping):
            channels: Dict[str, Channel] = {}
            for key, value in schema.items():
                if isinstance(value, Channel):
                    channels[key] = value
                elif callable(value):
                    channels[key] = BinaryOperatorChannel(value, key=key)
                else:
                    raise TypeError(f"Channel '{key}' must be a Channel or reducer, got {value!r}")
            return cls(channels)
        if isinstance(schema, type):
            return cls.from_type(schema)
        raise TypeError(f"Unsupported state schema: {schema!r}")

    def copy(self) -> "StateSchema":
        """Independent schema with copies of every channel."""
        return StateSchema(self.channels, dynamic=self.dynamic)

    @property
    def keys(self) -> List[str]:
        return list(self.channels)

    def initial_values(self) -> Dict[str, Any]:
        """Defaults of every channel that declares one."""
        return {key: ch.default() for key, ch in self.channels.items() if ch.has_default}

    def _channel(self, key: str, node: str) -> Channel:
        channel = self.channels.get(key)
        if channel is not None:
            return channel
        if self.dynamic:
            channel = LastValue(key=key)
            self.channels[key] = channel
            return channel
        raise InvalidUpdateError(
            f"Node '{node}' wrote unknown channel '{key}'",
            details={"node": node, "channel": key, "known": self.keys},
        )

    def apply_writes(
        self, values: Mapping[str, Any], writes: Iterable[Tuple[str, Any]]
    ) -> Tuple[Dict[str, Any], List[str]]:
        """Merge ``(node, delta)`` writes into a copy of ``values``.

        ``writes`` must already be in registration order. Returns the new
        values and the channels that were updated. ``values`` is left
        untouched, so a failing merge leaves no partial state behind.
        """
        grouped: Dict[str, List[Any]] = {}
        for node, delta in writes:
            if delta is None:
                continue
            if not isinstance(delta, Mapping):
                raise InvalidUpdateError(
                    f"Node '{node}' returned {type(delta).__name__}; expected a mapping of channel deltas",
                    details={"node": node},
                )
            for key, value in delta.items():
                self._channel(key, node)
                grouped.setdefault(key, []).append(value)

        new_values = dict(values)
        for key, deltas in grouped.items():
            channel = self.channels[key]
            current = new_values[key] if key in new_values else channel.default()
            try:
                new_values[key] = channel.update(current, deltas)
            except InvalidUpdateError:
                raise
            except Exception as e:
                raise InvalidUpdateError(
                    f"Reducer for channel '{key}' failed: {type(e).__name__}: {e}",
                    details={"channel": key},
                    cause=e,
                ) from e
        if grouped:
            logger.debug(f"Merged writes into channels: {list(grouped)}")
        return new_values, list(grouped)

    def to_dict(self) -> Dict[str, str]:
        return {key: ch.describe() for key, ch in self.channels.items()}


__all__ = [
    "Reducer",
    "Reset",
    "RESET",
    "append",
    "overwrite_if_present",
    "accumulate",
    "append_or_reset",
    "add_messages",
    "Channel",
    "LastValue",
    "BinaryOperatorChannel",
    "channel_from_annotation",
    "StateSchema",
]
