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

"""Role-tagged chat messages exchanged between nodes, models and tools.

These are the only message shapes the engine knows about. Chat clients
and tools live outside graphloom and are adapted to these models by the
node functions that call them (see ``graphloom.framework.prebuilt``).
"""

from __future__ import annotations

import json
import uuid
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from graphloom.framework.streaming import Chunk

Role = Literal["system", "user", "assistant", "tool"]

_ROLE_ALIASES = {"human": "user", "ai": "assistant"}


def new_message_id() -> str:
    return uuid.uuid4().hex[:12]


class ToolCall(BaseModel):
    """A model's request to run a tool."""

    id: str = Field(default_factory=lambda: f"call_{new_message_id()}")
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """A single role-tagged chat message.

    Attributes:
        role: Author role (``human``/``ai`` are accepted as aliases)
        content: Text content
        id: Stable identifier; ``add_messages`` replaces messages with a matching id
        name: Optional author or tool name
        tool_calls: Tool invocations requested by an assistant message
        tool_call_id: For tool messages, the call being answered
    """

    role: Role
    content: str = ""
    id: Optional[str] = None
    name: Optional[str] = None
    tool_calls: List[ToolCall] = Field(default_factory=list)
    tool_call_id: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def _alias_role(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _ROLE_ALIASES.get(value, value)
        return value


class RemoveMessage(BaseModel):
    """Delta item that deletes the message with ``id`` from a message channel."""

    id: str


class ToolCallChunk(BaseModel):
    """Fragment of a tool call streamed by a model; ``args`` is partial JSON text."""

    index: int = 0
    id: Optional[str] = None
    name: Optional[str] = None
    args: str = ""


class MessageChunk(BaseModel, Chunk):
    """Incremental fragment of a model message.

    ``combine`` concatenates content and merges tool call fragments by
    index, so folding any split of a stream gives the same message.
    """

    role: Role = "assistant"
    content: str = ""
    id: Optional[str] = None
    tool_call_chunks: List[ToolCallChunk] = Field(default_factory=list)

    def combine(self, other: Chunk) -> "MessageChunk":
        if not isinstance(other, MessageChunk):
            raise TypeError(f"Cannot combine MessageChunk with {type(other).__name__}")
        merged: Dict[int, ToolCallChunk] = {
            tc.index: tc.model_copy() for tc in self.tool_call_chunks
        }
        for tc in other.tool_call_chunks:
            current = merged.get(tc.index)
            if current is None:
                merged[tc.index] = tc.model_copy()
            else:
                merged[tc.index] = ToolCallChunk(
                    index=tc.index,
                    id=current.id or tc.id,
                    name=(current.name or "") + (tc.name or "") or None,
                    args=current.args + tc.args,
                )
        return MessageChunk(
            role=self.role,
            content=self.content + other.content,
            id=self.id or other.id,
            tool_call_chunks=[merged[i] for i in sorted(merged)],
        )

    def to_message(self) -> Message:
        tool_calls = []
        for tc in self.tool_call_chunks:
            args = json.loads(tc.args) if tc.args else {}
            kwargs: Dict[str, Any] = {"name": tc.name or "", "args": args}
            if tc.id:
                kwargs["id"] = tc.id
            tool_calls.append(ToolCall(**kwargs))
        return Message(role=self.role, content=self.content, id=self.id, tool_calls=tool_calls)

    def to_value(self) -> Message:
        return self.to_message()


def coerce_message(value: Any) -> Any:
    """Convert dicts, ``(role, content)`` pairs, strings and chunks into messages.

    ``RemoveMessage`` instances pass through untouched.
    """
    if isinstance(value, (Message, RemoveMessage)):
        return value
    if isinstance(value, MessageChunk):
        return value.to_message()
    if isinstance(value, dict):
        return Message.model_validate(value)
    if isinstance(value, (tuple, list)) and len(value) == 2:
        role, content = value
        return Message(role=role, content=content)
    if isinstance(value, str):
        return Message(role="user", content=value)
    raise TypeError(f"Cannot convert {type(value).__name__} to a message")


__all__ = [
    "Role",
    "ToolCall",
    "Message",
    "RemoveMessage",
    "ToolCallChunk",
    "MessageChunk",
    "coerce_message",
    "new_message_id",
]
