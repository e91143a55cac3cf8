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

"""Prebuilt nodes for chat-model and tool-calling loops.

graphloom does not ship model clients. Anything implementing the
``ChatModel`` protocol can drive ``model_node``, and plain Python
functions become tools with ``Tool``/``@tool``.

Example:
    class AgentState(TypedDict):
        messages: Annotated[list, add_messages]

    graph = StateGraph(AgentState)
    graph.add_node("agent", model_node(my_model))
    graph.add_node("tools", ToolNode([search, calculator]))
    graph.add_edge(START, "agent")
    graph.add_conditional_edges("agent", tools_condition)
    graph.add_edge("tools", "agent")
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import typing
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Type,
    Union,
    runtime_checkable,
)

from pydantic import BaseModel, ValidationError, create_model

from graphloom.framework.graph import END
from graphloom.framework.messages import Message, MessageChunk, ToolCall, coerce_message

logger = logging.getLogger(__name__)


@runtime_checkable
class ChatModel(Protocol):
    """Narrow contract of a chat client.

    Takes ordered role-tagged messages and returns a reply, either whole or
    as a stream of associatively combinable MessageChunk fragments.
    """

    async def ainvoke(self, messages: Sequence[Message]) -> Message: ...

    def astream(self, messages: Sequence[Message]) -> AsyncIterator[MessageChunk]: ...


def model_node(
    model: ChatModel,
    *,
    messages_key: str = "messages",
    streaming: bool = True,
) -> Callable[..., Any]:
    """Build a node that sends the message history to ``model``.

    With ``streaming`` the node is an async generator yielding each chunk
    (visible in the ``messages`` stream mode); the chunks are folded into
    one reply message. The reply is written to ``messages_key``, which
    should use the ``add_messages`` reducer.
    """
    if streaming:

        async def call_model_streaming(state: Mapping[str, Any]) -> AsyncIterator[Dict[str, Any]]:
            history = [coerce_message(m) for m in state.get(messages_key) or []]
            async for chunk in model.astream(history):
                yield {messages_key: chunk}

        return call_model_streaming

    async def call_model(state: Mapping[str, Any]) -> Dict[str, Any]:
        history = [coerce_message(m) for m in state.get(messages_key) or []]
        reply = await model.ainvoke(history)
        return {messages_key: [reply]}

    return call_model


def _args_model(func: Callable[..., Any], name: str) -> Type[BaseModel]:
    """Pydantic model of ``func``'s keyword-addressable parameters."""
    hints = typing.get_type_hints(func)
    fields: Dict[str, Any] = {}
    for param in inspect.signature(func).parameters.values():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        annotation = hints.get(param.name, Any)
        default = ... if param.default is inspect.Parameter.empty else param.default
        fields[param.name] = (annotation, default)
    model_name = "".join(part.capitalize() for part in name.split("_")) + "Args"
    return create_model(model_name, **fields)


class Tool:
    """A function callable by a model, with arguments validated by pydantic.

    Attributes:
        name: Name the model uses to call the tool
        description: Shown to the model (defaults to the docstring)
        args_model: Pydantic model generated from the function signature
    """

    def __init__(
        self,
        func: Callable[..., Any],
        name: Optional[str] = None,
        description: Optional[str] = None,
    ):
        self.func = func
        self.name = name or func.__name__
        self.description = description or inspect.getdoc(func) or ""
        self.args_model = _args_model(func, self.name)

    def schema(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.args_model.model_json_schema(),
        }

    async def ainvoke(self, args: Mapping[str, Any]) -> Any:
        """Validate ``args`` and call the function.

        Raises:
            pydantic.ValidationError: If the arguments do not match the signature
        """
        validated = self.args_model.model_validate(dict(args))
        kwargs = {name: getattr(validated, name) for name in self.args_model.model_fields}
        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r})"


def tool(
    func: Optional[Callable[..., Any]] = None,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Any:
    """Decorator turning a function into a Tool.

    Usable bare (``@tool``) or with arguments (``@tool(name="search")``).
    """

    def wrap(f: Callable[..., Any]) -> Tool:
        return Tool(f, name=name, description=description)

    if func is not None:
        return wrap(func)
    return wrap


class ToolNode:
    """Node executing the tool calls of the last assistant message.

    Calls run concurrently and the results are written as ``tool`` messages
    in call order. Unknown tools always produce an error message. Argument
    validation errors and tool failures produce error messages when
    ``handle_tool_errors`` is true (or matches the exception type), and
    otherwise propagate and fail the tick.
    """

    def __init__(
        self,
        tools: Sequence[Union[Tool, Callable[..., Any]]],
        *,
        messages_key: str = "messages",
        handle_tool_errors: Union[bool, Tuple[Type[BaseException], ...]] = True,
    ):
        self.tools_by_name: Dict[str, Tool] = {}
        for t in tools:
            wrapped = t if isinstance(t, Tool) else Tool(t)
            self.tools_by_name[wrapped.name] = wrapped
        self.messages_key = messages_key
        self.handle_tool_errors = handle_tool_errors

    def _handles(self, error: BaseException) -> bool:
        if isinstance(self.handle_tool_errors, tuple):
            return isinstance(error, self.handle_tool_errors)
        return bool(self.handle_tool_errors)

    async def _run_call(self, call: ToolCall) -> Message:
        selected = self.tools_by_name.get(call.name)
        if selected is None:
            content = (
                f"Error: {call.name} is not a valid tool, "
                f"try one of [{', '.join(self.tools_by_name)}]."
            )
            return Message(role="tool", content=content, name=call.name, tool_call_id=call.id)

        try:
            result = await selected.ainvoke(call.args)
        except ValidationError as e:
            if not self._handles(e):
                raise
            logger.debug(f"Invalid arguments for tool {call.name}: {e}")
            content = f"Error: invalid arguments for {call.name}: {e}"
        except Exception as e:
            if not self._handles(e):
                raise
            logger.warning(f"Tool {call.name} failed: {e}")
            content = f"Error: {type(e).__name__}: {e}"
        else:
            content = result if isinstance(result, str) else json.dumps(result, default=str)
        return Message(role="tool", content=content, name=call.name, tool_call_id=call.id)

    async def __call__(self, state: Mapping[str, Any]) -> Dict[str, List[Message]]:
        messages = state.get(self.messages_key) or []
        if not messages:
            raise ValueError(f"No messages found in '{self.messages_key}'")
        last = coerce_message(messages[-1])
        if last.role != "assistant" or not last.tool_calls:
            raise ValueError("Last message is not an assistant message with tool calls")
        results = await asyncio.gather(*(self._run_call(call) for call in last.tool_calls))
        return {self.messages_key: list(results)}


def tools_condition(state: Mapping[str, Any]) -> Literal["tools", "__end__"]:
    """Route to the ``tools`` node when the last message requests tool calls."""
    messages = state.get("messages") or []
    if messages:
        last = coerce_message(messages[-1])
        if last.role == "assistant" and last.tool_calls:
            return "tools"
    return END


__all__ = [
    "ChatModel",
    "model_node",
    "Tool",
    "tool",
    "ToolNode",
    "tools_condition",
]
