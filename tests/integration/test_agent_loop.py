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

"""Tool-calling agent loop built from the prebuilt nodes."""

import json
from typing import Annotated, List, Sequence, TypedDict

import pytest

from graphloom.framework.channels import add_messages
from graphloom.framework.graph import START, StateGraph
from graphloom.framework.messages import Message, MessageChunk, ToolCall, ToolCallChunk
from graphloom.framework.prebuilt import ChatModel, ToolNode, model_node, tool, tools_condition
from graphloom.framework.pregel import RunStatus

pytestmark = pytest.mark.integration


class AgentState(TypedDict):
    messages: Annotated[list, add_messages]


@tool
def add(a: int, b: int) -> int:
    """Add two integers."""
    return a + b


class ScriptedChatModel:
    """Chat model replaying canned replies, streamed in two halves."""

    def __init__(self, replies: List[Message]):
        self.replies = list(replies)
        self.seen: List[List[Message]] = []

    async def ainvoke(self, messages: Sequence[Message]) -> Message:
        self.seen.append(list(messages))
        return self.replies.pop(0)

    async def astream(self, messages: Sequence[Message]):
        reply = await self.ainvoke(messages)
        half = len(reply.content) // 2
        yield MessageChunk(content=reply.content[:half], id=reply.id)
        yield MessageChunk(content=reply.content[half:])
        for index, call in enumerate(reply.tool_calls):
            args = json.dumps(call.args)
            yield MessageChunk(
                tool_call_chunks=[ToolCallChunk(index=index, id=call.id, name=call.name, args=args[:3])]
            )
            yield MessageChunk(tool_call_chunks=[ToolCallChunk(index=index, args=args[3:])])


def _replies() -> List[Message]:
    return [
        Message(
            role="assistant",
            content="Let me add.",
            tool_calls=[ToolCall(id="call_1", name="add", args={"a": 2, "b": 3})],
        ),
        Message(role="assistant", content="The answer is 5"),
    ]


def agent_graph(model, streaming=True) -> StateGraph:
    graph = StateGraph(AgentState)
    graph.add_node("agent", model_node(model, streaming=streaming))
    graph.add_node("tools", ToolNode([add]))
    graph.add_edge(START, "agent")
    graph.add_conditional_edges("agent", tools_condition)
    graph.add_edge("tools", "agent")
    return graph


class TestAgentLoop:
    """Model -> tools -> model until the model stops calling tools."""

    def test_scripted_model_is_a_chat_model(self):
        assert isinstance(ScriptedChatModel([]), ChatModel)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("streaming", [True, False])
    async def test_runs_to_final_answer(self, memory_checkpointer, streaming):
        model = ScriptedChatModel(_replies())
        app = agent_graph(model, streaming).compile(memory_checkpointer)
        result = await app.invoke({"messages": [("user", "what is 2 + 3?")]}, {"thread_id": "agent"})

        assert result.status is RunStatus.COMPLETED
        assert result.node_history == ["agent", "tools", "agent"]
        messages = result.state["messages"]
        assert [m.role for m in messages] == ["user", "assistant", "tool", "assistant"]
        assert messages[1].tool_calls[0].args == {"a": 2, "b": 3}
        assert messages[2].content == "5"
        assert messages[2].tool_call_id == "call_1"
        assert messages[-1].content == "The answer is 5"
        assert all(m.id for m in messages)
        assert len(model.seen[1]) == 3

    @pytest.mark.asyncio
    async def test_messages_stream(self):
        model = ScriptedChatModel(_replies())
        app = agent_graph(model).compile()
        chunks = [
            chunk
            async for node, channel, chunk in app.stream(
                {"messages": [("user", "what is 2 + 3?")]}, stream_mode="messages"
            )
            if node == "agent" and channel == "messages"
        ]
        text = "".join(chunk.content for chunk in chunks)
        assert text == "Let me add.The answer is 5"
        assert all(isinstance(chunk, MessageChunk) for chunk in chunks)
