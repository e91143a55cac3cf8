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

"""Tests for checkpoint stores and serialization."""

import importlib
import json

import pytest
from pydantic import BaseModel

from graphloom.framework.checkpoint import (
    Checkpoint,
    MemoryCheckpointer,
    StateSnapshot,
    format_checkpoint_id,
    parse_checkpoint_id,
)
from graphloom.framework.checkpointer import JSONFileCheckpointer, SQLiteCheckpointer
from graphloom.framework.messages import Message, ToolCall
from graphloom.framework.serde import JsonSerializer, register_model


class StoredNote(BaseModel):
    text: str


@register_model
class RegisteredNote(BaseModel):
    text: str


@pytest.fixture(params=["memory", "sqlite", "json"])
def checkpointer(request, tmp_path):
    """Each checkpoint store implementation."""
    if request.param == "memory":
        yield MemoryCheckpointer()
    elif request.param == "sqlite":
        store = SQLiteCheckpointer(str(tmp_path / "checkpoints.db"), page_size=2)
        yield store
        store.close()
    else:
        yield JSONFileCheckpointer(str(tmp_path / "checkpoints"))


async def _fill(store, thread_id="t1", count=4):
    stored = []
    for step in range(-1, count - 1):
        stored.append(
            await store.put(
                thread_id,
                Checkpoint(
                    thread_id=thread_id,
                    values={"step": step},
                    next=("a",),
                    step=step,
                    metadata={"source": "loop"},
                ),
            )
        )
    return stored


class TestCheckpointIds:
    """Tests for checkpoint id formatting."""

    def test_zero_padded(self):
        assert format_checkpoint_id(3) == "000003"
        assert parse_checkpoint_id("000003") == 3

    def test_ids_sort_in_sequence_order(self):
        ids = [format_checkpoint_id(n) for n in (2, 10, 1)]
        assert sorted(ids) == ["000001", "000002", "000010"]

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_checkpoint_id("latest")


class TestCheckpointers:
    """Contract tests shared by every store."""

    @pytest.mark.asyncio
    async def test_put_assigns_ids_and_parents(self, checkpointer):
        stored = await _fill(checkpointer)
        assert [cp.checkpoint_id for cp in stored] == ["000000", "000001", "000002", "000003"]
        assert [cp.seq for cp in stored] == [0, 1, 2, 3]
        assert stored[0].parent_id is None
        assert stored[2].parent_id == "000001"
        assert stored[2].parent_config == {"thread_id": "t1", "checkpoint_id": "000001"}

    @pytest.mark.asyncio
    async def test_explicit_parent_is_kept(self, checkpointer):
        await _fill(checkpointer, count=3)
        fork = await checkpointer.put(
            "t1", Checkpoint(thread_id="t1", values={"fork": True}, parent_id="000000")
        )
        assert fork.checkpoint_id == "000003"
        assert fork.parent_id == "000000"

    @pytest.mark.asyncio
    async def test_get_latest_and_by_id(self, checkpointer):
        await _fill(checkpointer)
        latest = await checkpointer.get({"thread_id": "t1"})
        assert latest.checkpoint_id == "000003"
        assert latest.values == {"step": 2}
        assert latest.next == ("a",)
        first = await checkpointer.get({"thread_id": "t1", "checkpoint_id": "000000"})
        assert first.step == -1
        assert first.metadata == {"source": "loop"}

    @pytest.mark.asyncio
    async def test_get_missing(self, checkpointer):
        assert await checkpointer.get({"thread_id": "nobody"}) is None
        await _fill(checkpointer)
        assert await checkpointer.get({"thread_id": "t1", "checkpoint_id": "000099"}) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("checkpoint_id", ["1ef-uuid", "latest", "-1", ""])
    async def test_get_malformed_id_is_missing(self, checkpointer, checkpoint_id):
        await _fill(checkpointer)
        assert await checkpointer.get({"thread_id": "t1", "checkpoint_id": checkpoint_id}) is None

    @pytest.mark.asyncio
    async def test_list_newest_first(self, checkpointer):
        await _fill(checkpointer)
        history = await checkpointer.list("t1").to_list()
        assert [cp.checkpoint_id for cp in history] == ["000003", "000002", "000001", "000000"]

    @pytest.mark.asyncio
    async def test_list_limit_and_before(self, checkpointer):
        await _fill(checkpointer)
        limited = await checkpointer.list("t1", limit=3).to_list()
        assert [cp.checkpoint_id for cp in limited] == ["000003", "000002", "000001"]
        older = await checkpointer.list("t1", before="000002").to_list()
        assert [cp.checkpoint_id for cp in older] == ["000001", "000000"]
        assert await checkpointer.list("t1", before="000002", limit=1).to_list() == older[:1]

    @pytest.mark.asyncio
    async def test_list_is_restartable(self, checkpointer):
        await _fill(checkpointer)
        history = checkpointer.list("t1")
        first = [cp.checkpoint_id async for cp in history]
        second = [cp.checkpoint_id async for cp in history]
        assert first == second
        assert len(first) == 4

    @pytest.mark.asyncio
    async def test_list_unknown_thread_is_empty(self, checkpointer):
        assert await checkpointer.list("nobody").to_list() == []

    @pytest.mark.asyncio
    async def test_threads_are_isolated(self, checkpointer):
        await _fill(checkpointer, "alpha", count=2)
        await _fill(checkpointer, "beta", count=3)
        assert await checkpointer.list_threads() == ["alpha", "beta"]
        assert len(await checkpointer.list("alpha").to_list()) == 2
        beta = await checkpointer.get({"thread_id": "beta"})
        assert beta.checkpoint_id == "000002"

    @pytest.mark.asyncio
    async def test_stored_copy_is_independent(self, checkpointer):
        values = {"items": [1]}
        await checkpointer.put("t1", Checkpoint(thread_id="t1", values=values))
        values["items"].append(2)
        loaded = await checkpointer.get({"thread_id": "t1"})
        loaded.values["items"].append(3)
        again = await checkpointer.get({"thread_id": "t1"})
        assert again.values == {"items": [1]}

    @pytest.mark.asyncio
    async def test_messages_round_trip(self, checkpointer):
        message = Message(
            role="assistant",
            content="calling",
            id="m1",
            tool_calls=[ToolCall(id="call_1", name="add", args={"a": 1})],
        )
        await checkpointer.put(
            "t1", Checkpoint(thread_id="t1", values={"messages": [message], "pair": (1, 2)})
        )
        loaded = await checkpointer.get({"thread_id": "t1"})
        assert loaded.values["messages"] == [message]
        assert isinstance(loaded.values["messages"][0], Message)
        assert loaded.values["pair"] == (1, 2)


class TestSQLiteCheckpointer:
    """SQLite specifics."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path):
        path = str(tmp_path / "cp.db")
        store = SQLiteCheckpointer(path)
        await _fill(store, count=2)
        store.close()

        reopened = SQLiteCheckpointer(path)
        try:
            latest = await reopened.get({"thread_id": "t1"})
            assert latest.checkpoint_id == "000001"
        finally:
            reopened.close()

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        store = SQLiteCheckpointer(":memory:")
        try:
            await _fill(store, count=2)
            assert await store.list_threads() == ["t1"]
        finally:
            store.close()


class TestJSONFileCheckpointer:
    """JSON file layout."""

    @pytest.mark.asyncio
    async def test_thread_ids_are_quoted(self, tmp_path):
        store = JSONFileCheckpointer(str(tmp_path))
        await store.put("user/1", Checkpoint(thread_id="user/1", values={"x": 1}))
        assert (tmp_path / "user%2F1" / "000000.json").exists()
        assert await store.list_threads() == ["user/1"]

    @pytest.mark.asyncio
    async def test_latest_past_six_digit_ids(self, tmp_path):
        store = JSONFileCheckpointer(str(tmp_path))
        first = await store.put("t1", Checkpoint(thread_id="t1", values={"n": 0}))
        thread_dir = tmp_path / "t1"
        for seq in (999999, 1000000):
            data = first.to_dict()
            data.update(seq=seq, checkpoint_id=format_checkpoint_id(seq), values={"n": seq})
            (thread_dir / f"{data['checkpoint_id']}.json").write_text(json.dumps(data))

        latest = await store.get({"thread_id": "t1"})
        assert latest.checkpoint_id == "1000000"
        history = await store.list("t1", limit=2).to_list()
        assert [cp.values["n"] for cp in history] == [1000000, 999999]
        appended = await store.put("t1", Checkpoint(thread_id="t1", values={"n": 1}))
        assert appended.checkpoint_id == "1000001"


class TestSnapshotAndSerde:
    """Tests for StateSnapshot and JsonSerializer."""

    def test_snapshot_from_checkpoint(self):
        cp = Checkpoint(
            thread_id="t1",
            values={"a": [1]},
            next=("n",),
            step=2,
            parent_id="000001",
            checkpoint_id="000002",
            seq=2,
        )
        snapshot = StateSnapshot.from_checkpoint(cp)
        assert snapshot.config == {"thread_id": "t1", "checkpoint_id": "000002"}
        assert snapshot.parent_config == {"thread_id": "t1", "checkpoint_id": "000001"}
        assert snapshot.next == ("n",)
        snapshot.values["a"].append(2)
        assert cp.values == {"a": [1]}

    def test_checkpoint_dict_round_trip(self):
        cp = Checkpoint(thread_id="t1", values={"a": 1}, next=("x",), checkpoint_id="000000", seq=0)
        assert Checkpoint.from_dict(cp.to_dict()) == cp

    def test_serializer_tags(self):
        serde = JsonSerializer()
        encoded = serde.to_jsonable({"pair": (1, 2), "tags": {"b", "a"}})
        assert encoded == {"pair": {"__tuple__": [1, 2]}, "tags": {"__set__": ["a", "b"]}}
        assert serde.from_jsonable(encoded) == {"pair": (1, 2), "tags": {"a", "b"}}

    def test_serializer_rejects_non_models(self):
        serde = JsonSerializer()
        with pytest.raises(TypeError):
            serde.loads('{"__model__": "collections:OrderedDict", "data": {}}')

    def test_serializer_does_not_import_unlisted_modules(self, monkeypatch):
        imported = []
        monkeypatch.setattr(importlib, "import_module", lambda name: imported.append(name))
        with pytest.raises(TypeError, match="allowed_modules"):
            JsonSerializer().loads('{"__model__": "antigravity:Sky", "data": {}}')
        assert imported == []

    def test_serializer_allowed_modules(self):
        path = f"{__name__}:StoredNote"
        payload = json.dumps({"__model__": path, "data": {"text": "hi"}})
        assert JsonSerializer(allowed_modules=[__name__]).loads(payload) == StoredNote(text="hi")

    def test_registered_model_decodes(self):
        serde = JsonSerializer()
        encoded = serde.dumps({"note": RegisteredNote(text="kept")})
        assert serde.loads(encoded) == {"note": RegisteredNote(text="kept")}

    def test_register_model_rejects_non_models(self):
        with pytest.raises(TypeError):
            register_model(dict)
