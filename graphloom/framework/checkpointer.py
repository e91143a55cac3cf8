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

"""Persistent checkpointer implementations.

Implementations:
    - SQLiteCheckpointer: File-based SQLite storage (default for the CLI)
    - JSONFileCheckpointer: One JSON file per checkpoint, for debugging

Both encode values with ``JsonSerializer`` so pydantic models (messages)
come back as models.

Example:
    from graphloom.framework.checkpointer import SQLiteCheckpointer
    from graphloom.framework.graph import StateGraph

    checkpointer = SQLiteCheckpointer("~/.graphloom/checkpoints.db")
    graph = StateGraph(MyState)
    # ... add nodes and edges ...
    app = graph.compile(checkpointer=checkpointer)

    result = await app.invoke({"question": "hi"}, {"thread_id": "my-thread"})

    # Resume after an interrupt
    result = await app.invoke(None, {"thread_id": "my-thread"})
"""

from __future__ import annotations

import asyncio
import builtins
import json
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote, unquote

from graphloom.framework.checkpoint import (
    BaseCheckpointer,
    Checkpoint,
    CheckpointHistory,
    checkpoint_seq,
    format_checkpoint_id,
    parse_checkpoint_id,
)
from graphloom.framework.config import RunConfig
from graphloom.framework.serde import JsonSerializer

logger = logging.getLogger(__name__)


class SQLiteCheckpointer(BaseCheckpointer):
    """SQLite-based checkpointer for graph state persistence.

    Stores checkpoints in a SQLite database file (WAL mode) for durability
    and queryability. Blocking calls run in the default executor.

    Attributes:
        db_path: Path to SQLite database file
        table_name: Name of the checkpoints table
        page_size: Rows fetched per query while listing history

    Example:
        checkpointer = SQLiteCheckpointer("~/.graphloom/checkpoints.db")
        stored = await checkpointer.put("thread-123", Checkpoint(thread_id="thread-123"))
        latest = await checkpointer.get({"thread_id": "thread-123"})
    """

    def __init__(
        self,
        db_path: str = "~/.graphloom/checkpoints.db",
        table_name: str = "checkpoints",
        page_size: int = 50,
        serde: Optional[JsonSerializer] = None,
    ):
        """Initialize SQLite checkpointer.

        Args:
            db_path: Path to database file (will be created if not exists),
                or ``:memory:``
            table_name: Name for checkpoints table
            page_size: Rows per page when listing history
            serde: Value encoder (defaults to JsonSerializer())
        """
        self.db_path = db_path if db_path == ":memory:" else Path(os.path.expanduser(db_path))
        self.table_name = table_name
        self.page_size = page_size
        self.serde = serde or JsonSerializer()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection (caller holds the lock)."""
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema(self._conn)
        return self._conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize database schema."""
        if isinstance(self.db_path, Path):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                thread_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                checkpoint_id TEXT NOT NULL,
                step INTEGER NOT NULL,
                parent_id TEXT,
                next TEXT NOT NULL,
                state TEXT NOT NULL,
                metadata TEXT,
                created_at REAL NOT NULL,
                PRIMARY KEY (thread_id, seq)
            )
        """)
        conn.commit()
        logger.debug(f"Initialized checkpoint schema: {self.db_path}")

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    def _row_to_checkpoint(self, row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            thread_id=row["thread_id"],
            checkpoint_id=row["checkpoint_id"],
            seq=row["seq"],
            step=row["step"],
            parent_id=row["parent_id"],
            next=tuple(json.loads(row["next"])),
            values=self.serde.loads(row["state"]),
            metadata=self.serde.loads(row["metadata"]) if row["metadata"] else {},
            created_at=row["created_at"],
        )

    async def put(self, thread_id: str, checkpoint: Checkpoint) -> Checkpoint:
        return await self._run(self._put_sync, thread_id, checkpoint)

    def _put_sync(self, thread_id: str, checkpoint: Checkpoint) -> Checkpoint:
        """Synchronous put; sequence assignment and insert share one transaction."""
        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                f"SELECT * FROM {self.table_name} WHERE thread_id = ? ORDER BY seq DESC LIMIT 1",
                (thread_id,),
            ).fetchone()
            latest = self._row_to_checkpoint(row) if row is not None else None
            stored = self._stamp(thread_id, checkpoint, latest)
            with conn:
                conn.execute(
                    f"""
                    INSERT INTO {self.table_name}
                    (thread_id, seq, checkpoint_id, step, parent_id, next, state, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        stored.thread_id,
                        stored.seq,
                        stored.checkpoint_id,
                        stored.step,
                        stored.parent_id,
                        json.dumps(list(stored.next)),
                        self.serde.dumps(stored.values),
                        self.serde.dumps(stored.metadata),
                        stored.created_at,
                    ),
                )
        logger.debug(
            f"Saved checkpoint: {stored.checkpoint_id} "
            f"(thread: {stored.thread_id}, step: {stored.step})"
        )
        return stored

    async def get(self, config: Any) -> Optional[Checkpoint]:
        run = RunConfig.coerce(config)
        if run.thread_id is None:
            return None
        return await self._run(self._get_sync, run.thread_id, run.checkpoint_id)

    def _get_sync(self, thread_id: str, checkpoint_id: Optional[str]) -> Optional[Checkpoint]:
        seq = checkpoint_seq(checkpoint_id) if checkpoint_id is not None else None
        if checkpoint_id is not None and seq is None:
            return None
        with self._lock:
            conn = self._get_connection()
            if checkpoint_id is None:
                row = conn.execute(
                    f"SELECT * FROM {self.table_name} WHERE thread_id = ? ORDER BY seq DESC LIMIT 1",
                    (thread_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    f"SELECT * FROM {self.table_name} WHERE thread_id = ? AND seq = ?",
                    (thread_id, seq),
                ).fetchone()
        return self._row_to_checkpoint(row) if row is not None else None

    def list(
        self,
        thread_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> CheckpointHistory:
        async def scan() -> AsyncIterator[Checkpoint]:
            upper = parse_checkpoint_id(before) if before is not None else None
            emitted = 0
            while limit is None or emitted < limit:
                page = self.page_size if limit is None else min(self.page_size, limit - emitted)
                rows = await self._run(self._page_sync, thread_id, upper, page)
                if not rows:
                    return
                for checkpoint in rows:
                    emitted += 1
                    yield checkpoint
                upper = rows[-1].seq

        return CheckpointHistory(scan)

    def _page_sync(self, thread_id: str, upper: Optional[int], page: int) -> builtins.list[Checkpoint]:
        with self._lock:
            conn = self._get_connection()
            if upper is None:
                rows = conn.execute(
                    f"SELECT * FROM {self.table_name} WHERE thread_id = ? ORDER BY seq DESC LIMIT ?",
                    (thread_id, page),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT * FROM {self.table_name}
                    WHERE thread_id = ? AND seq < ?
                    ORDER BY seq DESC
                    LIMIT ?
                """,
                    (thread_id, upper, page),
                ).fetchall()
        return [self._row_to_checkpoint(row) for row in rows]

    async def list_threads(self) -> builtins.list[str]:
        return await self._run(self._list_threads_sync)

    def _list_threads_sync(self) -> builtins.list[str]:
        with self._lock:
            conn = self._get_connection()
            rows = conn.execute(
                f"SELECT DISTINCT thread_id FROM {self.table_name} ORDER BY thread_id"
            ).fetchall()
        return [row[0] for row in rows]

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


class JSONFileCheckpointer(BaseCheckpointer):
    """JSON file-based checkpointer for simple storage.

    Stores each checkpoint as ``<base_dir>/<thread>/<checkpoint_id>.json``.
    Suitable for development and debugging.

    Attributes:
        base_dir: Directory to store checkpoint files
    """

    def __init__(
        self, base_dir: str = "~/.graphloom/checkpoints", serde: Optional[JsonSerializer] = None
    ):
        """Initialize JSON file checkpointer.

        Args:
            base_dir: Directory for checkpoint files
            serde: Value encoder (defaults to JsonSerializer())
        """
        self.base_dir = Path(os.path.expanduser(base_dir))
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.serde = serde or JsonSerializer()

    def _thread_dir(self, thread_id: str) -> Path:
        return self.base_dir / quote(thread_id, safe="")

    def _read(self, path: Path) -> Checkpoint:
        with open(path) as f:
            data: Dict[str, Any] = json.load(f)
        data["values"] = self.serde.from_jsonable(data.get("values") or {})
        data["metadata"] = self.serde.from_jsonable(data.get("metadata") or {})
        return Checkpoint.from_dict(data)

    def _files(self, thread_id: str) -> builtins.list[Path]:
        thread_dir = self._thread_dir(thread_id)
        if not thread_dir.is_dir():
            return []
        return sorted(thread_dir.glob("*.json"), key=lambda p: parse_checkpoint_id(p.stem))

    async def put(self, thread_id: str, checkpoint: Checkpoint) -> Checkpoint:
        """Save checkpoint to a new JSON file."""
        files = self._files(thread_id)
        latest = self._read(files[-1]) if files else None
        stored = self._stamp(thread_id, checkpoint, latest)

        thread_dir = self._thread_dir(thread_id)
        thread_dir.mkdir(parents=True, exist_ok=True)
        filepath = thread_dir / f"{stored.checkpoint_id}.json"
        data = stored.to_dict()
        data["values"] = self.serde.to_jsonable(stored.values)
        data["metadata"] = self.serde.to_jsonable(stored.metadata)
        with open(filepath, "x") as f:
            json.dump(data, f, indent=2, default=str)

        logger.debug(f"Saved checkpoint to: {filepath}")
        return stored

    async def get(self, config: Any) -> Optional[Checkpoint]:
        """Load latest (or named) checkpoint for a thread."""
        run = RunConfig.coerce(config)
        if run.thread_id is None:
            return None
        if run.checkpoint_id is None:
            files = self._files(run.thread_id)
            return self._read(files[-1]) if files else None
        seq = checkpoint_seq(run.checkpoint_id)
        if seq is None:
            return None
        name = format_checkpoint_id(seq)
        path = self._thread_dir(run.thread_id) / f"{name}.json"
        return self._read(path) if path.exists() else None

    def list(
        self,
        thread_id: str,
        *,
        limit: Optional[int] = None,
        before: Optional[str] = None,
    ) -> CheckpointHistory:
        async def scan() -> AsyncIterator[Checkpoint]:
            files = builtins.list(reversed(self._files(thread_id)))
            if before is not None:
                upper = parse_checkpoint_id(before)
                files = [p for p in files if parse_checkpoint_id(p.stem) < upper]
            for index, path in enumerate(files):
                if limit is not None and index >= limit:
                    return
                yield self._read(path)

        return CheckpointHistory(scan)

    async def list_threads(self) -> builtins.list[str]:
        return sorted(
            unquote(p.name) for p in self.base_dir.iterdir() if p.is_dir() and any(p.glob("*.json"))
        )


__all__ = ["SQLiteCheckpointer", "JSONFileCheckpointer"]
