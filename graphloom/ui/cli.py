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

"""Command-line interface for inspecting graphloom checkpoint stores."""

import asyncio
import importlib
import json
import logging
import sys
from datetime import datetime
from typing import Any, List, Optional, TextIO

import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from graphloom import __version__
from graphloom.config.settings import load_settings
from graphloom.core.errors import CheckpointNotFoundError
from graphloom.framework.checkpoint import Checkpoint
from graphloom.framework.checkpointer import SQLiteCheckpointer
from graphloom.framework.graph import StateGraph
from graphloom.framework.serde import JsonSerializer

app = typer.Typer(
    name="graphloom",
    help="Inspect graphloom checkpoint threads and graphs",
    add_completion=False,
)

console = Console()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _configure_logging(level: str, stream: Optional[TextIO] = None) -> None:
    """Configure the root logger; unknown level names fall back to WARNING."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format=LOG_FORMAT,
        stream=stream or sys.stderr,
        force=True,
    )


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"graphloom v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite checkpoint database (defaults to GRAPHLOOM_CHECKPOINT_DB)",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Log level (DEBUG, INFO, WARNING, ERROR)",
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """graphloom - inspect checkpointed graph runs.

    Examples:
        graphloom threads
        graphloom history conv-1 --limit 5
        graphloom show conv-1 --checkpoint 000003
        graphloom mermaid myapp.agent:graph
    """
    settings = load_settings()
    _configure_logging(log_level or settings.log_level)
    ctx.obj = {"db": db or str(settings.checkpoint_db_path)}


def _open_store(ctx: typer.Context) -> SQLiteCheckpointer:
    return SQLiteCheckpointer(ctx.obj["db"])


def _format_time(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def threads(ctx: typer.Context) -> None:
    """List threads that have checkpoints."""
    store = _open_store(ctx)
    try:
        thread_ids = asyncio.run(store.list_threads())
    finally:
        store.close()

    if not thread_ids:
        console.print("[dim]No threads found[/]")
        return
    table = Table(title="Threads")
    table.add_column("Thread", style="cyan")
    for thread_id in thread_ids:
        table.add_row(thread_id)
    console.print(table)


@app.command()
def history(
    ctx: typer.Context,
    thread_id: str = typer.Argument(..., help="Thread to list"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show at most N checkpoints"),
) -> None:
    """Show the checkpoint history of a thread, newest first."""

    async def collect() -> List[Checkpoint]:
        return await store.list(thread_id, limit=limit).to_list()

    store = _open_store(ctx)
    try:
        checkpoints = asyncio.run(collect())
    finally:
        store.close()

    if not checkpoints:
        console.print(f"[bold red]Error:[/] No checkpoints for thread '{thread_id}'")
        raise typer.Exit(1)

    table = Table(title=f"History of {thread_id}")
    table.add_column("Checkpoint", style="cyan")
    table.add_column("Parent")
    table.add_column("Step", justify="right")
    table.add_column("Source")
    table.add_column("Writes")
    table.add_column("Next", style="green")
    table.add_column("Created")
    for cp in checkpoints:
        table.add_row(
            cp.checkpoint_id,
            cp.parent_id or "-",
            str(cp.step),
            str(cp.metadata.get("source", "")),
            ", ".join(cp.metadata.get("writes") or {}),
            ", ".join(cp.next) or "-",
            _format_time(cp.created_at),
        )
    console.print(table)


@app.command()
def show(
    ctx: typer.Context,
    thread_id: str = typer.Argument(..., help="Thread to show"),
    checkpoint: Optional[str] = typer.Option(
        None, "--checkpoint", "-c", help="Checkpoint id (defaults to the latest)"
    ),
) -> None:
    """Print the state values of a checkpoint as JSON."""
    store = _open_store(ctx)
    try:
        found = asyncio.run(store.get({"thread_id": thread_id, "checkpoint_id": checkpoint}))
    finally:
        store.close()

    if found is None:
        console.print(f"[bold red]Error:[/] {CheckpointNotFoundError(thread_id, checkpoint).message}")
        raise typer.Exit(1)

    console.print(
        f"[bold]{found.thread_id}[/] @ [cyan]{found.checkpoint_id}[/] "
        f"(step {found.step}, next: {', '.join(found.next) or '-'})"
    )
    payload = json.dumps(JsonSerializer().to_jsonable(found.values), indent=2, default=str)
    console.print(Syntax(payload, "json"))


def _load_target(target: str) -> Any:
    module_name, _, attr = target.partition(":")
    if not attr:
        raise typer.BadParameter("Expected MODULE:ATTRIBUTE", param_hint="TARGET")
    obj: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


@app.command()
def mermaid(
    target: str = typer.Argument(..., help="Graph to render, as MODULE:ATTRIBUTE"),
) -> None:
    """Render a StateGraph or compiled graph as a Mermaid flowchart."""
    graph = _load_target(target)
    if isinstance(graph, StateGraph):
        graph = graph.compile()
    if not hasattr(graph, "to_mermaid"):
        console.print(f"[bold red]Error:[/] {target} is not a graph")
        raise typer.Exit(1)
    # Plain print keeps the output pipeable.
    typer.echo(graph.to_mermaid())


if __name__ == "__main__":
    app()
