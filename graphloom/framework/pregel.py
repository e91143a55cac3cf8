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

"""Superstep scheduler for compiled graphs.

A run is a sequence of ticks (supersteps):

    1. Every node of the frontier runs concurrently on its own copy of the
       state as of the start of the tick.
    2. If any node fails, the other nodes are cancelled and nothing is
       merged or checkpointed: the tick either commits fully or not at all.
    3. Otherwise each written channel is updated once, folding the deltas
       in node registration order.
    4. Routers run on the merged state to compute the next frontier.
    5. A checkpoint with the new values and frontier is committed.

The run ends when the frontier is empty (COMPLETED), when an interrupt
fires (INTERRUPTED), when the caller cancels between ticks (CANCELLED),
or with an exception (NodeExecutionError, RecursionLimitExceeded).
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
import warnings
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from graphloom.core.errors import (
    CheckpointNotFoundError,
    ConcurrentWriteHazard,
    InvalidUpdateError,
    NodeExecutionError,
    RecursionLimitExceeded,
    UnknownNodeError,
)
from graphloom.framework.channels import StateSchema
from graphloom.framework.checkpoint import BaseCheckpointer, Checkpoint, StateSnapshot
from graphloom.framework.config import GraphConfig, RunConfig
from graphloom.framework.graph import START, GraphTopology, Node
from graphloom.framework.hitl import Interrupt, InterruptController, InterruptWhen, NodeInterrupt
from graphloom.framework.streaming import (
    Chunk,
    ChunkAccumulator,
    EventType,
    GraphEvent,
    StreamMode,
    normalize_stream_mode,
)

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[tuple[str, str, Chunk]], Awaitable[None]]

# Checkpoint metadata key: before-interrupts already delivered at its frontier.
PAUSED_BEFORE = "interrupt_before"


class RunStatus(str, Enum):
    """Lifecycle of a single invocation.

    Attributes:
        PENDING: Created, input not applied yet
        RUNNING: Executing ticks
        INTERRUPTED: Paused at an interrupt; resume with a null input
        COMPLETED: Frontier became empty
        FAILED: A tick aborted with an exception
        CANCELLED: Caller cancelled between ticks
    """

    PENDING = "pending"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class GraphExecutionResult:
    """Result from graph execution.

    Attributes:
        state: Final state values
        status: How the run ended
        next: Frontier left to run (non-empty when interrupted or cancelled)
        config: Resumption token of the last committed checkpoint
            (None without a checkpointer)
        iterations: Number of ticks executed
        duration: Total execution time
        node_history: Executed nodes, tick by tick in registration order
        interrupt: What paused the run, when it was interrupted
    """

    state: dict[str, Any]
    status: RunStatus
    next: tuple[str, ...] = ()
    config: Optional[dict[str, Any]] = None
    iterations: int = 0
    duration: float = 0.0
    node_history: list[str] = field(default_factory=list)
    interrupt: Optional[Interrupt] = None

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.INTERRUPTED)


class _TickFailure(Exception):
    """A node or router of the current tick raised."""

    def __init__(self, node: str, cause: BaseException):
        super().__init__(node, cause)
        self.node = node
        self.cause = cause


# =============================================================================
# Execution Helpers
# =============================================================================


class IterationController:
    """Recursion guard: bounds the number of ticks of one invocation."""

    def __init__(self, recursion_limit: int):
        self.recursion_limit = recursion_limit
        self.ticks = 0

    def check(self) -> None:
        """Called before a tick; raises once ``recursion_limit`` ticks have run."""
        if self.ticks >= self.recursion_limit:
            raise RecursionLimitExceeded(self.recursion_limit)

    def record_tick(self) -> None:
        self.ticks += 1


class NodeExecutor:
    """Runs the frontier of one tick concurrently.

    Each node receives a deep copy of the tick-start values, so sibling
    nodes never observe each other's mutations.
    """

    def __init__(self, nodes: Mapping[str, Node], step_timeout: Optional[float]):
        self.nodes = nodes
        self.step_timeout = step_timeout

    async def _run_node(
        self,
        node: Node,
        state: dict[str, Any],
        config: RunConfig,
        on_chunk: Optional[ChunkCallback],
    ) -> Any:
        result = node.call(state, config)
        if inspect.isasyncgen(result):
            accumulator = ChunkAccumulator()
            async for item in result:
                if item is None:
                    continue
                if not isinstance(item, Mapping):
                    raise InvalidUpdateError(
                        f"Streaming node '{node.name}' yielded {type(item).__name__}; "
                        "expected a mapping of channel chunks"
                    )
                for channel, value in item.items():
                    if on_chunk is not None and isinstance(value, Chunk):
                        await on_chunk((node.name, channel, value))
                    accumulator.add(channel, value)
            return accumulator.to_delta()
        if inspect.isawaitable(result):
            return await result
        return result

    async def execute(
        self,
        frontier: Sequence[str],
        values: dict[str, Any],
        config: RunConfig,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> list[tuple[str, Any]]:
        """Run every frontier node; return ``(node, delta)`` in frontier order.

        Raises:
            _TickFailure: First failing node in registration order; the
                remaining nodes are cancelled first
        """
        tasks = {
            name: asyncio.ensure_future(
                self._run_node(self.nodes[name], copy.deepcopy(values), config, on_chunk)
            )
            for name in frontier
        }
        try:
            done, pending = await asyncio.wait(
                tasks.values(),
                timeout=self.step_timeout,
                return_when=asyncio.FIRST_EXCEPTION,
            )
            failed = [
                name
                for name in frontier
                if tasks[name] in done and not tasks[name].cancelled() and tasks[name].exception()
            ]
            if failed:
                name = failed[0]
                raise _TickFailure(name, tasks[name].exception())
            if pending:
                name = next(n for n in frontier if tasks[n] in pending)
                raise _TickFailure(
                    name, asyncio.TimeoutError(f"Tick exceeded step_timeout of {self.step_timeout}s")
                )
            return [(name, tasks[name].result()) for name in frontier]
        finally:
            unfinished = [t for t in tasks.values() if not t.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)


class GraphCheckpointManager:
    """Loads and commits checkpoints; a no-op store when no checkpointer is set."""

    def __init__(self, checkpointer: Optional[BaseCheckpointer]):
        self.checkpointer = checkpointer

    async def load(self, config: RunConfig) -> Optional[Checkpoint]:
        if self.checkpointer is None or config.thread_id is None:
            return None
        checkpoint = await self.checkpointer.get(config)
        if checkpoint is None and config.checkpoint_id is not None:
            raise CheckpointNotFoundError(config.thread_id, config.checkpoint_id)
        return checkpoint

    async def commit(self, checkpoint: Checkpoint) -> Checkpoint:
        if self.checkpointer is None:
            return checkpoint
        return await self.checkpointer.put(checkpoint.thread_id, checkpoint)

    def config_of(self, checkpoint: Optional[Checkpoint]) -> Optional[dict[str, Any]]:
        if self.checkpointer is None or checkpoint is None:
            return None
        return checkpoint.config


@dataclass
class _Run:
    """Mutable bookkeeping of one invocation."""

    config: RunConfig
    status: RunStatus = RunStatus.PENDING
    values: dict[str, Any] = field(default_factory=dict)
    next: tuple[str, ...] = ()
    step: int = -1
    checkpoint: Optional[Checkpoint] = None
    iterations: int = 0
    node_history: list[str] = field(default_factory=list)
    interrupt: Optional[Interrupt] = None
    started: float = field(default_factory=time.time)


# =============================================================================
# Compiled Graph
# =============================================================================


class CompiledGraph:
    """Executable, immutable form of a StateGraph.

    Created by ``StateGraph.compile()``; do not instantiate directly.
    """

    def __init__(
        self,
        nodes: dict[str, Node],
        topology: GraphTopology,
        schema: StateSchema,
        config: GraphConfig,
        name: str = "graph",
    ):
        self._nodes = nodes
        self.topology = topology
        self.schema = schema
        self.config = config
        self.interrupts = InterruptController(
            config.interrupt.interrupt_before, config.interrupt.interrupt_after
        )
        self.name = name
        self._checkpoints = GraphCheckpointManager(config.checkpoint.checkpointer)
        self._active_threads: Counter[str] = Counter()

    @property
    def checkpointer(self) -> Optional[BaseCheckpointer]:
        return self.config.checkpoint.checkpointer

    # -------------------------------------------------------------------------
    # Invocation surface
    # -------------------------------------------------------------------------

    async def invoke(
        self, input: Optional[Mapping[str, Any]], config: Any = None
    ) -> GraphExecutionResult:
        """Run to completion, interrupt or cancellation and return the final state.

        Args:
            input: Delta applied as the write of START, or None to resume
                the thread from its latest (or the configured) checkpoint
            config: Run config; ``{"thread_id": ..., "checkpoint_id": ...}``

        Raises:
            NodeExecutionError: A node, router or merge failed
            RecursionLimitExceeded: The frontier was not empty after
                ``recursion_limit`` ticks
            CheckpointNotFoundError: Resume against a missing thread/checkpoint
        """
        run = _Run(config=RunConfig.coerce(config))
        async for _ in self._run_loop(run, input, frozenset()):
            pass
        return self._result(run)

    async def stream(
        self,
        input: Optional[Mapping[str, Any]],
        config: Any = None,
        *,
        stream_mode: Union[str, StreamMode, Sequence[Union[str, StreamMode]]] = StreamMode.VALUES,
    ) -> AsyncIterator[Any]:
        """Run the graph, yielding progress as it happens.

        Modes:
            values: full state after the input step and after every tick
            updates: ``{node: delta}`` for every tick
            messages: ``(node, channel, chunk)`` for every streamed chunk
            debug: GraphEvent records

        A list of modes yields ``(mode, payload)`` pairs. Closing the
        generator between ticks stops the run with the last checkpoint intact.
        """
        modes, multi = normalize_stream_mode(stream_mode)
        run = _Run(config=RunConfig.coerce(config))
        async for mode, payload in self._run_loop(run, input, frozenset(modes)):
            if mode not in modes:
                continue
            yield (mode.value, payload) if multi else payload

    async def get_state(self, config: Any) -> StateSnapshot:
        """Snapshot of the thread's latest (or the configured) checkpoint."""
        run_config = self._require_thread(config)
        checkpoint = await self._checkpoints.load(run_config)
        if checkpoint is None:
            return StateSnapshot(values={}, next=(), config=run_config.to_dict())
        return StateSnapshot.from_checkpoint(checkpoint)

    async def get_state_history(
        self,
        config: Any,
        *,
        limit: Optional[int] = None,
        before: Any = None,
    ) -> AsyncIterator[StateSnapshot]:
        """Snapshots of the thread, newest first, across all branches.

        Args:
            config: Thread to read
            limit: Maximum snapshots to yield
            before: Checkpoint id (or config) to start strictly before
        """
        run_config = self._require_thread(config)
        if before is not None and not isinstance(before, str):
            before = RunConfig.coerce(before).checkpoint_id
        assert self.checkpointer is not None
        async for checkpoint in self.checkpointer.list(
            run_config.thread_id, limit=limit, before=before
        ):
            yield StateSnapshot.from_checkpoint(checkpoint)

    async def update_state(
        self,
        config: Any,
        values: Optional[Mapping[str, Any]],
        as_node: Optional[str] = None,
    ) -> dict[str, Any]:
        """Write ``values`` as if ``as_node`` had produced them.

        The delta runs through the channel reducers on top of the target
        checkpoint (latest, or the one named in ``config``) and is committed
        as a new child of it. The next frontier is computed from
        ``as_node``'s edges. Targeting a historical checkpoint forks a new
        branch; the original chain is never modified.

        Args:
            config: Thread (and optional checkpoint) to update
            values: Delta to apply
            as_node: Node the write is attributed to. Defaults to the only
                node that wrote the target checkpoint, or START when the
                target is an input checkpoint.

        Returns:
            Config of the new checkpoint

        Raises:
            CheckpointNotFoundError: Thread or checkpoint does not exist
            UnknownNodeError: ``as_node`` is not a node of this graph
            InvalidUpdateError: ``as_node`` is ambiguous or the delta is rejected
        """
        run_config = self._require_thread(config)
        target = await self._checkpoints.load(run_config)
        if target is None:
            raise CheckpointNotFoundError(run_config.thread_id, run_config.checkpoint_id)

        if as_node is None:
            as_node = self._infer_writer(await self._writer_checkpoint(target, run_config))
        elif as_node != START and as_node not in self._nodes:
            raise UnknownNodeError(as_node, context="update_state as_node")

        new_values, _ = self.schema.apply_writes(target.values, [(as_node, values)])
        try:
            next_frontier = await self._next_frontier([as_node], new_values, run_config)
        except _TickFailure as failure:
            raise NodeExecutionError(
                failure.node, failure.cause, checkpoint_config=target.config
            ) from failure.cause

        step = target.step + 1
        metadata = {
            **run_config.metadata,
            "source": "update",
            "step": step,
            "writes": {as_node: copy.deepcopy(values)},
        }
        # Pauses the caller already saw stay delivered for the same nodes.
        delivered = [n for n in target.metadata.get(PAUSED_BEFORE, ()) if n in next_frontier]
        if delivered:
            metadata[PAUSED_BEFORE] = delivered
        stored = await self._checkpoints.commit(
            Checkpoint(
                thread_id=target.thread_id,
                values=new_values,
                next=next_frontier,
                step=step,
                parent_id=target.checkpoint_id,
                metadata=metadata,
            )
        )
        logger.info(
            f"Updated thread {target.thread_id} as '{as_node}': "
            f"{target.checkpoint_id} -> {stored.checkpoint_id}"
        )
        return stored.config

    def get_graph_schema(self) -> dict[str, Any]:
        """Get graph structure as dictionary."""
        schema = self.topology.to_dict()
        schema.update(
            {
                "name": self.name,
                "channels": self.schema.to_dict(),
                "interrupt_before": list(self.interrupts.interrupt_before),
                "interrupt_after": list(self.interrupts.interrupt_after),
            }
        )
        return schema

    def to_mermaid(self) -> str:
        return self.topology.to_mermaid()

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    def _require_thread(self, config: Any) -> RunConfig:
        run_config = RunConfig.coerce(config)
        if self.checkpointer is None:
            raise ValueError("No checkpointer set; compile the graph with a checkpointer")
        if run_config.thread_id is None:
            raise ValueError("Config must include a thread_id")
        return run_config

    async def _writer_checkpoint(self, target: Checkpoint, config: RunConfig) -> Checkpoint:
        """Follow pause-only checkpoints back to the one holding the writes."""
        while target.metadata.get("source") == "interrupt" and target.parent_id is not None:
            parent = await self._checkpoints.load(config.with_checkpoint(target.parent_id))
            if parent is None:
                break
            target = parent
        return target

    def _infer_writer(self, target: Checkpoint) -> str:
        if target.metadata.get("source") == "input":
            return START
        writers = list(target.metadata.get("writes") or {})
        if len(writers) == 1:
            return writers[0]
        raise InvalidUpdateError(
            f"Ambiguous update: checkpoint {target.checkpoint_id} was written by "
            f"{writers or 'no node'}; pass as_node explicitly"
        )

    async def _next_frontier(
        self, executed: Sequence[str], values: dict[str, Any], config: RunConfig
    ) -> tuple[str, ...]:
        """Successors of the executed nodes, routers evaluated on ``values``."""
        targets: list[str] = []
        for name in executed:
            targets.extend(self.topology.static_successors(name))
            for branch in self.topology.branches.get(name, ()):
                try:
                    resolved = await branch.resolve(copy.deepcopy(values), config)
                    # Rejects targets that are not nodes of this graph.
                    self.topology.order(resolved)
                    targets.extend(resolved)
                except Exception as e:
                    raise _TickFailure(name, e) from e
        return self.topology.order(targets)

    def _result(self, run: _Run) -> GraphExecutionResult:
        return GraphExecutionResult(
            state=run.values,
            status=run.status,
            next=run.next,
            config=self._checkpoints.config_of(run.checkpoint),
            iterations=run.iterations,
            duration=time.time() - run.started,
            node_history=run.node_history,
            interrupt=run.interrupt,
        )

    def _checkpoint_event(self, run: _Run) -> GraphEvent:
        assert run.checkpoint is not None
        return GraphEvent(
            type=EventType.CHECKPOINT,
            step=run.step,
            payload={
                "config": self._checkpoints.config_of(run.checkpoint),
                "values": copy.deepcopy(run.values),
                "next": list(run.next),
                "metadata": copy.deepcopy(run.checkpoint.metadata),
            },
        )

    async def _commit(
        self,
        run: _Run,
        source: str,
        writes: dict[str, Any],
        parent: Optional[Checkpoint],
        paused_before: Sequence[str] = (),
    ) -> None:
        metadata = {
            **run.config.metadata,
            "source": source,
            "step": run.step,
            "writes": copy.deepcopy(writes),
        }
        if paused_before:
            metadata[PAUSED_BEFORE] = list(paused_before)
        run.checkpoint = await self._checkpoints.commit(
            Checkpoint(
                thread_id=run.config.thread_id or "",
                values=run.values,
                next=run.next,
                step=run.step,
                parent_id=parent.checkpoint_id if parent is not None else None,
                metadata=metadata,
            )
        )

    def _fail(self, run: _Run, failure: _TickFailure) -> NodeExecutionError:
        run.status = RunStatus.FAILED
        logger.error(f"Graph '{self.name}' failed at step {run.step} in node '{failure.node}': {failure.cause}")
        return NodeExecutionError(
            failure.node,
            failure.cause,
            checkpoint_config=self._checkpoints.config_of(run.checkpoint),
        )

    async def _run_loop(
        self,
        run: _Run,
        input: Optional[Mapping[str, Any]],
        modes: frozenset,
    ) -> AsyncIterator[tuple[StreamMode, Any]]:
        """Drive one invocation, yielding ``(mode, payload)`` for the requested modes."""
        config = run.config
        if self.checkpointer is not None and config.thread_id is None:
            raise ValueError("A graph with a checkpointer needs config['thread_id']")

        thread_id = config.thread_id or ""
        if self.checkpointer is not None:
            if self._active_threads[thread_id]:
                warnings.warn(
                    f"Thread '{thread_id}' already has a run in progress; "
                    "concurrent writers to one thread must be serialized by the caller",
                    ConcurrentWriteHazard,
                    stacklevel=3,
                )
            self._active_threads[thread_id] += 1

        try:
            async for item in self._execute(run, input, modes):
                yield item
        finally:
            if self.checkpointer is not None:
                self._active_threads[thread_id] -= 1
                if self._active_threads[thread_id] <= 0:
                    del self._active_threads[thread_id]

    async def _execute(
        self,
        run: _Run,
        input: Optional[Mapping[str, Any]],
        modes: frozenset,
    ) -> AsyncIterator[tuple[StreamMode, Any]]:
        config = run.config
        limit = (
            config.recursion_limit
            if config.recursion_limit is not None
            else self.config.execution.recursion_limit
        )
        step_timeout = (
            config.step_timeout if config.step_timeout is not None else self.config.execution.step_timeout
        )
        iteration = IterationController(limit)
        executor = NodeExecutor(self._nodes, step_timeout)
        debug = StreamMode.DEBUG in modes

        saved = await self._checkpoints.load(config)
        # Before-interrupts owed at run.next; set whenever run.next changes.
        pending: list[str] = []

        # Input phase
        if input is None:
            if self.checkpointer is None:
                raise ValueError("Resuming with a null input requires a checkpointer")
            if saved is None:
                raise CheckpointNotFoundError(config.thread_id, config.checkpoint_id)
            run.values = copy.deepcopy(saved.values)
            run.next = tuple(saved.next)
            run.step = saved.step
            run.checkpoint = saved
            logger.info(f"Resuming thread {config.thread_id} at step {saved.step} with {list(saved.next)}")
            pending = self._pending_before(run, saved.metadata.get(PAUSED_BEFORE, ()))
            if pending:
                # Not yet recorded: mark the pause so the next resume runs the frontier.
                await self._commit(run, "interrupt", {}, saved, paused_before=pending)
                if debug:
                    yield StreamMode.DEBUG, self._checkpoint_event(run)
        else:
            run.status = RunStatus.RUNNING
            base = copy.deepcopy(saved.values) if saved is not None else self.schema.initial_values()
            if saved is not None and saved.next:
                logger.debug(f"New input on thread {config.thread_id} discards pending {list(saved.next)}")
            run.values, _ = self.schema.apply_writes(base, [(START, input)])
            run.step = saved.step + 1 if saved is not None else -1
            try:
                run.next = await self._next_frontier([START], run.values, config)
            except _TickFailure as failure:
                raise self._fail(run, failure) from failure.cause
            pending = self._pending_before(run)
            await self._commit(run, "input", {START: input}, saved, paused_before=pending)
            if debug:
                yield StreamMode.DEBUG, self._checkpoint_event(run)
            if StreamMode.VALUES in modes:
                yield StreamMode.VALUES, copy.deepcopy(run.values)

        run.status = RunStatus.RUNNING

        # Tick loop
        while True:
            if not run.next:
                run.status = RunStatus.COMPLETED
                logger.info(
                    f"Graph '{self.name}' completed after {run.iterations} ticks "
                    f"({time.time() - run.started:.3f}s)"
                )
                return

            # A pause recorded on the committed checkpoint wins over cancellation.
            if pending:
                run.status = RunStatus.INTERRUPTED
                run.interrupt = Interrupt(InterruptWhen.BEFORE, tuple(pending), run.step)
                if debug:
                    yield StreamMode.DEBUG, GraphEvent(
                        EventType.INTERRUPT, run.step, payload=run.interrupt.to_dict()
                    )
                return

            if self._cancelled(config):
                run.status = RunStatus.CANCELLED
                logger.info(f"Graph '{self.name}' cancelled before step {run.step + 1}")
                return

            iteration.check()

            frontier = run.next
            tick_step = run.step + 1
            logger.debug(f"Step {tick_step}: running {list(frontier)}")
            if debug:
                for name in frontier:
                    yield StreamMode.DEBUG, GraphEvent(EventType.TASK, tick_step, node=name)

            try:
                writes: list[tuple[str, Any]] = []
                async for item in self._run_tick(executor, frontier, run, modes, writes):
                    yield item
                merged, _ = self._merge(run, writes)
                next_frontier = await self._next_frontier(frontier, merged, config)
            except _TickFailure as failure:
                if isinstance(failure.cause, NodeInterrupt):
                    run.status = RunStatus.INTERRUPTED
                    run.interrupt = Interrupt(
                        InterruptWhen.NODE, (failure.node,), run.step, failure.cause.value
                    )
                    logger.info(f"Node '{failure.node}' interrupted the run: {failure.cause.value!r}")
                    if debug:
                        yield StreamMode.DEBUG, GraphEvent(
                            EventType.INTERRUPT, run.step, node=failure.node, payload=run.interrupt.to_dict()
                        )
                    return
                raise self._fail(run, failure) from failure.cause

            parent = run.checkpoint
            run.values = merged
            run.next = next_frontier
            run.step = tick_step
            iteration.record_tick()
            run.iterations = iteration.ticks
            run.node_history.extend(frontier)
            paused_after = self.interrupts.after(frontier, run.next)
            pending = [] if paused_after else self._pending_before(run)
            await self._commit(
                run, "loop", {name: delta for name, delta in writes}, parent, paused_before=pending
            )

            if debug:
                for name, delta in writes:
                    yield StreamMode.DEBUG, GraphEvent(
                        EventType.TASK_RESULT, run.step, node=name, payload={"delta": copy.deepcopy(delta)}
                    )
                yield StreamMode.DEBUG, self._checkpoint_event(run)
            if StreamMode.UPDATES in modes:
                yield StreamMode.UPDATES, {name: copy.deepcopy(delta) for name, delta in writes}
            if StreamMode.VALUES in modes:
                yield StreamMode.VALUES, copy.deepcopy(run.values)

            if paused_after:
                run.status = RunStatus.INTERRUPTED
                run.interrupt = Interrupt(InterruptWhen.AFTER, tuple(paused_after), run.step)
                if debug:
                    yield StreamMode.DEBUG, GraphEvent(
                        EventType.INTERRUPT, run.step, payload=run.interrupt.to_dict()
                    )
                return

    @staticmethod
    def _cancelled(config: RunConfig) -> bool:
        return config.cancel_event is not None and config.cancel_event.is_set()

    def _pending_before(self, run: _Run, delivered: Sequence[str] = ()) -> list[str]:
        """Before-interrupts the run will stop at for ``run.next``.

        Empty when the caller already cancelled: the pause is then taken on
        the resume instead.
        """
        if self._cancelled(run.config):
            return []
        return self.interrupts.before(run.next, delivered)

    def _merge(
        self, run: _Run, writes: list[tuple[str, Any]]
    ) -> tuple[dict[str, Any], list[str]]:
        try:
            return self.schema.apply_writes(run.values, writes)
        except InvalidUpdateError as e:
            node = e.details.get("node")
            if node is None:
                channel = e.details.get("channel")
                node = next(
                    (n for n, d in writes if isinstance(d, Mapping) and channel in d),
                    writes[0][0] if writes else START,
                )
            raise _TickFailure(node, e) from e

    async def _run_tick(
        self,
        executor: NodeExecutor,
        frontier: tuple[str, ...],
        run: _Run,
        modes: frozenset,
        writes: list[tuple[str, Any]],
    ) -> AsyncIterator[tuple[StreamMode, Any]]:
        """Execute one tick, relaying chunks while it runs; fills ``writes``."""
        if StreamMode.MESSAGES not in modes:
            writes.extend(await executor.execute(frontier, run.values, run.config))
            return

        queue: asyncio.Queue = asyncio.Queue()
        tick = asyncio.ensure_future(executor.execute(frontier, run.values, run.config, queue.put))
        try:
            while not tick.done():
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({tick, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield StreamMode.MESSAGES, getter.result()
                else:
                    getter.cancel()
            while not queue.empty():
                yield StreamMode.MESSAGES, queue.get_nowait()
            writes.extend(tick.result())
        finally:
            if not tick.done():
                tick.cancel()
                await asyncio.gather(tick, return_exceptions=True)


__all__ = [
    "RunStatus",
    "GraphExecutionResult",
    "IterationController",
    "NodeExecutor",
    "GraphCheckpointManager",
    "CompiledGraph",
]
