"""
Entry points that users, agents and the HTTP layer call.

Enforces the locking discipline (users are refused while an agent holds the
canvas, agents must hold it) and wires the graph resolver, task queue and
patch applier together. Batch runs walk the upstream closure of the
selected nodes with a dependency ready-queue: independent nodes run
concurrently, failures fail their dependents without running them. Agent
patches are proposals until a user accepts or rejects them.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from typing import Any, Iterable, Literal

from pydantic import BaseModel

from canvas_engine.db.repository import CanvasRepository
from canvas_engine.errors import (
    CanvasEngineError,
    InvalidNodeError,
    NodeBusyError,
    PatchNotFoundError,
    PatchStateError,
    TaskNotFoundError,
)
from canvas_engine.models.canvas import CanvasEntities, Edge, NodeResult, Task, generate_id, utcnow
from canvas_engine.models.patch import Patch, PatchOperation
from canvas_engine.services.canvas_lock import CanvasLock, CanvasLockManager
from canvas_engine.services.patch_applier import PatchApplier
from canvas_engine.services.task_queue import TaskQueue

logger = logging.getLogger(__name__)


class Actor(BaseModel):
    kind: Literal["user", "agent"]
    id: str

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(kind="user", id=user_id)

    @classmethod
    def agent(cls, agent_id: str) -> "Actor":
        return cls(kind="agent", id=agent_id)


# ---------------------------------------------------------------------------
# Batch result models
# ---------------------------------------------------------------------------


class BatchNodeResult(BaseModel):
    node_id: str
    node_type: str | None = None
    status: Literal["completed", "failed"]
    task_id: str | None = None
    error: str | None = None
    result: NodeResult | None = None
    execution_time_ms: int = 0


class BatchRunResult(BaseModel):
    batch_id: str
    success: bool
    node_results: list[BatchNodeResult]
    total_execution_time_ms: int
    error: str | None = None


def build_dependency_graph(
    node_ids: Iterable[str],
    edges: Iterable[Edge],
) -> tuple[dict[str, int], dict[str, list[str]]]:
    """
    Dependency tracking structures for a set of nodes.

    Returns:
        in_degree: count of distinct upstream nodes for each node
        adjacency: node -> list of downstream nodes to unblock
    """
    in_degree: dict[str, int] = {nid: 0 for nid in node_ids}
    adjacency: dict[str, list[str]] = {nid: [] for nid in in_degree}
    upstream: dict[str, set[str]] = {nid: set() for nid in in_degree}

    for edge in edges:
        if edge.source not in in_degree or edge.target not in in_degree:
            continue
        # Several edges between the same pair count as one dependency
        if edge.source not in upstream[edge.target]:
            upstream[edge.target].add(edge.source)
            in_degree[edge.target] += 1
            adjacency[edge.source].append(edge.target)

    return in_degree, adjacency


def upstream_closure(node_ids: Iterable[str], edges: Iterable[Edge]) -> set[str]:
    """The given nodes plus every node they transitively depend on."""
    incoming: dict[str, list[str]] = {}
    for edge in edges:
        incoming.setdefault(edge.target, []).append(edge.source)
    closure: set[str] = set()
    stack = list(node_ids)
    while stack:
        node_id = stack.pop()
        if node_id in closure:
            continue
        closure.add(node_id)
        stack.extend(incoming.get(node_id, ()))
    return closure


def topological_order(in_degree: dict[str, int], adjacency: dict[str, list[str]]) -> list[str]:
    """Kahn toposort; raises InvalidNodeError if the graph has a cycle."""
    remaining = dict(in_degree)
    ready = [nid for nid, deg in remaining.items() if deg == 0]
    order: list[str] = []
    while ready:
        node_id = ready.pop(0)
        order.append(node_id)
        for downstream in adjacency[node_id]:
            remaining[downstream] -= 1
            if remaining[downstream] == 0:
                ready.append(downstream)
    if len(order) < len(in_degree):
        cyclic = sorted(set(in_degree) - set(order))
        raise InvalidNodeError(f"Canvas graph contains a cycle through nodes {cyclic}")
    return order


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CanvasService:
    def __init__(
        self,
        repository: CanvasRepository,
        task_queue: TaskQueue,
        lock_manager: CanvasLockManager,
        patch_applier: PatchApplier | None = None,
    ):
        self.repository = repository
        self.task_queue = task_queue
        self.lock_manager = lock_manager
        self.patch_applier = patch_applier or PatchApplier()
        # Serialises read-modify-write of canvas structure within this process
        self._write_locks: dict[str, asyncio.Lock] = {}
        # One batch at a time per canvas; a second one waits for the first
        self._batch_locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _canvas_lock(locks: dict[str, asyncio.Lock], canvas_id: str) -> asyncio.Lock:
        lock = locks.get(canvas_id)
        if lock is None:
            lock = locks[canvas_id] = asyncio.Lock()
        return lock

    def _write_lock(self, canvas_id: str) -> asyncio.Lock:
        return self._canvas_lock(self._write_locks, canvas_id)

    def _batch_lock(self, canvas_id: str) -> asyncio.Lock:
        return self._canvas_lock(self._batch_locks, canvas_id)

    def _runs_inline(self, node_type: str) -> bool:
        return self.task_queue.orchestrator.execution_mode(node_type) == "local"

    def check_access(self, canvas_id: str, actor: Actor) -> None:
        """Users need the canvas unlocked; agents need to hold its lock."""
        if actor.kind == "agent":
            self.lock_manager.ensure_holder(canvas_id, actor.id)
        else:
            self.lock_manager.ensure_unlocked(canvas_id)

    def agent_session(
        self,
        canvas_id: str,
        agent_id: str,
        ttl: float | None = None,
    ) -> AbstractAsyncContextManager[CanvasLock]:
        """Hold the canvas lock for an agent for the duration of a block."""
        return self.lock_manager.session(canvas_id, agent_id, ttl)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run_node(
        self,
        canvas_id: str,
        node_id: str,
        actor: Actor,
        api_key: str | None = None,
        wait: bool = False,
    ) -> Task:
        """
        Queue a run of one node.

        Raises LockContentionError when the actor may not touch the canvas,
        InvalidNodeError when the node is not on it and NodeBusyError when
        it already has an active task. With wait=True returns the finished
        task instead of the queued one. Nodes with a local processor run
        before this returns, so their task is always finished.
        """
        self.check_access(canvas_id, actor)
        entities = await self.repository.get_canvas_entities(canvas_id)
        node = _find_node(entities, node_id)

        task = await self.task_queue.enqueue(
            node_id, canvas_id, api_key=api_key, inline=self._runs_inline(node.type)
        )
        logger.info("%s %s queued node %s on canvas %s", actor.kind, actor.id, node_id, canvas_id)
        if wait and task.is_active:
            return await self.task_queue.wait(task.id)
        return task

    async def get_task(self, task_id: str, canvas_id: str | None = None) -> Task:
        task = await self.task_queue.get(task_id)
        if canvas_id is not None and task.canvas_id != canvas_id:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    async def cancel_task(self, canvas_id: str, task_id: str, actor: Actor) -> bool:
        """
        Cancel a task on the canvas.

        The actor needs the same access as for starting a run. A task that
        belongs to another canvas is reported as not found.
        """
        self.check_access(canvas_id, actor)
        await self.get_task(task_id, canvas_id)
        cancelled = await self.task_queue.cancel(task_id)
        logger.info("Cancel of task %s by %s %s: %s", task_id, actor.kind, actor.id, cancelled)
        return cancelled

    async def run_batch(
        self,
        canvas_id: str,
        node_ids: list[str] | None = None,
        api_key: str | None = None,
        actor: Actor | None = None,
    ) -> BatchRunResult:
        """
        Run the selected nodes (all nodes when None) after everything upstream of them.

        Terminal nodes that were only pulled in as dependencies are not
        processed. A failed node fails its dependents with an "Upstream
        failure" error; independent branches keep running. Batches on the
        same canvas run one after another.
        """
        if actor is not None:
            self.check_access(canvas_id, actor)
        async with self._batch_lock(canvas_id):
            return await self._run_batch(canvas_id, node_ids, api_key)

    async def _run_batch(
        self,
        canvas_id: str,
        node_ids: list[str] | None,
        api_key: str | None,
    ) -> BatchRunResult:
        start_time = time.perf_counter()
        entities = await self.repository.get_canvas_entities(canvas_id)
        node_map = {n.id: n for n in entities.nodes}

        selected = list(node_ids) if node_ids is not None else list(node_map)
        unknown = [nid for nid in selected if nid not in node_map]
        if unknown:
            raise InvalidNodeError(f"Nodes not found in canvas {canvas_id}: {unknown}", node_id=unknown[0])

        closure = upstream_closure(selected, entities.edges)
        in_degree, adjacency = build_dependency_graph(
            [nid for nid in node_map if nid in closure], entities.edges
        )
        topological_order(in_degree, adjacency)

        batch_id = generate_id()
        explicit = set(selected)
        batch_results: dict[str, NodeResult] = {}
        node_results: list[BatchNodeResult] = []
        blocked_by: dict[str, str] = {}
        logger.info("Batch %s: running %d nodes on canvas %s", batch_id, len(in_degree), canvas_id)

        async def execute_single_node(node_id: str) -> BatchNodeResult:
            node = node_map[node_id]
            node_start = time.perf_counter()
            try:
                task = await self.task_queue.enqueue(
                    node_id,
                    canvas_id,
                    api_key=api_key,
                    batch_results=batch_results,
                    batch_id=batch_id,
                    skip_terminal=node_id not in explicit,
                    inline=self._runs_inline(node.type),
                )
                finished = await self.task_queue.wait(task.id) if task.is_active else task
            except NodeBusyError as e:
                return BatchNodeResult(
                    node_id=node_id,
                    node_type=node.type,
                    status="failed",
                    task_id=e.task_id,
                    error=str(e),
                )
            except CanvasEngineError as e:
                return BatchNodeResult(node_id=node_id, node_type=node.type, status="failed", error=str(e))

            return BatchNodeResult(
                node_id=node_id,
                node_type=node.type,
                status="completed" if finished.status == "completed" else "failed",
                task_id=finished.id,
                error=finished.error,
                result=finished.result,
                execution_time_ms=int((time.perf_counter() - node_start) * 1000),
            )

        def upstream_failure(node_id: str, failed: BatchNodeResult) -> str:
            failed_node = node_map[failed.node_id]
            return f"Upstream failure in node {failed_node.name or failed_node.id}: {failed.error or 'Unknown error'}"

        # Initialize ready queue with nodes that have no dependencies
        ready_queue: list[str] = [nid for nid, deg in in_degree.items() if deg == 0]
        pending_tasks: dict[asyncio.Task, str] = {}

        def settle(result: BatchNodeResult) -> None:
            node_results.append(result)
            if result.status == "completed" and result.result is not None:
                if node_map[result.node_id].is_transient:
                    batch_results[result.node_id] = result.result
            for downstream in adjacency[result.node_id]:
                if result.status == "failed" and downstream not in blocked_by:
                    blocked_by[downstream] = (
                        blocked_by.get(result.node_id) or upstream_failure(downstream, result)
                    )
                in_degree[downstream] -= 1
                if in_degree[downstream] == 0:
                    ready_queue.append(downstream)

        while ready_queue or pending_tasks:
            while ready_queue:
                node_id = ready_queue.pop(0)
                if node_id in blocked_by:
                    settle(
                        BatchNodeResult(
                            node_id=node_id,
                            node_type=node_map[node_id].type,
                            status="failed",
                            error=blocked_by[node_id],
                        )
                    )
                    continue
                pending_tasks[asyncio.create_task(execute_single_node(node_id))] = node_id
                logger.debug("Batch %s: started node %s", batch_id, node_id)

            if not pending_tasks:
                continue

            done, _ = await asyncio.wait(pending_tasks.keys(), return_when=asyncio.FIRST_COMPLETED)
            for finished in done:
                pending_tasks.pop(finished)
                settle(finished.result())

        failures = [r for r in node_results if r.status == "failed"]
        total_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(
            "Batch %s finished: %d completed, %d failed in %dms",
            batch_id,
            len(node_results) - len(failures),
            len(failures),
            total_ms,
        )
        return BatchRunResult(
            batch_id=batch_id,
            success=not failures,
            node_results=node_results,
            total_execution_time_ms=total_ms,
            error=f"Node {failures[0].node_id} failed: {failures[0].error}" if failures else None,
        )

    # ------------------------------------------------------------------
    # Structural edits
    # ------------------------------------------------------------------

    async def apply_patch(
        self,
        canvas_id: str,
        operations: Iterable[PatchOperation | dict[str, Any]],
        actor: Actor,
    ) -> Patch:
        """
        Apply a user patch atomically, or propose an agent patch.

        Raises PatchRejectedError if any operation fails or the result is
        not a valid graph; the stored canvas is then unchanged. Agent
        patches are checked against the current canvas, stored as pending
        and announced on the canvas event channel. They change the canvas
        only once a user accepts them.
        """
        self.check_access(canvas_id, actor)
        ops = self.patch_applier.coerce(operations)
        for warning in self.patch_applier.validate(ops):
            logger.warning("Canvas %s patch: %s", canvas_id, warning)
        patch = Patch(canvas_id=canvas_id, operations=ops, source=actor.kind, author_id=actor.id)

        if actor.kind == "agent":
            entities = await self.repository.get_canvas_entities(canvas_id)
            self.patch_applier.apply(entities.graph(), ops, canvas_id=canvas_id)
            proposal = patch.model_copy(update={"status": "pending"})
            await self.repository.save_patch(proposal)
            logger.info("Agent %s proposed patch %s on canvas %s", actor.id, proposal.id, canvas_id)
            self.lock_manager.notify_proposal(canvas_id, proposal.id)
            return proposal

        async with self._write_lock(canvas_id):
            return await self._commit_patch(canvas_id, patch)

    async def _commit_patch(self, canvas_id: str, patch: Patch) -> Patch:
        """Apply and store a patch. Callers hold the canvas write lock."""
        entities = await self.repository.get_canvas_entities(canvas_id)
        graph = entities.graph()
        patched = self.patch_applier.apply(graph, patch.operations, canvas_id=canvas_id)
        if patched is graph:
            logger.info("Canvas %s patch %s made no changes", canvas_id, patch.id)
            await self.repository.save_patch(patch)
            return patch
        await self.repository.apply_patch(canvas_id, patch, patched)

        logger.info(
            "Applied patch %s (%d operations) to canvas %s from %s %s",
            patch.id,
            len(patch.operations),
            canvas_id,
            patch.source,
            patch.author_id,
        )
        return patch

    async def _pending_patch(self, canvas_id: str, patch_id: str, actor: Actor) -> Patch:
        if actor.kind != "user":
            raise PatchStateError("Only users can review agent patches")
        self.check_access(canvas_id, actor)
        patch = await self.repository.get_patch(patch_id)
        if patch.canvas_id != canvas_id:
            raise PatchNotFoundError(f"Patch {patch_id} not found")
        if not patch.is_pending:
            raise PatchStateError(f"Patch {patch_id} is already {patch.status}")
        return patch

    async def accept_patch(self, canvas_id: str, patch_id: str, actor: Actor) -> Patch:
        """
        Apply a pending agent patch on a user's say-so.

        The patch is re-checked against the canvas as it is now. If it no
        longer applies, PatchRejectedError is raised and the patch stays
        pending so it can still be rejected.
        """
        async with self._write_lock(canvas_id):
            patch = await self._pending_patch(canvas_id, patch_id, actor)
            accepted = await self._commit_patch(
                canvas_id,
                patch.model_copy(update={"status": "accepted", "reviewed_by": actor.id, "reviewed_at": utcnow()}),
            )
        self.lock_manager.notify_patch(canvas_id, accepted.id)
        return accepted

    async def reject_patch(self, canvas_id: str, patch_id: str, actor: Actor) -> Patch:
        async with self._write_lock(canvas_id):
            patch = await self._pending_patch(canvas_id, patch_id, actor)
            rejected = patch.model_copy(
                update={"status": "rejected", "reviewed_by": actor.id, "reviewed_at": utcnow()}
            )
            await self.repository.save_patch(rejected)
        logger.info("Patch %s on canvas %s rejected by %s", patch_id, canvas_id, actor.id)
        self.lock_manager.notify_patch(canvas_id, patch_id, kind="rejected")
        return rejected

    async def select_output(
        self,
        canvas_id: str,
        node_id: str,
        index: int,
        actor: Actor,
    ) -> NodeResult:
        """Make another generation of a node's result the one downstream nodes see."""
        self.check_access(canvas_id, actor)
        active = self.task_queue.active_task(node_id)
        if active is not None:
            raise NodeBusyError(node_id, active.id)

        async with self._write_lock(canvas_id):
            entities = await self.repository.get_canvas_entities(canvas_id)
            node = _find_node(entities, node_id)
            if node.result is None or not node.result.outputs:
                raise InvalidNodeError(f"Node {node_id} has no outputs to select from", node_id=node_id)
            if not 0 <= index < len(node.result.outputs):
                raise InvalidNodeError(
                    f"Output index {index} out of range for {len(node.result.outputs)} outputs",
                    node_id=node_id,
                )
            updated = node.result.with_selected(index)
            await self.repository.replace_node_result(node_id, updated)

        logger.info("Node %s selected output %d", node_id, index)
        return updated

    def lock_status(self, canvas_id: str) -> CanvasLock | None:
        return self.lock_manager.get(canvas_id)


def _find_node(entities: CanvasEntities, node_id: str):
    for node in entities.nodes:
        if node.id == node_id:
            return node
    raise InvalidNodeError(f"Node {node_id} not found in canvas {entities.canvas.id}", node_id=node_id)
