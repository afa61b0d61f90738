"""
Persistence collaborator interfaces and in-memory implementations.

The core reads canvases through CanvasRepository and records run attempts
through TaskStore. The in-memory versions back tests and single-process
deployments; db.supabase provides the hosted ones.
"""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

from canvas_engine.errors import CanvasNotFoundError, PatchNotFoundError, TaskNotFoundError
from canvas_engine.models.canvas import (
    Canvas,
    CanvasEntities,
    CanvasGraph,
    Edge,
    Handle,
    Node,
    NodeResult,
    Task,
    utcnow,
)
from canvas_engine.models.patch import Patch

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    async def create(self, task: Task) -> Task: ...

    async def update(self, task: Task) -> Task: ...

    async def get(self, task_id: str) -> Task: ...

    async def list_by_status(self, statuses: Iterable[str]) -> list[Task]: ...

    async def list_for_canvas(self, canvas_id: str) -> list[Task]: ...


class CanvasRepository(Protocol):
    async def get_canvas_entities(self, canvas_id: str) -> CanvasEntities: ...

    async def replace_node_result(self, node_id: str, result: NodeResult) -> None: ...

    async def apply_patch(self, canvas_id: str, patch: Patch, graph: CanvasGraph) -> None: ...

    async def save_patch(self, patch: Patch) -> None: ...

    async def get_patch(self, patch_id: str) -> Patch: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryTaskStore:
    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}

    async def create(self, task: Task) -> Task:
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def update(self, task: Task) -> Task:
        if task.id not in self._tasks:
            raise TaskNotFoundError(f"Task {task.id} not found")
        self._tasks[task.id] = task.model_copy(deep=True)
        return task

    async def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task.model_copy(deep=True)

    async def list_by_status(self, statuses: Iterable[str]) -> list[Task]:
        wanted = set(statuses)
        return [t.model_copy(deep=True) for t in self._tasks.values() if t.status in wanted]

    async def list_for_canvas(self, canvas_id: str) -> list[Task]:
        return [t.model_copy(deep=True) for t in self._tasks.values() if t.canvas_id == canvas_id]


class InMemoryCanvasRepository:
    """
    Dict-backed canvas store.

    Returned entities are deep copies, so callers can never mutate stored
    state except through replace_node_result / apply_patch.
    """

    def __init__(self, task_store: TaskStore | None = None) -> None:
        self.task_store = task_store
        self._canvases: dict[str, Canvas] = {}
        self._graphs: dict[str, CanvasGraph] = {}
        self._node_canvas: dict[str, str] = {}
        self._patches: dict[str, Patch] = {}

    def add_canvas(
        self,
        canvas: Canvas,
        nodes: list[Node] | None = None,
        handles: list[Handle] | None = None,
        edges: list[Edge] | None = None,
    ) -> None:
        graph = CanvasGraph(
            nodes={n.id: n.model_copy(deep=True) for n in nodes or []},
            handles={h.id: h.model_copy(deep=True) for h in handles or []},
            edges={e.id: e.model_copy(deep=True) for e in edges or []},
        )
        self._canvases[canvas.id] = canvas
        self._graphs[canvas.id] = graph
        for node_id in graph.nodes:
            self._node_canvas[node_id] = canvas.id

    def _graph(self, canvas_id: str) -> CanvasGraph:
        graph = self._graphs.get(canvas_id)
        if graph is None:
            raise CanvasNotFoundError(f"Canvas {canvas_id} not found")
        return graph

    async def get_canvas_entities(self, canvas_id: str) -> CanvasEntities:
        graph = self._graph(canvas_id)
        tasks: list[Task] = []
        if self.task_store is not None:
            tasks = await self.task_store.list_for_canvas(canvas_id)
        return CanvasEntities(
            canvas=self._canvases[canvas_id].model_copy(),
            nodes=[n.model_copy(deep=True) for n in graph.nodes.values()],
            handles=[h.model_copy(deep=True) for h in graph.handles.values()],
            edges=[e.model_copy(deep=True) for e in graph.edges.values()],
            tasks=tasks,
        )

    async def get_graph(self, canvas_id: str) -> CanvasGraph:
        return self._graph(canvas_id).model_copy(deep=True)

    async def replace_node_result(self, node_id: str, result: NodeResult) -> None:
        canvas_id = self._node_canvas.get(node_id)
        if canvas_id is None:
            raise CanvasNotFoundError(f"Node {node_id} not found")
        graph = self._graph(canvas_id)
        node = graph.nodes.get(node_id)
        if node is None:
            raise CanvasNotFoundError(f"Node {node_id} not found")
        graph.nodes[node_id] = node.model_copy(update={"result": result})
        self._canvases[canvas_id] = self._canvases[canvas_id].model_copy(update={"updated_at": utcnow()})

    async def apply_patch(self, canvas_id: str, patch: Patch, graph: CanvasGraph) -> None:
        current = self._graph(canvas_id)
        # Results belong to the orchestrator; keep whatever it wrote last.
        nodes = {
            node_id: (
                node.model_copy(update={"result": current.nodes[node_id].result})
                if node_id in current.nodes
                else node.model_copy(deep=True)
            )
            for node_id, node in graph.nodes.items()
        }
        self._graphs[canvas_id] = CanvasGraph(
            nodes=nodes,
            handles={k: v.model_copy(deep=True) for k, v in graph.handles.items()},
            edges={k: v.model_copy(deep=True) for k, v in graph.edges.items()},
        )
        for node_id in current.nodes:
            if node_id not in nodes:
                self._node_canvas.pop(node_id, None)
        for node_id in nodes:
            self._node_canvas[node_id] = canvas_id
        self._patches[patch.id] = patch
        self._canvases[canvas_id] = self._canvases[canvas_id].model_copy(update={"updated_at": utcnow()})
        logger.debug("Stored patch %s for canvas %s", patch.id, canvas_id)

    async def save_patch(self, patch: Patch) -> None:
        """Record a patch without touching the graph (proposals and reviews)."""
        self._patches[patch.id] = patch

    async def get_patch(self, patch_id: str) -> Patch:
        patch = self._patches.get(patch_id)
        if patch is None:
            raise PatchNotFoundError(f"Patch {patch_id} not found")
        return patch
