"""
Supabase client wrapper and Supabase-backed canvas/task stores.
Uses service role key for server-side operations.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Iterable, Optional

from supabase import Client, create_client

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
)
from canvas_engine.models.patch import Patch


class SupabaseClient:
    """Singleton Supabase client wrapper."""

    _instance: Optional['SupabaseClient'] = None
    _client: Optional[Client] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            supabase_url = os.getenv("SUPABASE_URL")
            supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

            if not supabase_url:
                raise ValueError("SUPABASE_URL environment variable is required")
            if not supabase_key:
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")

            try:
                self._client = create_client(supabase_url, supabase_key)
            except Exception as e:
                raise ValueError(f"Failed to create Supabase client: {str(e)}")

    @property
    def client(self) -> Client:
        """Get the Supabase client instance."""
        if self._client is None:
            raise RuntimeError("Supabase client not initialized. Check environment variables.")
        return self._client


def get_supabase() -> SupabaseClient:
    """Get the Supabase client singleton."""
    return SupabaseClient()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


async def _execute(query: Any) -> Any:
    """Run a blocking supabase-py request off the event loop."""
    return await asyncio.to_thread(query.execute)


def _task_row(task: Task) -> dict[str, Any]:
    return task.model_dump(mode="json")


class SupabaseTaskStore:
    """Durable task records in the `tasks` table."""

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or get_supabase().client

    async def create(self, task: Task) -> Task:
        await _execute(self.client.table("tasks").insert(_task_row(task)))
        return task

    async def update(self, task: Task) -> Task:
        result = await _execute(self.client.table("tasks").update(_task_row(task)).eq("id", task.id))
        if not result.data:
            raise TaskNotFoundError(f"Task {task.id} not found")
        return task

    async def get(self, task_id: str) -> Task:
        result = await _execute(self.client.table("tasks").select("*").eq("id", task_id).limit(1))
        if not result.data:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return Task.model_validate(result.data[0])

    async def list_by_status(self, statuses: Iterable[str]) -> list[Task]:
        result = await _execute(self.client.table("tasks").select("*").in_("status", list(statuses)))
        return [Task.model_validate(row) for row in result.data or []]

    async def list_for_canvas(self, canvas_id: str) -> list[Task]:
        result = await _execute(self.client.table("tasks").select("*").eq("canvas_id", canvas_id))
        return [Task.model_validate(row) for row in result.data or []]


class SupabaseCanvasRepository:
    """
    Canvas entities stored across the canvases/nodes/handles/edges tables.

    Patches are applied through the `apply_canvas_patch` database function
    so the structural swap happens in a single transaction.
    """

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client or get_supabase().client

    async def get_canvas_entities(self, canvas_id: str) -> CanvasEntities:
        canvas_rows = await _execute(self.client.table("canvases").select("*").eq("id", canvas_id).limit(1))
        if not canvas_rows.data:
            raise CanvasNotFoundError(f"Canvas {canvas_id} not found")

        nodes = (await _execute(self.client.table("nodes").select("*").eq("canvas_id", canvas_id))).data or []
        node_ids = [row["id"] for row in nodes]
        handles: list[dict[str, Any]] = []
        edges: list[dict[str, Any]] = []
        if node_ids:
            handles = (
                await _execute(self.client.table("handles").select("*").in_("node_id", node_ids).order("order"))
            ).data or []
            edges = (await _execute(self.client.table("edges").select("*").in_("source", node_ids))).data or []
        tasks = (await _execute(self.client.table("tasks").select("*").eq("canvas_id", canvas_id))).data or []

        return CanvasEntities(
            canvas=Canvas.model_validate(canvas_rows.data[0]),
            nodes=[Node.model_validate(row) for row in nodes],
            handles=[Handle.model_validate(row) for row in handles],
            edges=[Edge.model_validate(row) for row in edges],
            tasks=[Task.model_validate(row) for row in tasks],
        )

    async def replace_node_result(self, node_id: str, result: NodeResult) -> None:
        response = await _execute(
            self.client.table("nodes")
            .update({"result": result.model_dump(mode="json")})
            .eq("id", node_id)
        )
        if not response.data:
            raise CanvasNotFoundError(f"Node {node_id} not found")

    async def apply_patch(self, canvas_id: str, patch: Patch, graph: CanvasGraph) -> None:
        # Results are left out so the function keeps the stored ones.
        document = graph.structural_document()
        await _execute(
            self.client.rpc(
                "apply_canvas_patch",
                {
                    "p_canvas_id": canvas_id,
                    "p_patch": patch.model_dump(mode="json", by_alias=True),
                    "p_nodes": list(document["nodes"].values()),
                    "p_handles": list(document["handles"].values()),
                    "p_edges": list(document["edges"].values()),
                },
            )
        )

    async def save_patch(self, patch: Patch) -> None:
        await _execute(self.client.table("patches").upsert(patch.model_dump(mode="json", by_alias=True)))

    async def get_patch(self, patch_id: str) -> Patch:
        result = await _execute(self.client.table("patches").select("*").eq("id", patch_id).limit(1))
        if not result.data:
            raise PatchNotFoundError(f"Patch {patch_id} not found")
        return Patch.model_validate(result.data[0])
