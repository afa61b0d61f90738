"""
Tests for the Supabase-backed stores against a fake synchronous client.

supabase-py's execute() blocks, so every request must be sent from a
worker thread rather than the event loop thread.
"""

import threading
from types import SimpleNamespace

import pytest

from canvas_fixtures import CanvasBuilder, generations

from canvas_engine.db.supabase import SupabaseCanvasRepository, SupabaseTaskStore
from canvas_engine.errors import TaskNotFoundError
from canvas_engine.models.canvas import Task
from canvas_engine.models.patch import Patch, parse_operations


class FakeQuery:
    def __init__(self, client, name, payload=None):
        self.client = client
        self.name = name
        self.payload = payload

    def select(self, *columns):
        return self

    def insert(self, row):
        self.payload = row
        return self

    def update(self, row):
        self.payload = row
        return self

    def upsert(self, row):
        self.payload = row
        return self

    def eq(self, column, value):
        return self

    def in_(self, column, values):
        return self

    def limit(self, count):
        return self

    def order(self, column):
        return self

    def execute(self):
        self.client.executed.append((self.name, self.payload, threading.get_ident()))
        return SimpleNamespace(data=self.client.rows.get(self.name, []))


class FakeClient:
    def __init__(self, rows=None):
        self.rows = rows or {}
        self.executed = []

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeQuery(self, name, params)


class TestTaskStore:
    @pytest.mark.asyncio
    async def test_requests_run_off_the_event_loop(self):
        task = Task(node_id="a", canvas_id="canvas-1")
        client = FakeClient(rows={"tasks": [task.model_dump(mode="json")]})
        store = SupabaseTaskStore(client=client)

        await store.create(task)
        fetched = await store.get(task.id)

        assert fetched.id == task.id
        assert [name for name, _, _ in client.executed] == ["tasks", "tasks"]
        loop_thread = threading.get_ident()
        assert all(thread != loop_thread for _, _, thread in client.executed)

    @pytest.mark.asyncio
    async def test_update_of_missing_task(self):
        store = SupabaseTaskStore(client=FakeClient())

        with pytest.raises(TaskNotFoundError):
            await store.update(Task(node_id="a", canvas_id="canvas-1"))


class TestCanvasRepository:
    @pytest.mark.asyncio
    async def test_apply_patch_sends_structure_only(self):
        builder = CanvasBuilder()
        builder.node("Text", "a", content="hi")
        builder.node("TextToSpeech", "tts")
        builder.connect("a", "tts", "Text")
        builder.set_result("tts", generations(builder.output("tts").id, "Audio", b"\xff\xd8binary"))
        client = FakeClient()
        repository = SupabaseCanvasRepository(client=client)
        patch = Patch(
            canvas_id="canvas-1",
            operations=parse_operations([{"op": "replace", "path": "/nodes/a/config/content", "value": "yo"}]),
        )

        await repository.apply_patch("canvas-1", patch, builder.entities().graph())

        name, params, thread = client.executed[0]
        assert name == "apply_canvas_patch"
        assert thread != threading.get_ident()
        assert sorted(n["id"] for n in params["p_nodes"]) == ["a", "tts"]
        assert all("result" not in n for n in params["p_nodes"])
        assert params["p_patch"]["operations"][0]["path"] == "/nodes/a/config/content"

    @pytest.mark.asyncio
    async def test_save_patch_upserts_review_state(self):
        client = FakeClient()
        repository = SupabaseCanvasRepository(client=client)
        patch = Patch(
            canvas_id="canvas-1",
            operations=parse_operations([{"op": "remove", "path": "/edges/e1"}]),
            source="agent",
            status="pending",
        )

        await repository.save_patch(patch)

        name, row, _ = client.executed[0]
        assert name == "patches"
        assert row["id"] == patch.id
        assert row["status"] == "pending"
