"""
Tests for TaskQueue: per-node exclusivity, retries, cancellation and
orphan recovery.
"""

import asyncio

import pytest

from canvas_fixtures import (
    BlockingProcessor,
    CanvasBuilder,
    FlakyProcessor,
    SpyProcessor,
    memory_stores,
)

from canvas_engine.errors import NodeBusyError, ProcessorError
from canvas_engine.models.canvas import Task
from canvas_engine.services.node_orchestrator import NodeOrchestrator
from canvas_engine.services.processors.base import NodeProcessor
from canvas_engine.services.processors.registry import ProcessorRegistry
from canvas_engine.services.task_queue import TaskQueue


def make_queue(processor: NodeProcessor, node_ids=("a",), **kwargs):
    repository, task_store = memory_stores()
    builder = CanvasBuilder()
    for node_id in node_ids:
        builder.node("Text", node_id)
    builder.seed(repository)
    registry = ProcessorRegistry()
    registry.register("Text", processor)
    options = {"workers": 2, "max_attempts": 3, "retry_base_delay": 0.001, "retry_max_delay": 0.01}
    options.update(kwargs)
    queue = TaskQueue(NodeOrchestrator(repository, registry), task_store, **options)
    return queue, task_store


class TestExclusivity:
    @pytest.mark.asyncio
    async def test_concurrent_enqueue_accepts_exactly_one(self):
        queue, _ = make_queue(SpyProcessor())

        results = await asyncio.gather(
            *(queue.enqueue("a", "canvas-1") for _ in range(10)),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, Task)]
        rejected = [r for r in results if isinstance(r, NodeBusyError)]
        assert len(accepted) == 1
        assert len(rejected) == 9
        assert all(e.task_id == accepted[0].id for e in rejected)

    @pytest.mark.asyncio
    async def test_slot_is_released_after_completion(self):
        queue, _ = make_queue(SpyProcessor())
        await queue.start()
        try:
            first = await queue.enqueue("a", "canvas-1")
            done = await queue.wait(first.id, timeout=2)
            second = await queue.enqueue("a", "canvas-1")
            await queue.wait(second.id, timeout=2)
        finally:
            await queue.stop()

        assert done.status == "completed"
        assert done.finished_at is not None
        assert done.duration_ms is not None
        assert not queue.is_busy("a")

    @pytest.mark.asyncio
    async def test_different_nodes_run_concurrently(self):
        processor = BlockingProcessor()
        queue, _ = make_queue(processor, node_ids=("a", "b"))
        await queue.start()
        try:
            ta = await queue.enqueue("a", "canvas-1")
            tb = await queue.enqueue("b", "canvas-1")
            await asyncio.sleep(0.05)
            assert queue.active_task("a").status == "running"
            assert queue.active_task("b").status == "running"
            processor.release.set()
            await queue.wait(ta.id, timeout=2)
            await queue.wait(tb.id, timeout=2)
        finally:
            await queue.stop()


class TestRetries:
    def test_backoff_is_exponential_and_capped(self):
        queue, _ = make_queue(SpyProcessor(), retry_base_delay=1.0, retry_max_delay=5.0)

        assert [queue.backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        processor = FlakyProcessor(failures=2, error=ProcessorError("503 from provider", transient=True))
        queue, _ = make_queue(processor)
        await queue.start()
        try:
            task = await queue.enqueue("a", "canvas-1")
            done = await queue.wait(task.id, timeout=2)
        finally:
            await queue.stop()

        assert done.status == "completed"
        assert done.attempts == 3
        assert processor.calls == 3

    @pytest.mark.asyncio
    async def test_retries_stop_at_max_attempts(self):
        processor = FlakyProcessor(failures=10, error=ProcessorError("timeout", transient=True))
        queue, store = make_queue(processor, max_attempts=2)
        await queue.start()
        try:
            task = await queue.enqueue("a", "canvas-1")
            done = await queue.wait(task.id, timeout=2)
        finally:
            await queue.stop()

        assert done.status == "failed"
        assert done.attempts == 2
        assert (await store.get(task.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self):
        processor = FlakyProcessor(failures=10, error=ValueError("invalid config"))
        queue, _ = make_queue(processor)
        await queue.start()
        try:
            task = await queue.enqueue("a", "canvas-1")
            done = await queue.wait(task.id, timeout=2)
        finally:
            await queue.stop()

        assert done.status == "failed"
        assert done.attempts == 1
        assert done.error == "invalid config"

    @pytest.mark.asyncio
    async def test_worker_survives_failures(self):
        processor = FlakyProcessor(failures=1, error=RuntimeError("crash"))
        queue, _ = make_queue(processor, workers=1)
        await queue.start()
        try:
            failed = await queue.wait((await queue.enqueue("a", "canvas-1")).id, timeout=2)
            succeeded = await queue.wait((await queue.enqueue("a", "canvas-1")).id, timeout=2)
        finally:
            await queue.stop()

        assert failed.status == "failed"
        assert succeeded.status == "completed"


class TestInlineRuns:
    @pytest.mark.asyncio
    async def test_inline_task_is_finished_on_return(self):
        queue, store = make_queue(SpyProcessor())

        task = await queue.enqueue("a", "canvas-1", inline=True)

        assert task.status == "completed"
        assert task.attempts == 1
        assert (await store.get(task.id)).status == "completed"
        assert not queue.is_busy("a")

    @pytest.mark.asyncio
    async def test_inline_task_is_not_retried(self):
        processor = FlakyProcessor(failures=1, error=ProcessorError("503 from provider", transient=True))
        queue, _ = make_queue(processor)

        task = await queue.enqueue("a", "canvas-1", inline=True)

        assert task.status == "failed"
        assert task.error == "503 from provider"
        assert processor.calls == 1

    def test_execution_mode_follows_processor(self):
        queue, _ = make_queue(SpyProcessor())
        remote = SpyProcessor()
        remote.execution = "remote"
        queue.orchestrator.registry.register("LLM", remote)

        assert queue.orchestrator.execution_mode("Text") == "local"
        assert queue.orchestrator.execution_mode("LLM") == "remote"
        assert queue.orchestrator.execution_mode("Unknown") == "remote"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queued_task_fails_immediately(self):
        queue, store = make_queue(SpyProcessor())
        task = await queue.enqueue("a", "canvas-1")

        assert await queue.cancel(task.id)

        done = await queue.wait(task.id, timeout=1)
        assert done.status == "failed"
        assert "Cancelled" in done.error
        assert not queue.is_busy("a")
        assert (await store.get(task.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_cancel_running_task(self):
        processor = BlockingProcessor()
        queue, _ = make_queue(processor)
        await queue.start()
        try:
            task = await queue.enqueue("a", "canvas-1")
            await asyncio.wait_for(processor.started.wait(), timeout=2)
            assert await queue.cancel(task.id)
            done = await queue.wait(task.id, timeout=2)
        finally:
            await queue.stop()

        assert done.status == "failed"
        assert "cancelled" in done.error.lower()

    @pytest.mark.asyncio
    async def test_cancel_unknown_task_returns_false(self):
        queue, _ = make_queue(SpyProcessor())

        assert not await queue.cancel("missing")


class TestRecovery:
    @pytest.mark.asyncio
    async def test_orphaned_tasks_are_reconciled(self):
        spy = SpyProcessor()
        queue, store = make_queue(spy, node_ids=("a", "b"))
        running = Task(node_id="a", canvas_id="canvas-1", status="running")
        queued = Task(node_id="b", canvas_id="canvas-1", status="queued")
        await store.create(running)
        await store.create(queued)

        counts = await queue.recover_orphaned_tasks()
        await queue.start()
        try:
            requeued = await queue.wait(queued.id, timeout=2)
        finally:
            await queue.stop()

        assert counts == {"interrupted": 1, "requeued": 1}
        assert (await store.get(running.id)).status == "failed"
        assert requeued.status == "completed"
        assert [c.node.id for c in spy.calls] == ["b"]
