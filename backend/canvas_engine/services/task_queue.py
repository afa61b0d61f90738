"""
In-process task queue.

Accepts node run requests, enforces one queued/running task per node,
hands tasks to a pool of asyncio workers and records every status
transition through the task store. Transient failures are retried with
exponential backoff; permanent ones fail on the first attempt. Inline jobs
(local processors) run in the caller with a single attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping

from canvas_engine.db.repository import TaskStore
from canvas_engine.errors import NodeBusyError, TaskNotFoundError
from canvas_engine.models.canvas import NodeResult, Task, utcnow
from canvas_engine.services.node_orchestrator import NodeOrchestrator, NodeRunOutcome

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    task: Task
    done: asyncio.Future
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    batch_results: Mapping[str, NodeResult] | None = None
    skip_terminal: bool = False
    inline: bool = False
    started: bool = False


class TaskQueue:
    def __init__(
        self,
        orchestrator: NodeOrchestrator,
        task_store: TaskStore,
        workers: int = 4,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.orchestrator = orchestrator
        self.task_store = task_store
        self.worker_count = max(1, workers)
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._jobs: dict[str, _Job] = {}
        # node_id -> task_id of its queued or running task
        self._active: dict[str, str] = {}
        self._workers: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"task-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info("Task queue started with %d workers", self.worker_count)

    async def stop(self) -> None:
        """Stop workers. Unfinished tasks stay in the store for recovery."""
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        for job in self._jobs.values():
            if not job.done.done():
                job.done.cancel()
        self._jobs.clear()
        self._active.clear()
        logger.info("Task queue stopped")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def is_busy(self, node_id: str) -> bool:
        return node_id in self._active

    def active_task(self, node_id: str) -> Task | None:
        task_id = self._active.get(node_id)
        if task_id is None:
            return None
        job = self._jobs.get(task_id)
        return job.task if job else None

    def _claim(self, node_id: str, task_id: str) -> None:
        existing = self._active.get(node_id)
        if existing is not None:
            raise NodeBusyError(node_id, existing)
        self._active[node_id] = task_id

    def _release(self, task: Task) -> None:
        if self._active.get(task.node_id) == task.id:
            del self._active[task.node_id]

    async def enqueue(
        self,
        node_id: str,
        canvas_id: str,
        api_key: str | None = None,
        batch_results: Mapping[str, NodeResult] | None = None,
        batch_id: str | None = None,
        skip_terminal: bool = False,
        inline: bool = False,
    ) -> Task:
        """
        Create a queued task for the node.

        Raises NodeBusyError carrying the active task id if the node already
        has a queued or running task. An inline task is run to completion in
        the calling coroutine without retries and returned finished.
        """
        task = Task(node_id=node_id, canvas_id=canvas_id, api_key=api_key, batch_id=batch_id)
        # Claimed before the first await so concurrent callers see the slot taken.
        self._claim(node_id, task.id)
        job = _Job(
            task=task,
            done=asyncio.get_running_loop().create_future(),
            batch_results=dict(batch_results) if batch_results else None,
            skip_terminal=skip_terminal,
            inline=inline,
        )
        self._jobs[task.id] = job
        try:
            await self.task_store.create(task)
        except Exception:
            self._jobs.pop(task.id, None)
            self._release(task)
            raise

        if inline:
            logger.info("Running task %s for node %s inline", task.id, node_id)
            try:
                await self._run_job(job, "Inline run")
            except asyncio.CancelledError:
                self._release(job.task)
                self._jobs.pop(job.task.id, None)
                if not job.done.done():
                    job.done.cancel()
                raise
            return job.task

        self._queue.put_nowait(job)
        logger.info("Queued task %s for node %s", task.id, node_id)
        return task

    async def wait(self, task_id: str, timeout: float | None = None) -> Task:
        """Block until the task reaches completed or failed and return it."""
        job = self._jobs.get(task_id)
        if job is None:
            return await self.task_store.get(task_id)
        return await asyncio.wait_for(asyncio.shield(job.done), timeout)

    async def get(self, task_id: str) -> Task:
        job = self._jobs.get(task_id)
        if job is not None:
            return job.task
        return await self.task_store.get(task_id)

    async def cancel(self, task_id: str, reason: str = "Cancelled by request") -> bool:
        """
        Signal a task to stop.

        A queued task fails right away. A running one is aborted and fails
        once its processor returns. Returns False if the task is not active.
        """
        job = self._jobs.get(task_id)
        if job is None or job.done.done():
            return False
        job.abort.set()
        if not job.started:
            await self._finish(job, success=False, error=reason)
        logger.info("Cancel requested for task %s", task_id)
        return True

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_orphaned_tasks(self) -> dict[str, int]:
        """
        Reconcile tasks left behind by a previous process.

        Running tasks were interrupted mid-run and are failed. Queued ones
        never started and are dispatched again.
        """
        interrupted = 0
        requeued = 0
        now = utcnow()

        for task in await self.task_store.list_by_status(["running"]):
            if task.id in self._jobs:
                continue
            await self.task_store.update(
                task.model_copy(update={
                    "status": "failed",
                    "error": "Task interrupted before completion",
                    "finished_at": now,
                })
            )
            interrupted += 1

        for task in await self.task_store.list_by_status(["queued"]):
            if task.id in self._jobs:
                continue
            try:
                self._claim(task.node_id, task.id)
            except NodeBusyError as e:
                await self.task_store.update(
                    task.model_copy(update={"status": "failed", "error": str(e), "finished_at": now})
                )
                interrupted += 1
                continue
            job = _Job(task=task, done=asyncio.get_running_loop().create_future())
            self._jobs[task.id] = job
            self._queue.put_nowait(job)
            requeued += 1

        if interrupted or requeued:
            logger.info("Recovered tasks: %d interrupted, %d requeued", interrupted, requeued)
        return {"interrupted": interrupted, "requeued": requeued}

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def backoff_delay(self, attempt: int) -> float:
        return min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)

    async def _worker(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._run_job(job, f"Worker {index}")
            finally:
                self._queue.task_done()

    async def _run_job(self, job: _Job, runner: str) -> None:
        try:
            if not job.done.done():
                await self._execute(job)
        except Exception as e:
            logger.exception("%s failed handling task %s", runner, job.task.id)
            if not job.done.done():
                try:
                    await self._finish(job, success=False, error=f"{type(e).__name__}: {e}")
                except Exception:
                    logger.exception("Could not record failure for task %s", job.task.id)

    async def _execute(self, job: _Job) -> None:
        job.started = True
        started_at = job.task.started_at or utcnow()

        while True:
            job.task = job.task.model_copy(update={
                "status": "running",
                "started_at": started_at,
                "attempts": job.task.attempts + 1,
            })
            await self.task_store.update(job.task)

            outcome = await self.orchestrator.run(
                job.task,
                abort=job.abort,
                batch_results=job.batch_results,
                skip_terminal=job.skip_terminal,
            )
            if outcome.success:
                await self._finish(job, success=True, outcome=outcome)
                return

            if self._should_retry(job, outcome):
                delay = self.backoff_delay(job.task.attempts)
                logger.warning(
                    "Task %s attempt %d/%d failed (%s), retrying in %.1fs",
                    job.task.id,
                    job.task.attempts,
                    self.max_attempts,
                    outcome.error,
                    delay,
                )
                try:
                    await asyncio.wait_for(job.abort.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    continue
                await self._finish(job, success=False, error="Cancelled during retry backoff")
                return

            await self._finish(job, success=False, outcome=outcome)
            return

    def _should_retry(self, job: _Job, outcome: NodeRunOutcome) -> bool:
        return (
            not job.inline
            and outcome.transient
            and not outcome.cancelled
            and not job.abort.is_set()
            and job.task.attempts < self.max_attempts
        )

    async def _finish(
        self,
        job: _Job,
        success: bool,
        outcome: NodeRunOutcome | None = None,
        error: str | None = None,
    ) -> None:
        finished_at = utcnow()
        started_at = job.task.started_at
        duration_ms = (
            int((finished_at - started_at).total_seconds() * 1000) if started_at else None
        )
        job.task = job.task.model_copy(update={
            "status": "completed" if success else "failed",
            "error": None if success else (error or (outcome.error if outcome else None)),
            "result": outcome.result if outcome else None,
            "finished_at": finished_at,
            "duration_ms": duration_ms,
        })
        try:
            await self.task_store.update(job.task)
        except TaskNotFoundError:
            logger.warning("Task %s vanished from the store before finishing", job.task.id)
        finally:
            self._release(job.task)
            self._jobs.pop(job.task.id, None)
            if not job.done.done():
                job.done.set_result(job.task)

        logger.info(
            "Task %s for node %s %s after %d attempt(s)",
            job.task.id,
            job.task.node_id,
            job.task.status,
            job.task.attempts,
        )
