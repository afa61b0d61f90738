"""
Node orchestrator: drives one node run from input resolution to commit.

A run moves through RESOLVING -> INVOKING -> COMMITTING and ends SUCCEEDED
or FAILED. The orchestrator never raises; every failure is folded into the
returned NodeRunOutcome so the task queue can decide on retries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Mapping

from pydantic import BaseModel

from canvas_engine.errors import (
    InvalidNodeError,
    MissingRequiredInputError,
    NodeRunCancelled,
    ProcessorError,
    classify_exception,
)
from canvas_engine.db.repository import CanvasRepository
from canvas_engine.models.canvas import Node, NodeResult, Task
from canvas_engine.services.graph_resolver import CanvasContext, unconnected_required_inputs
from canvas_engine.services.processors.base import (
    ExecutionMode,
    NodeProcessor,
    ProcessorContext,
    ProcessorResult,
)
from canvas_engine.services.processors.registry import ProcessorRegistry

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    RESOLVING = "resolving"
    INVOKING = "invoking"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class NodeRunOutcome(BaseModel):
    task_id: str
    node_id: str
    state: RunState
    success: bool
    error: str | None = None
    transient: bool = False
    cancelled: bool = False
    related_node_id: str | None = None
    result: NodeResult | None = None
    execution_time_ms: int = 0


# ---------------------------------------------------------------------------
# Pre-flight checks
# ---------------------------------------------------------------------------


def check_required_inputs(context: CanvasContext, node: Node) -> None:
    """
    Fail fast before invoking a processor.

    Every required input must be connected and the node feeding it must not
    have failed on its latest run.
    """
    missing = unconnected_required_inputs(context, node.id)
    if missing:
        labels = ", ".join(f'"{h.label or h.id}"' for h in missing)
        raise MissingRequiredInputError(
            f"Required input {labels} is not connected",
            node_id=node.id,
        )

    required_handles = {h.id: h for h in context.handles_for(node.id, "Input") if h.required}
    for edge in context.incoming_edges(node.id):
        handle = required_handles.get(edge.target_handle_id)
        if handle is None:
            continue
        if context.get_node(edge.source) is None:
            raise MissingRequiredInputError(
                f"Source node {edge.source} for input \"{handle.label}\" does not exist",
                node_id=node.id,
                related_node_id=edge.source,
            )
        if edge.source in context.batch_results:
            continue
        latest = context.latest_task(edge.source)
        if latest is not None and latest.status == "failed":
            raise InvalidNodeError(
                f"Upstream node {edge.source} failed: {latest.error or 'unknown error'}",
                node_id=node.id,
                related_node_id=edge.source,
            )


def check_result(context: CanvasContext, node: Node, result: NodeResult | None) -> None:
    """A committed result may only tag items with the node's own handles."""
    if result is None:
        return
    if result.outputs and not 0 <= result.selected_output_index < len(result.outputs):
        raise ProcessorError(
            f"selected_output_index {result.selected_output_index} out of range"
        )
    own = {h.id for h in context.handles_for(node.id)}
    foreign = result.handle_ids() - own
    if foreign:
        raise ProcessorError(
            f"Result references handles not owned by node {node.id}: {sorted(foreign)}"
        )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class NodeOrchestrator:
    def __init__(
        self,
        repository: CanvasRepository,
        registry: ProcessorRegistry,
        timeout: float | None = None,
    ):
        self.repository = repository
        self.registry = registry
        self.timeout = timeout

    def execution_mode(self, node_type: str) -> ExecutionMode:
        """Where runs of a node type happen; unknown types go to the workers and fail there."""
        if not self.registry.has(node_type):
            return "remote"
        return self.registry.get_by_type(node_type).execution

    async def run(
        self,
        task: Task,
        abort: asyncio.Event | None = None,
        batch_results: Mapping[str, NodeResult] | None = None,
        skip_terminal: bool = False,
    ) -> NodeRunOutcome:
        """
        Execute the node a task points at.

        skip_terminal completes terminal nodes without invoking their
        processor; batch runs use it for terminal nodes nobody selected.
        """
        abort = abort or asyncio.Event()
        state = RunState.RESOLVING
        start = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - start) * 1000)

        ctx: ProcessorContext | None = None
        try:
            entities = await self.repository.get_canvas_entities(task.canvas_id)
            context = CanvasContext.from_entities(entities, batch_results)

            node = context.get_node(task.node_id)
            if node is None:
                raise InvalidNodeError(
                    f"Node {task.node_id} not found in canvas {task.canvas_id}",
                    node_id=task.node_id,
                )

            if skip_terminal and node.is_terminal:
                logger.info("Skipping processing for terminal node %s", node.id)
                return NodeRunOutcome(
                    task_id=task.id,
                    node_id=node.id,
                    state=RunState.SUCCEEDED,
                    success=True,
                    result=context.result_for(node.id),
                    execution_time_ms=elapsed(),
                )

            processor = self.registry.get_by_type(node.type)
            check_required_inputs(context, node)

            state = RunState.INVOKING
            logger.info("Processing node %s (type=%s, task=%s)", node.id, node.type, task.id)
            ctx = ProcessorContext(
                node=node,
                context=context,
                abort=abort,
                api_key=task.api_key,
                task=task,
            )
            processed = await self._invoke(processor, ctx)

            state = RunState.COMMITTING
            if not processed.success:
                logger.info("Node %s failed: %s", node.id, processed.error)
                return NodeRunOutcome(
                    task_id=task.id,
                    node_id=node.id,
                    state=RunState.FAILED,
                    success=False,
                    error=processed.error or "Processor reported failure",
                    result=processed.new_result,
                    execution_time_ms=elapsed(),
                )

            check_result(context, node, processed.new_result)
            if processed.new_result is not None and not node.is_transient:
                await self.repository.replace_node_result(node.id, processed.new_result)

            logger.info("Node %s completed in %dms", node.id, elapsed())
            return NodeRunOutcome(
                task_id=task.id,
                node_id=node.id,
                state=RunState.SUCCEEDED,
                success=True,
                result=processed.new_result,
                execution_time_ms=elapsed(),
            )

        except NodeRunCancelled as e:
            logger.info("Node %s run cancelled during %s", task.node_id, state.value)
            return NodeRunOutcome(
                task_id=task.id,
                node_id=task.node_id,
                state=RunState.FAILED,
                success=False,
                error=str(e) or "Run cancelled",
                cancelled=True,
                execution_time_ms=elapsed(),
            )

        except InvalidNodeError as e:
            logger.warning("Node %s cannot run: %s", task.node_id, e)
            return NodeRunOutcome(
                task_id=task.id,
                node_id=task.node_id,
                state=RunState.FAILED,
                success=False,
                error=str(e),
                related_node_id=e.related_node_id,
                execution_time_ms=elapsed(),
            )

        except Exception as e:
            transient = classify_exception(e)
            error_msg = str(e) or type(e).__name__
            if transient:
                logger.warning("Node %s transient failure during %s: %s", task.node_id, state.value, error_msg)
            else:
                logger.exception("Node %s failed during %s: %s", task.node_id, state.value, error_msg)
            return NodeRunOutcome(
                task_id=task.id,
                node_id=task.node_id,
                state=RunState.FAILED,
                success=False,
                error=error_msg,
                transient=transient,
                execution_time_ms=elapsed(),
            )

        finally:
            if ctx is not None:
                await ctx.run_cleanups()

    async def _invoke(self, processor: NodeProcessor, ctx: ProcessorContext) -> ProcessorResult:
        """Run process() racing the abort signal and the run timeout."""
        if ctx.aborted:
            raise NodeRunCancelled("Run cancelled before start")

        process_task = asyncio.ensure_future(processor.process(ctx))
        abort_task = asyncio.ensure_future(ctx.abort.wait())
        try:
            done, _ = await asyncio.wait(
                {process_task, abort_task},
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_task.cancel()
            if not process_task.done():
                process_task.cancel()
                await asyncio.gather(process_task, return_exceptions=True)

        if process_task in done:
            return process_task.result()
        if ctx.aborted:
            raise NodeRunCancelled("Run cancelled")
        raise asyncio.TimeoutError(f"Node {ctx.node.id} exceeded run timeout of {self.timeout}s")
