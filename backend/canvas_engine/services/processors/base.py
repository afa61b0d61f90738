"""
Node processor contract.

Every node type is handled by one NodeProcessor. A processor reads its
inputs through the graph resolver and reports its effect only through the
returned ProcessorResult; it never mutates the node or the canvas context.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel

from canvas_engine.models.canvas import Node, NodeResult, Task
from canvas_engine.services.graph_resolver import CanvasContext

logger = logging.getLogger(__name__)

ExecutionMode = Literal["local", "remote"]
CleanupCallback = Callable[[], Any] | Callable[[], Awaitable[Any]]


class ProcessorResult(BaseModel):
    success: bool
    error: str | None = None
    new_result: NodeResult | None = None

    @classmethod
    def ok(cls, new_result: NodeResult | None) -> "ProcessorResult":
        return cls(success=True, new_result=new_result)

    @classmethod
    def fail(cls, error: str) -> "ProcessorResult":
        return cls(success=False, error=error)


@dataclass
class ProcessorContext:
    node: Node
    context: CanvasContext
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    api_key: str | None = None
    task: Task | None = None
    _cleanups: list[CleanupCallback] = field(default_factory=list, repr=False)

    @property
    def aborted(self) -> bool:
        return self.abort.is_set()

    def register_cleanup(self, callback: CleanupCallback) -> None:
        """Register a transient resource to release once the run is over."""
        self._cleanups.append(callback)

    async def run_cleanups(self) -> None:
        while self._cleanups:
            callback = self._cleanups.pop()
            try:
                outcome = callback()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Cleanup callback failed for node %s", self.node.id)


class NodeProcessor(ABC):
    """
    Base class for processors.

    execution is "local" for cheap transforms, which the task queue runs
    inline in the caller with a single attempt, and "remote" for
    provider-backed work, which is handed to the worker pool and retried
    on transient failures.
    """

    execution: ExecutionMode = "local"

    @abstractmethod
    async def process(self, ctx: ProcessorContext) -> ProcessorResult:
        ...


class PassthroughProcessor(NodeProcessor):
    """Re-emits the node's existing result for nodes with no computation."""

    async def process(self, ctx: ProcessorContext) -> ProcessorResult:
        return ProcessorResult.ok(ctx.node.result)
