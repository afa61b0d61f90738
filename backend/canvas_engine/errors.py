"""
Error taxonomy for the graph execution core.

Permanent errors (bad graph state, rejected patches) are never retried.
ProcessorError carries a transient flag the task queue uses to decide
whether a run is retried with backoff.
"""

from __future__ import annotations

import asyncio

import httpx


class CanvasEngineError(Exception):
    """Base class for all canvas engine errors."""


class InvalidNodeError(CanvasEngineError):
    """Raised when a node cannot run because the graph around it is invalid."""

    def __init__(
        self,
        message: str,
        node_id: str | None = None,
        related_node_id: str | None = None,
    ):
        self.node_id = node_id
        self.related_node_id = related_node_id
        super().__init__(message)


class MissingRequiredInputError(InvalidNodeError):
    """Raised when a required input is unconnected or has no usable value."""


class UnknownNodeTypeError(InvalidNodeError):
    """Raised when no processor is registered for a node type."""


class NodeBusyError(CanvasEngineError):
    """Raised when a node already has a queued or running task."""

    def __init__(self, node_id: str, task_id: str | None = None):
        self.node_id = node_id
        self.task_id = task_id
        super().__init__(f"Node {node_id} already has an active task ({task_id})")


class ProcessorError(CanvasEngineError):
    """A failure surfaced from a processor's process() call."""

    def __init__(self, message: str, transient: bool = False):
        self.transient = transient
        super().__init__(message)


class NodeRunCancelled(CanvasEngineError):
    """Raised inside a run when its abort signal fires."""


class PatchRejectedError(CanvasEngineError):
    """Raised when a patch fails a test operation or would break an invariant."""

    def __init__(self, reason: str, operation_index: int | None = None):
        self.reason = reason
        self.operation_index = operation_index
        where = f" (operation {operation_index})" if operation_index is not None else ""
        super().__init__(f"Patch rejected{where}: {reason}")


class PatchStateError(CanvasEngineError):
    """Raised when a patch review does not fit the patch's current status."""


class LockContentionError(CanvasEngineError):
    """Raised when a mutation is attempted on a canvas locked by someone else."""

    def __init__(self, canvas_id: str, holder: str | None = None):
        self.canvas_id = canvas_id
        self.holder = holder
        super().__init__(f"Canvas {canvas_id} is locked by {holder or 'another session'}")


class CanvasNotFoundError(CanvasEngineError):
    pass


class TaskNotFoundError(CanvasEngineError):
    pass


class PatchNotFoundError(CanvasEngineError):
    pass


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

_TRANSIENT_STATUS_CODES = {408, 425, 429}


def is_transient_status(status_code: int) -> bool:
    """Rate limits and upstream 5xx responses are worth retrying."""
    return status_code in _TRANSIENT_STATUS_CODES or status_code >= 500


def classify_exception(exc: BaseException) -> bool:
    """
    Return True if the exception is a transient provider failure.

    Network errors, timeouts, rate limits and 5xx responses are transient.
    Validation errors, missing inputs and anything unrecognised are permanent.
    """
    if isinstance(exc, ProcessorError):
        return exc.transient
    if isinstance(exc, InvalidNodeError):
        return False
    if isinstance(exc, httpx.HTTPStatusError):
        return is_transient_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return False
