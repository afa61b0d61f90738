"""
Answers "what value is connected to input X of node N".

All functions are pure reads over a CanvasContext. Only the selected
generation of an upstream NodeResult is ever visible to a consumer:
changing selected_output_index changes what every downstream node sees on
its next run without recomputing anything upstream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from canvas_engine.errors import MissingRequiredInputError
from canvas_engine.models.canvas import (
    Canvas,
    CanvasEntities,
    DataType,
    Edge,
    Handle,
    Node,
    NodeResult,
    OutputItem,
    Task,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class CanvasContext:
    """
    Read-only view of one canvas used for input resolution.

    batch_results holds results produced earlier in the same run batch.
    Transient nodes never persist their result on the node, so downstream
    readers in the batch must see the freshly computed one instead.
    """

    def __init__(
        self,
        canvas: Canvas,
        nodes: list[Node],
        handles: list[Handle],
        edges: list[Edge],
        tasks: list[Task] | None = None,
        batch_results: Mapping[str, NodeResult] | None = None,
    ):
        self.canvas = canvas
        self._nodes = MappingProxyType({n.id: n for n in nodes})
        self._handles = MappingProxyType({h.id: h for h in handles})
        self._handle_rank = {h.id: index for index, h in enumerate(handles)}
        self.edges: tuple[Edge, ...] = tuple(edges)
        self.tasks: tuple[Task, ...] = tuple(tasks or ())
        self.batch_results = MappingProxyType(dict(batch_results or {}))

    @classmethod
    def from_entities(
        cls,
        entities: CanvasEntities,
        batch_results: Mapping[str, NodeResult] | None = None,
    ) -> "CanvasContext":
        return cls(
            canvas=entities.canvas,
            nodes=entities.nodes,
            handles=entities.handles,
            edges=entities.edges,
            tasks=entities.tasks,
            batch_results=batch_results,
        )

    @property
    def nodes(self) -> Mapping[str, Node]:
        return self._nodes

    @property
    def handles(self) -> Mapping[str, Handle]:
        return self._handles

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def get_handle(self, handle_id: str) -> Handle | None:
        return self._handles.get(handle_id)

    def handles_for(self, node_id: str, handle_type: str | None = None) -> list[Handle]:
        handles = [
            h for h in self._handles.values()
            if h.node_id == node_id and (handle_type is None or h.type == handle_type)
        ]
        return sorted(handles, key=self.handle_sort_key)

    def handle_sort_key(self, handle: Handle) -> tuple[int, int]:
        return (handle.order, self._handle_rank.get(handle.id, 0))

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def latest_task(self, node_id: str) -> Task | None:
        tasks = [t for t in self.tasks if t.node_id == node_id]
        if not tasks:
            return None
        return max(tasks, key=lambda t: t.created_at)

    def result_for(self, node_id: str) -> NodeResult | None:
        if node_id in self.batch_results:
            return self.batch_results[node_id]
        node = self._nodes.get(node_id)
        return node.result if node else None


@dataclass(frozen=True)
class InputFilter:
    data_type: DataType | None = None
    label: str | None = None

    def describe(self) -> str:
        text = f"{self.data_type or 'any'} input"
        if self.label:
            text += f' with label "{self.label}"'
        return text


@dataclass(frozen=True)
class ResolvedInput:
    handle: Handle | None
    value: OutputItem | None
    edge: Edge | None = field(default=None, compare=False)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _matching_edges(context: CanvasContext, node_id: str, flt: InputFilter) -> list[Edge]:
    """Incoming edges whose target handle passes the filter, in handle order."""
    matched: list[tuple[Handle, Edge]] = []
    for edge in context.incoming_edges(node_id):
        handle = context.get_handle(edge.target_handle_id)
        if handle is None:
            continue
        if flt.data_type and not handle.accepts(flt.data_type):
            continue
        if flt.label and handle.label != flt.label:
            continue
        matched.append((handle, edge))
    matched.sort(key=lambda pair: context.handle_sort_key(pair[0]))
    return [edge for _, edge in matched]


def resolve_source_value(context: CanvasContext, edge: Edge) -> OutputItem | None:
    """Value flowing through an edge: the selected generation's item for its source handle."""
    source_handle = context.get_handle(edge.source_handle_id)
    if source_handle is None:
        raise MissingRequiredInputError(
            f"Source handle {edge.source_handle_id} missing",
            node_id=edge.target,
            related_node_id=edge.source,
        )
    if context.get_node(source_handle.node_id) is None:
        raise MissingRequiredInputError(
            f"Source node {source_handle.node_id} missing",
            node_id=edge.target,
            related_node_id=source_handle.node_id,
        )

    result = context.result_for(source_handle.node_id)
    if result is None:
        return None
    selected = result.selected()
    if selected is None:
        return None
    return selected.item_for_handle(edge.source_handle_id)


def _upstream_failed(context: CanvasContext, node_id: str) -> bool:
    if node_id in context.batch_results:
        return False
    task = context.latest_task(node_id)
    return task is not None and task.status == "failed"


def get_input_value(
    context: CanvasContext,
    node_id: str,
    required: bool = True,
    flt: InputFilter | None = None,
) -> OutputItem | None:
    """
    Resolve the single value connected to the input matching the filter.

    Returns None for an optional input with nothing usable. Raises
    MissingRequiredInputError for a required one that is unconnected, has no
    value, or whose source node's last run failed.
    """
    flt = flt or InputFilter()
    incoming = _matching_edges(context, node_id, flt)

    if not incoming:
        if required:
            raise MissingRequiredInputError(
                f"Required {flt.describe()} not connected",
                node_id=node_id,
            )
        return None

    if len(incoming) > 1:
        logger.warning(
            "Multiple %s edges connected to node %s. Using the first one.",
            flt.describe(),
            node_id,
        )

    edge = incoming[0]
    if required and _upstream_failed(context, edge.source):
        raise MissingRequiredInputError(
            f"Upstream node {edge.source} feeding {flt.describe()} failed on its last run",
            node_id=node_id,
            related_node_id=edge.source,
        )

    value = resolve_source_value(context, edge)
    if value is None and required:
        raise MissingRequiredInputError(
            f"No value received from {flt.describe()}",
            node_id=node_id,
            related_node_id=edge.source,
        )
    return value


def get_input_values_by_type(
    context: CanvasContext,
    node_id: str,
    flt: InputFilter | None = None,
) -> list[OutputItem | None]:
    """All values connected to matching inputs, ordered by input handle order."""
    edges = _matching_edges(context, node_id, flt or InputFilter())
    return [resolve_source_value(context, edge) for edge in edges]


def get_all_output_handles(context: CanvasContext, node_id: str) -> list[Handle]:
    return context.handles_for(node_id, "Output")


def get_output_handle(
    context: CanvasContext,
    node_id: str,
    data_type: DataType | None = None,
) -> Handle | None:
    """First output handle of the node that can carry the given data type."""
    for handle in get_all_output_handles(context, node_id):
        if data_type is None or handle.accepts(data_type):
            return handle
    return None


def get_all_input_values_with_handle(
    context: CanvasContext,
    node_id: str,
) -> list[ResolvedInput]:
    """Every incoming edge's value paired with the input handle it lands on."""
    resolved = [
        ResolvedInput(
            handle=context.get_handle(edge.target_handle_id),
            value=resolve_source_value(context, edge),
            edge=edge,
        )
        for edge in context.incoming_edges(node_id)
    ]
    resolved.sort(
        key=lambda r: context.handle_sort_key(r.handle) if r.handle else (0, 0)
    )
    return resolved


def unconnected_required_inputs(context: CanvasContext, node_id: str) -> list[Handle]:
    """Required input handles of the node with no incoming edge."""
    connected = {e.target_handle_id for e in context.incoming_edges(node_id)}
    return [
        h for h in context.handles_for(node_id, "Input")
        if h.required and h.id not in connected
    ]
