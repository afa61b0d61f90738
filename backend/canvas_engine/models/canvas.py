"""
Canvas data model: the typed graph and its execution history.

A Canvas owns Nodes, Handles and Edges. Nodes carry their last computed
NodeResult; Tasks record each run attempt. NodeResult and its parts are
frozen: a result is never edited in place, a new one is built and swapped in.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


DataType = Literal["Text", "Number", "Boolean", "Image", "Video", "Audio", "Any"]
HandleType = Literal["Input", "Output"]
TaskStatus = Literal["queued", "running", "completed", "failed"]

ACTIVE_TASK_STATUSES: frozenset[str] = frozenset({"queued", "running"})


def generate_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class OutputItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: DataType
    data: Any = None
    output_handle_id: str | None = None


class Output(BaseModel):
    """One generation: the items a single processor invocation produced."""

    model_config = ConfigDict(frozen=True)

    items: tuple[OutputItem, ...] = ()

    def item_for_handle(self, handle_id: str) -> OutputItem | None:
        return next((i for i in self.items if i.output_handle_id == handle_id), None)


class NodeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outputs: tuple[Output, ...] = ()
    selected_output_index: int = 0

    @model_validator(mode="after")
    def _check_selected_index(self) -> "NodeResult":
        if self.outputs and not 0 <= self.selected_output_index < len(self.outputs):
            raise ValueError(
                f"selected_output_index {self.selected_output_index} out of range "
                f"for {len(self.outputs)} outputs"
            )
        return self

    @classmethod
    def single(cls, items: list[OutputItem]) -> "NodeResult":
        return cls(outputs=(Output(items=tuple(items)),), selected_output_index=0)

    def selected(self) -> Output | None:
        """The live generation downstream consumers see, or None if empty."""
        if not self.outputs:
            return None
        return self.outputs[self.selected_output_index]

    def with_generation(self, output: Output) -> "NodeResult":
        """Append a generation and make it the selected one."""
        outputs = self.outputs + (output,)
        return NodeResult(outputs=outputs, selected_output_index=len(outputs) - 1)

    def with_selected(self, index: int) -> "NodeResult":
        return NodeResult(outputs=self.outputs, selected_output_index=index)

    def handle_ids(self) -> set[str]:
        return {
            item.output_handle_id
            for output in self.outputs
            for item in output.items
            if item.output_handle_id is not None
        }


# ---------------------------------------------------------------------------
# Graph entities
# ---------------------------------------------------------------------------


class Canvas(BaseModel):
    id: str = Field(default_factory=generate_id)
    user_id: str | None = None
    name: str = "Untitled"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Node(BaseModel):
    id: str = Field(default_factory=generate_id)
    canvas_id: str
    type: str
    name: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    result: NodeResult | None = None
    is_terminal: bool = False
    is_transient: bool = False
    position: dict[str, float] | None = None


class Handle(BaseModel):
    id: str = Field(default_factory=generate_id)
    node_id: str
    type: HandleType
    data_types: list[DataType] = Field(min_length=1)
    label: str = ""
    order: int = 0
    required: bool = False

    def accepts(self, data_type: DataType) -> bool:
        return data_type in self.data_types or "Any" in self.data_types


class Edge(BaseModel):
    id: str = Field(default_factory=generate_id)
    source: str
    target: str
    source_handle_id: str
    target_handle_id: str


def data_types_compatible(source: Handle, target: Handle) -> bool:
    """An edge is valid when both ends share a data type; Any matches all."""
    if "Any" in source.data_types or "Any" in target.data_types:
        return True
    return bool(set(source.data_types) & set(target.data_types))


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


class Task(BaseModel):
    id: str = Field(default_factory=generate_id)
    node_id: str
    canvas_id: str
    status: TaskStatus = "queued"
    api_key: str | None = Field(default=None, repr=False)
    batch_id: str | None = None
    error: str | None = None
    result: NodeResult | None = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TASK_STATUSES


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


class CanvasEntities(BaseModel):
    """Everything the persistence layer returns for one canvas."""

    canvas: Canvas
    nodes: list[Node] = Field(default_factory=list)
    handles: list[Handle] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)

    def graph(self) -> "CanvasGraph":
        return CanvasGraph(
            nodes={n.id: n for n in self.nodes},
            handles={h.id: h for h in self.handles},
            edges={e.id: e for e in self.edges},
        )


class CanvasGraph(BaseModel):
    """
    Structural state of a canvas, keyed by id.

    This is the document patches address: /nodes/<id>/config/<key>,
    /edges/<id>/target_handle_id, /handles/<id>/data_types/-, ...
    """

    nodes: dict[str, Node] = Field(default_factory=dict)
    handles: dict[str, Handle] = Field(default_factory=dict)
    edges: dict[str, Edge] = Field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def structural_document(self) -> dict[str, Any]:
        """The document without node results, which only the orchestrator writes."""
        return self.model_dump(mode="json", exclude={"nodes": {"__all__": {"result"}}})

    def with_results_from(self, other: "CanvasGraph") -> "CanvasGraph":
        """Copy of this graph carrying the results `other` holds for the same node ids."""
        nodes = {
            node_id: node.model_copy(
                update={"result": other.nodes[node_id].result if node_id in other.nodes else None}
            )
            for node_id, node in self.nodes.items()
        }
        return self.model_copy(update={"nodes": nodes})

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "CanvasGraph":
        return cls.model_validate(document)
