"""
Patch applier: applies an ordered list of JSON-Patch operations to a
canvas graph as one atomic unit.

Operations run against a deep scratch copy of the graph document. If any
operation fails (including a failing "test"), or the resulting graph breaks
a structural invariant, the whole patch is rejected and the input graph is
left exactly as it was.

Paths address the keyed graph document:
    /nodes/<node_id>/config/join
    /handles/<handle_id>/data_types/-
    /edges/<edge_id>
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Iterable

from pydantic import ValidationError

from canvas_engine.errors import PatchRejectedError
from canvas_engine.models.canvas import CanvasGraph, data_types_compatible
from canvas_engine.models.node_registry import get_node_spec
from canvas_engine.models.patch import (
    AddOperation,
    CopyOperation,
    MoveOperation,
    PatchOperation,
    RemoveOperation,
    ReplaceOperation,
    TestOperation,
    parse_operations,
)

logger = logging.getLogger(__name__)

COLLECTIONS = ("nodes", "handles", "edges")

# Entity fields owned by storage or the orchestrator, never by a patch.
FORBIDDEN_FIELDS = frozenset({"id", "canvas_id", "result", "created_at", "updated_at"})

# Layout fields the canvas UI manages; patching them is allowed but flagged.
AUTO_MANAGED_FIELDS = frozenset({"position", "width", "height", "z_index"})


# ---------------------------------------------------------------------------
# JSON pointer helpers
# ---------------------------------------------------------------------------


def parse_pointer(path: str) -> list[str]:
    """Split a JSON pointer into unescaped reference tokens."""
    if path == "":
        return []
    if not path.startswith("/"):
        raise ValueError(f"Invalid JSON pointer: {path!r}")
    return [token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")]


def _list_index(container: list, token: str, allow_end: bool) -> int:
    if token == "-" and allow_end:
        return len(container)
    if not token.isdigit() or (len(token) > 1 and token.startswith("0")):
        raise ValueError(f"Invalid array index: {token!r}")
    index = int(token)
    upper = len(container) if allow_end else len(container) - 1
    if index > upper:
        raise ValueError(f"Array index out of range: {index}")
    return index


def _walk(document: Any, tokens: list[str]) -> Any:
    current = document
    for token in tokens:
        if isinstance(current, dict):
            if token not in current:
                raise ValueError(f"Path segment not found: {token!r}")
            current = current[token]
        elif isinstance(current, list):
            current = current[_list_index(current, token, allow_end=False)]
        else:
            raise ValueError(f"Cannot descend into {type(current).__name__} at {token!r}")
    return current


def json_equal(left: Any, right: Any) -> bool:
    """JSON equality: booleans and numbers are distinct, 1 and 1.0 are equal."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(json_equal(left[k], right[k]) for k in left)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(json_equal(a, b) for a, b in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right


def get_value(document: Any, tokens: list[str]) -> Any:
    return _walk(document, tokens)


def add_value(document: Any, tokens: list[str], value: Any) -> None:
    if not tokens:
        raise ValueError("Cannot add at the document root")
    parent = _walk(document, tokens[:-1])
    key = tokens[-1]
    if isinstance(parent, dict):
        parent[key] = value
    elif isinstance(parent, list):
        parent.insert(_list_index(parent, key, allow_end=True), value)
    else:
        raise ValueError(f"Cannot add into {type(parent).__name__}")


def remove_value(document: Any, tokens: list[str]) -> Any:
    if not tokens:
        raise ValueError("Cannot remove the document root")
    parent = _walk(document, tokens[:-1])
    key = tokens[-1]
    if isinstance(parent, dict):
        if key not in parent:
            raise ValueError(f"Path segment not found: {key!r}")
        return parent.pop(key)
    if isinstance(parent, list):
        return parent.pop(_list_index(parent, key, allow_end=False))
    raise ValueError(f"Cannot remove from {type(parent).__name__}")


def replace_value(document: Any, tokens: list[str], value: Any) -> None:
    if not tokens:
        raise ValueError("Cannot replace the document root")
    parent = _walk(document, tokens[:-1])
    key = tokens[-1]
    if isinstance(parent, dict):
        if key not in parent:
            raise ValueError(f"Path segment not found: {key!r}")
        parent[key] = value
    elif isinstance(parent, list):
        parent[_list_index(parent, key, allow_end=False)] = value
    else:
        raise ValueError(f"Cannot replace inside {type(parent).__name__}")


# ---------------------------------------------------------------------------
# Applier
# ---------------------------------------------------------------------------


class PatchApplier:
    def coerce(self, operations: Iterable[PatchOperation | dict[str, Any]]) -> list[PatchOperation]:
        """Accept parsed operations or wire dicts; shape errors reject the patch."""
        items = list(operations)
        if all(not isinstance(op, dict) for op in items):
            ops = items
        else:
            try:
                ops = parse_operations(
                    [op if isinstance(op, dict) else op.to_wire() for op in items]
                )
            except ValidationError as e:
                index = None
                errors = e.errors()
                if errors and errors[0]["loc"] and isinstance(errors[0]["loc"][0], int):
                    index = errors[0]["loc"][0]
                raise PatchRejectedError(f"Malformed operation: {errors[0]['msg'] if errors else e}", index)

        for index, op in enumerate(ops):
            try:
                parse_pointer(op.path)
                if isinstance(op, (MoveOperation, CopyOperation)):
                    parse_pointer(op.from_)
            except ValueError as e:
                raise PatchRejectedError(str(e), index)
        return ops

    def validate(self, operations: Iterable[PatchOperation | dict[str, Any]]) -> list[str]:
        """Warnings for operations that are legal but touch UI-managed fields."""
        warnings: list[str] = []
        for op in self.coerce(operations):
            tokens = parse_pointer(op.path)
            if any(t in AUTO_MANAGED_FIELDS for t in tokens[2:3]):
                warnings.append(f"Operation on auto-managed field: {op.path}")
        return warnings

    def apply(
        self,
        graph: CanvasGraph,
        operations: Iterable[PatchOperation | dict[str, Any]],
        canvas_id: str | None = None,
    ) -> CanvasGraph:
        """
        Return the graph produced by applying every operation in order.

        Raises PatchRejectedError with the failing operation index (or None
        for a post-apply invariant violation). The input graph is never
        modified.
        """
        ops = self.coerce(operations)
        if all(isinstance(op, TestOperation) for op in ops):
            document = graph.structural_document()
            for index, op in enumerate(ops):
                self._apply_one(document, op, index)
            return graph

        document = graph.structural_document()
        for index, op in enumerate(ops):
            self._apply_one(document, op, index)

        for key, node in document.get("nodes", {}).items():
            if isinstance(node, dict) and node.get("result") is not None:
                raise PatchRejectedError(f"Result of node {key} cannot be set by a patch")

        try:
            patched = CanvasGraph.from_document(document).with_results_from(graph)
        except ValidationError as e:
            first = e.errors()[0]
            location = "/".join(str(part) for part in first["loc"])
            raise PatchRejectedError(f"Invalid entity at /{location}: {first['msg']}")

        check_graph_invariants(patched, canvas_id=canvas_id)
        logger.debug("Applied %d patch operations", len(ops))
        return patched

    def _apply_one(self, document: dict[str, Any], op: PatchOperation, index: int) -> None:
        try:
            tokens = self._checked_tokens(op.path, mutating=not isinstance(op, TestOperation))
            if isinstance(op, AddOperation):
                add_value(document, tokens, copy.deepcopy(op.value))
            elif isinstance(op, RemoveOperation):
                remove_value(document, tokens)
            elif isinstance(op, ReplaceOperation):
                replace_value(document, tokens, copy.deepcopy(op.value))
            elif isinstance(op, MoveOperation):
                source = self._checked_tokens(op.from_, mutating=True)
                if tokens[: len(source)] == source and len(tokens) > len(source):
                    raise ValueError("Cannot move a value into one of its own children")
                add_value(document, tokens, remove_value(document, source))
            elif isinstance(op, CopyOperation):
                source = self._checked_tokens(op.from_, mutating=False)
                add_value(document, tokens, copy.deepcopy(get_value(document, source)))
            elif isinstance(op, TestOperation):
                actual = get_value(document, tokens)
                if not json_equal(actual, op.value):
                    raise ValueError(f"Test failed at {op.path}: expected {op.value!r}, found {actual!r}")
            else:
                raise ValueError(f"Unsupported operation {op!r}")
        except PatchRejectedError as e:
            raise PatchRejectedError(e.reason, index)
        except (ValueError, TypeError) as e:
            raise PatchRejectedError(str(e), index)

    def _checked_tokens(self, path: str, mutating: bool) -> list[str]:
        tokens = parse_pointer(path)
        if not mutating:
            return tokens
        if len(tokens) < 2 or tokens[0] not in COLLECTIONS:
            raise PatchRejectedError(f"Path must address an entity under /nodes, /handles or /edges: {path!r}")
        if len(tokens) >= 3 and tokens[2] in FORBIDDEN_FIELDS:
            raise PatchRejectedError(f"Field {tokens[2]!r} cannot be patched: {path!r}")
        return tokens


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


def check_graph_invariants(graph: CanvasGraph, canvas_id: str | None = None) -> None:
    """Raise PatchRejectedError if the graph is not structurally valid."""
    for collection in COLLECTIONS:
        for key, entity in getattr(graph, collection).items():
            if entity.id != key:
                raise PatchRejectedError(f"{collection} key {key!r} does not match entity id {entity.id!r}")

    for node in graph.nodes.values():
        if canvas_id is not None and node.canvas_id != canvas_id:
            raise PatchRejectedError(f"Node {node.id} belongs to canvas {node.canvas_id}, not {canvas_id}")

    handles_by_node: dict[str, list] = {node_id: [] for node_id in graph.nodes}
    for handle in graph.handles.values():
        if handle.node_id not in graph.nodes:
            raise PatchRejectedError(f"Handle {handle.id} references missing node {handle.node_id}")
        handles_by_node[handle.node_id].append(handle)

    for node in graph.nodes.values():
        spec = get_node_spec(node.type)
        if spec is None:
            continue
        owned = handles_by_node[node.id]
        declared = {(h.type, h.label) for h in spec.declared_handles()}
        present = {(h.type, h.label) for h in owned}
        missing = declared - present
        if missing:
            labels = ", ".join(f"{t} {label!r}" for t, label in sorted(missing))
            raise PatchRejectedError(f"Node {node.id} is missing declared handles: {labels}")
        for handle in owned:
            if (handle.type, handle.label) in declared:
                continue
            if handle.type != "Input" or not spec.variable_inputs:
                raise PatchRejectedError(
                    f"Node type {node.type} does not accept extra {handle.type.lower()} handle {handle.id}"
                )

    connected_inputs: set[str] = set()
    for edge in graph.edges.values():
        source = graph.handles.get(edge.source_handle_id)
        target = graph.handles.get(edge.target_handle_id)
        if edge.source not in graph.nodes or edge.target not in graph.nodes:
            raise PatchRejectedError(f"Edge {edge.id} references a missing node")
        if source is None or target is None:
            raise PatchRejectedError(f"Edge {edge.id} references a missing handle")
        if source.type != "Output" or source.node_id != edge.source:
            raise PatchRejectedError(f"Edge {edge.id} must start at an output handle of node {edge.source}")
        if target.type != "Input" or target.node_id != edge.target:
            raise PatchRejectedError(f"Edge {edge.id} must end at an input handle of node {edge.target}")
        if not data_types_compatible(source, target):
            raise PatchRejectedError(
                f"Edge {edge.id} connects incompatible types {source.data_types} -> {target.data_types}"
            )
        if target.id in connected_inputs:
            raise PatchRejectedError(f"Input handle {target.id} already has an incoming edge")
        connected_inputs.add(target.id)

    for node in graph.nodes.values():
        if node.result is None:
            continue
        own = {h.id for h in handles_by_node[node.id]}
        foreign = node.result.handle_ids() - own
        if foreign:
            raise PatchRejectedError(f"Result of node {node.id} references foreign handles {sorted(foreign)}")
