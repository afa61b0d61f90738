"""
Ordered structural edits using the JSON-Patch vocabulary.

Wire format is exact: every operation has "op" and "path"; add/replace/test
carry "value"; move/copy carry "from". Values stay untyped on the wire and
are validated against the entity they target when the patch is applied.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from canvas_engine.models.canvas import generate_id, utcnow


class _Op(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    path: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class AddOperation(_Op):
    op: Literal["add"] = "add"
    value: Any


class RemoveOperation(_Op):
    op: Literal["remove"] = "remove"


class ReplaceOperation(_Op):
    op: Literal["replace"] = "replace"
    value: Any


class MoveOperation(_Op):
    op: Literal["move"] = "move"
    from_: str = Field(alias="from")


class CopyOperation(_Op):
    op: Literal["copy"] = "copy"
    from_: str = Field(alias="from")


class TestOperation(_Op):
    __test__ = False  # not a pytest class

    op: Literal["test"] = "test"
    value: Any


PatchOperation = Annotated[
    Union[
        AddOperation,
        RemoveOperation,
        ReplaceOperation,
        MoveOperation,
        CopyOperation,
        TestOperation,
    ],
    Field(discriminator="op"),
]

_operations_adapter: TypeAdapter[list[PatchOperation]] = TypeAdapter(list[PatchOperation])


def parse_operations(raw: list[dict[str, Any]]) -> list[PatchOperation]:
    """Parse wire-format operations; raises pydantic.ValidationError on bad shapes."""
    return _operations_adapter.validate_python(raw)


PatchSource = Literal["user", "agent"]
# Agent patches start as pending proposals a user accepts or rejects.
PatchStatus = Literal["pending", "accepted", "rejected"]


class Patch(BaseModel):
    id: str = Field(default_factory=generate_id)
    canvas_id: str
    operations: list[PatchOperation]
    source: PatchSource = "user"
    author_id: str | None = None
    status: PatchStatus = "accepted"
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"
