"""
Node type registry: static metadata for every node type.

Declares the handles each node type always carries, whether it accepts
user-added (variable) input handles, and its terminal/transient flags.
Processors live in services.processors; this module only describes shape.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from canvas_engine.models.canvas import DataType, Handle, HandleType, Node, generate_id


class HandleSpec(BaseModel):
    type: HandleType
    label: str
    data_types: list[DataType]
    required: bool = False
    order: int = 0


class NodeTypeSpec(BaseModel):
    inputs: list[HandleSpec] = Field(default_factory=list)
    outputs: list[HandleSpec] = Field(default_factory=list)
    variable_inputs: bool = False
    is_terminal: bool = False
    is_transient: bool = False
    default_config: dict[str, Any] = Field(default_factory=dict)

    def declared_handles(self) -> list[HandleSpec]:
        return [*self.inputs, *self.outputs]


def _in(label: str, *data_types: DataType, required: bool = False, order: int = 0) -> HandleSpec:
    return HandleSpec(type="Input", label=label, data_types=list(data_types), required=required, order=order)


def _out(label: str, *data_types: DataType, order: int = 0) -> HandleSpec:
    return HandleSpec(type="Output", label=label, data_types=list(data_types), order=order)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
# Keys match the node `type` values stored on canvas nodes.

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    # ---- Source / utility nodes ----
    "Text": NodeTypeSpec(
        outputs=[_out("Text", "Text")],
        default_config={"content": ""},
    ),
    "File": NodeTypeSpec(
        outputs=[_out("File", "Image", "Video", "Audio")],
    ),
    "Note": NodeTypeSpec(),

    # ---- Transform nodes ----
    "TextMerger": NodeTypeSpec(
        inputs=[
            _in("Text 1", "Text", order=0),
            _in("Text 2", "Text", order=1),
        ],
        outputs=[_out("Text", "Text")],
        variable_inputs=True,
        default_config={"join": "\n"},
    ),

    # ---- Generation nodes ----
    "LLM": NodeTypeSpec(
        inputs=[
            _in("Prompt", "Text", required=True, order=0),
            _in("System Prompt", "Text", order=1),
            _in("Image", "Image", order=2),
        ],
        outputs=[_out("Text", "Text")],
        default_config={"model": "gemini-2.5-flash", "temperature": 0.0},
    ),
    "ImageGen": NodeTypeSpec(
        inputs=[
            _in("Prompt", "Text", required=True, order=0),
            _in("Image", "Image", order=1),
        ],
        outputs=[_out("Image", "Image")],
        variable_inputs=True,
        default_config={"model": "gemini-2.5-flash-image", "aspect_ratio": "1:1"},
    ),
    "VideoGen": NodeTypeSpec(
        inputs=[
            _in("Prompt", "Text", required=True, order=0),
            _in("Image", "Image", order=1),
        ],
        outputs=[_out("Video", "Video")],
        default_config={"model": "veo-3.1-generate-preview", "aspect_ratio": "16:9", "duration_seconds": 8},
    ),
    "TextToSpeech": NodeTypeSpec(
        inputs=[_in("Text", "Text", required=True, order=0)],
        outputs=[_out("Audio", "Audio")],
        default_config={"model": "gemini-2.5-flash-preview-tts", "voice": "Kore"},
    ),

    # ---- Terminal / display nodes ----
    "Preview": NodeTypeSpec(
        inputs=[_in("Input", "Image", "Video", "Audio", "Text", required=True)],
        is_terminal=True,
        is_transient=True,
    ),
    "Export": NodeTypeSpec(
        inputs=[_in("Input", "Image", "Video", "Audio", "Text", required=True)],
        is_terminal=True,
    ),
}


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(node_type)


def create_node(
    canvas_id: str,
    node_type: str,
    *,
    node_id: str | None = None,
    name: str | None = None,
    config: dict[str, Any] | None = None,
) -> tuple[Node, list[Handle]]:
    """
    Instantiate a node and its declared handles from the registry.

    Raises KeyError for unknown node types.
    """
    spec = NODE_REGISTRY[node_type]
    node = Node(
        id=node_id or generate_id(),
        canvas_id=canvas_id,
        type=node_type,
        name=name or node_type,
        config={**spec.default_config, **(config or {})},
        is_terminal=spec.is_terminal,
        is_transient=spec.is_transient,
    )
    handles = [
        Handle(
            id=f"{node.id}-{handle_spec.type.lower()}-{index}",
            node_id=node.id,
            type=handle_spec.type,
            data_types=list(handle_spec.data_types),
            label=handle_spec.label,
            order=handle_spec.order,
            required=handle_spec.required if handle_spec.type == "Input" else False,
        )
        for index, handle_spec in enumerate(spec.declared_handles())
    ]
    return node, handles
