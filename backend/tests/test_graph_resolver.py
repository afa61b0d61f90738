"""
Tests for graph input resolution.

Covers selected-generation resolution, required/optional inputs, upstream
failure detection, batch results and handle ordering.
"""

import pytest

from canvas_fixtures import CanvasBuilder, generations

from canvas_engine.errors import MissingRequiredInputError
from canvas_engine.models.canvas import Handle, Task
from canvas_engine.services.graph_resolver import (
    InputFilter,
    get_all_input_values_with_handle,
    get_all_output_handles,
    get_input_value,
    get_input_values_by_type,
    get_output_handle,
    unconnected_required_inputs,
)


def image_into_llm() -> CanvasBuilder:
    builder = CanvasBuilder()
    builder.node("ImageGen", "img")
    builder.node("LLM", "llm")
    builder.connect("img", "llm", "Image")
    return builder


class TestSelectedGeneration:
    def test_only_selected_generation_is_visible(self):
        builder = image_into_llm()
        out = builder.output("img").id

        for k in range(3):
            builder.set_result("img", generations(out, "Image", "gen-0", "gen-1", "gen-2", selected=k))
            value = get_input_value(builder.context(), "llm", True, InputFilter(data_type="Image"))
            assert value.data == f"gen-{k}"
            assert value.output_handle_id == out

    def test_changing_selection_changes_downstream_value(self):
        builder = image_into_llm()
        out = builder.output("img").id
        result = generations(out, "Image", "a.png", "b.png")
        builder.set_result("img", result)

        first = get_input_value(builder.context(), "llm", False, InputFilter(data_type="Image"))
        builder.set_result("img", result.with_selected(1))
        second = get_input_value(builder.context(), "llm", False, InputFilter(data_type="Image"))

        assert first.data == "a.png"
        assert second.data == "b.png"

    def test_batch_result_wins_over_persisted_result(self):
        builder = image_into_llm()
        out = builder.output("img").id
        builder.set_result("img", generations(out, "Image", "stale.png"))

        context = builder.context(batch_results={"img": generations(out, "Image", "fresh.png")})
        value = get_input_value(context, "llm", True, InputFilter(data_type="Image"))

        assert value.data == "fresh.png"


class TestRequiredInputs:
    def test_unconnected_required_input_raises(self):
        builder = CanvasBuilder()
        builder.node("LLM", "llm")

        with pytest.raises(MissingRequiredInputError) as exc_info:
            get_input_value(builder.context(), "llm", True, InputFilter(data_type="Text", label="Prompt"))

        assert exc_info.value.node_id == "llm"
        assert "Prompt" in str(exc_info.value)

    def test_unconnected_optional_input_returns_none(self):
        builder = CanvasBuilder()
        builder.node("LLM", "llm")

        value = get_input_value(
            builder.context(), "llm", False, InputFilter(data_type="Text", label="System Prompt")
        )

        assert value is None

    def test_connected_without_value_raises_when_required(self):
        builder = CanvasBuilder()
        builder.node("Text", "prompt")
        builder.node("LLM", "llm")
        builder.connect("prompt", "llm", "Prompt")

        with pytest.raises(MissingRequiredInputError) as exc_info:
            get_input_value(builder.context(), "llm", True, InputFilter(data_type="Text", label="Prompt"))

        assert exc_info.value.related_node_id == "prompt"

    def test_failed_upstream_task_raises_with_related_node(self):
        builder = CanvasBuilder()
        builder.node("Text", "prompt")
        builder.node("LLM", "llm")
        builder.connect("prompt", "llm", "Prompt")
        builder.set_result("prompt", generations(builder.output("prompt").id, "Text", "old"))
        failed = Task(node_id="prompt", canvas_id="canvas-1", status="failed", error="boom")

        with pytest.raises(MissingRequiredInputError) as exc_info:
            get_input_value(
                builder.context(tasks=[failed]), "llm", True, InputFilter(data_type="Text", label="Prompt")
            )

        assert exc_info.value.related_node_id == "prompt"

    def test_unconnected_required_inputs_lists_missing_handles(self):
        builder = CanvasBuilder()
        builder.node("Text", "prompt")
        builder.node("ImageGen", "img")

        missing = unconnected_required_inputs(builder.context(), "img")
        assert [h.label for h in missing] == ["Prompt"]

        builder.connect("prompt", "img", "Prompt")
        assert unconnected_required_inputs(builder.context(), "img") == []


class TestMultipleInputs:
    def test_values_follow_input_handle_order(self):
        builder = CanvasBuilder()
        builder.node("Text", "first")
        builder.node("Text", "second")
        builder.node("TextMerger", "merge")
        # Connected in reverse order on purpose
        builder.connect("second", "merge", "Text 2")
        builder.connect("first", "merge", "Text 1")
        builder.set_result("first", generations(builder.output("first").id, "Text", "one"))
        builder.set_result("second", generations(builder.output("second").id, "Text", "two"))

        values = get_input_values_by_type(builder.context(), "merge", InputFilter(data_type="Text"))

        assert [v.data for v in values] == ["one", "two"]

    def test_all_input_values_with_handle(self):
        builder = CanvasBuilder()
        builder.node("Text", "prompt")
        builder.node("ImageGen", "ref")
        builder.node("ImageGen", "img")
        builder.connect("prompt", "img", "Prompt")
        builder.connect("ref", "img", "Image")
        builder.set_result("prompt", generations(builder.output("prompt").id, "Text", "a cat"))

        resolved = get_all_input_values_with_handle(builder.context(), "img")

        assert [r.handle.label for r in resolved] == ["Prompt", "Image"]
        assert resolved[0].value.data == "a cat"
        assert resolved[1].value is None

    def test_any_input_handle_matches_typed_filter(self):
        builder = CanvasBuilder()
        builder.node("Text", "t")
        builder.custom_node(
            "Inspector",
            "inspect",
            [Handle(id="inspect-in", node_id="inspect", type="Input", data_types=["Any"], label="Input")],
        )
        builder.connect("t", "inspect", "Input")
        builder.set_result("t", generations(builder.output("t").id, "Text", "anything"))

        value = get_input_value(builder.context(), "inspect", True, InputFilter(data_type="Text"))

        assert value.data == "anything"

    def test_output_handle_lookup(self):
        builder = CanvasBuilder()
        builder.node("File", "file")
        context = builder.context()

        handles = get_all_output_handles(context, "file")

        assert len(handles) == 1
        assert get_output_handle(context, "file", "Video").id == handles[0].id
        assert get_output_handle(context, "file", "Text") is None
