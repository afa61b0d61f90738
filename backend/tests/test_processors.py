"""
Tests for the processor registry and the built-in processors.
"""

import pytest

from canvas_fixtures import CanvasBuilder, FakeMediaProvider, FakeTextProvider, generations

from canvas_engine.errors import MissingRequiredInputError, UnknownNodeTypeError
from canvas_engine.services.processors import build_default_registry
from canvas_engine.services.processors.base import (
    NodeProcessor,
    PassthroughProcessor,
    ProcessorContext,
    ProcessorResult,
)
from canvas_engine.services.processors.generation import MediaGenerationProcessor
from canvas_engine.services.processors.registry import ProcessorRegistry
from canvas_engine.services.processors.text import (
    LLMProcessor,
    TextMergerProcessor,
    TextProcessor,
    join_text,
)


def ctx_for(builder: CanvasBuilder, node_id: str) -> ProcessorContext:
    context = builder.context()
    return ProcessorContext(node=context.get_node(node_id), context=context)


class TestProcessorRegistry:
    def test_decorator_registers_instance(self):
        registry = ProcessorRegistry()

        @registry.processor("Custom")
        class CustomProcessor(NodeProcessor):
            async def process(self, ctx):
                return ProcessorResult.ok(None)

        assert registry.has("Custom")
        assert isinstance(registry.get_by_type("Custom"), CustomProcessor)

    def test_unknown_type_raises(self):
        registry = ProcessorRegistry()

        with pytest.raises(UnknownNodeTypeError):
            registry.get_by_type("Nope")

    def test_register_overwrites(self):
        registry = ProcessorRegistry()
        first, second = PassthroughProcessor(), PassthroughProcessor()
        registry.register("Note", first)
        registry.register("Note", second)

        assert registry.get_by_type("Note") is second
        assert len(registry) == 1

    def test_default_registry_only_wires_provider_types_when_given(self):
        bare = build_default_registry()
        full = build_default_registry(FakeTextProvider(), FakeMediaProvider())

        assert bare.types() == ["Export", "File", "Note", "Preview", "Text", "TextMerger"]
        for node_type in ("LLM", "ImageGen", "VideoGen", "TextToSpeech"):
            assert not bare.has(node_type)
            assert full.has(node_type)


class TestTextProcessors:
    def test_join_text_skips_empty_segments(self):
        assert join_text(["a", "", None, "b"], " ") == "a b"

    @pytest.mark.asyncio
    async def test_text_processor_emits_content(self):
        builder = CanvasBuilder()
        builder.node("Text", "t", content="hello")

        result = await TextProcessor().process(ctx_for(builder, "t"))

        assert result.success
        item = result.new_result.selected().items[0]
        assert item.data == "hello"
        assert item.output_handle_id == builder.output("t").id

    @pytest.mark.asyncio
    async def test_text_merger_joins_with_configured_separator(self):
        builder = CanvasBuilder()
        builder.node("Text", "a")
        builder.node("Text", "b")
        builder.node("TextMerger", "m", join=" | ")
        builder.connect("a", "m", "Text 1")
        builder.connect("b", "m", "Text 2")
        builder.set_result("a", generations(builder.output("a").id, "Text", "left"))
        builder.set_result("b", generations(builder.output("b").id, "Text", "right"))

        result = await TextMergerProcessor().process(ctx_for(builder, "m"))

        assert result.new_result.selected().items[0].data == "left | right"

    @pytest.mark.asyncio
    async def test_text_merger_default_join_is_newline(self):
        builder = CanvasBuilder()
        builder.node("Text", "a")
        builder.node("Text", "b")
        builder.node("TextMerger", "m")
        builder.connect("a", "m", "Text 1")
        builder.connect("b", "m", "Text 2")
        builder.set_result("a", generations(builder.output("a").id, "Text", "x"))
        builder.set_result("b", generations(builder.output("b").id, "Text", "y"))

        result = await TextMergerProcessor().process(ctx_for(builder, "m"))

        assert result.new_result.selected().items[0].data == "x\ny"

    @pytest.mark.asyncio
    async def test_llm_requires_prompt(self):
        builder = CanvasBuilder()
        builder.node("LLM", "llm")

        with pytest.raises(MissingRequiredInputError):
            await LLMProcessor(FakeTextProvider()).process(ctx_for(builder, "llm"))

    @pytest.mark.asyncio
    async def test_llm_passes_prompt_and_system_prompt(self):
        provider = FakeTextProvider("answer")
        builder = CanvasBuilder()
        builder.node("Text", "p")
        builder.node("Text", "s")
        builder.node("LLM", "llm")
        builder.connect("p", "llm", "Prompt")
        builder.connect("s", "llm", "System Prompt")
        builder.set_result("p", generations(builder.output("p").id, "Text", "question"))
        builder.set_result("s", generations(builder.output("s").id, "Text", "be brief"))

        result = await LLMProcessor(provider).process(ctx_for(builder, "llm"))

        assert result.new_result.selected().items[0].data == "answer: question"
        assert provider.calls[0]["system_prompt"] == "be brief"


class TestMediaGeneration:
    @pytest.mark.asyncio
    async def test_each_run_appends_and_selects_new_generation(self):
        provider = FakeMediaProvider()
        processor = MediaGenerationProcessor(provider, "Image")
        builder = CanvasBuilder()
        builder.node("Text", "p")
        builder.node("ImageGen", "img")
        builder.connect("p", "img", "Prompt")
        builder.set_result("p", generations(builder.output("p").id, "Text", "a fox"))

        first = await processor.process(ctx_for(builder, "img"))
        builder.set_result("img", first.new_result)
        second = await processor.process(ctx_for(builder, "img"))

        assert len(second.new_result.outputs) == 2
        assert second.new_result.selected_output_index == 1
        assert second.new_result.selected().items[0].data == "image-2.bin"
        assert provider.calls[0]["prompt"] == "a fox"

    @pytest.mark.asyncio
    async def test_no_media_returned_fails(self):
        class EmptyProvider(FakeMediaProvider):
            async def generate(self, **kwargs):
                return None

        builder = CanvasBuilder()
        builder.node("Text", "p")
        builder.node("ImageGen", "img")
        builder.connect("p", "img", "Prompt")
        builder.set_result("p", generations(builder.output("p").id, "Text", "a fox"))

        result = await MediaGenerationProcessor(EmptyProvider(), "Image").process(ctx_for(builder, "img"))

        assert not result.success
        assert result.error == "No image generated"


class TestPassthrough:
    @pytest.mark.asyncio
    async def test_reemits_existing_result(self):
        builder = CanvasBuilder()
        builder.node("File", "f")
        existing = generations(builder.output("f").id, "Image", "upload.png")
        builder.set_result("f", existing)

        result = await PassthroughProcessor().process(ctx_for(builder, "f"))

        assert result.success
        assert result.new_result == existing

    @pytest.mark.asyncio
    async def test_cleanups_run_in_reverse_order(self):
        builder = CanvasBuilder()
        builder.node("Note", "n")
        ctx = ctx_for(builder, "n")
        order = []

        async def async_cleanup():
            order.append("async")

        ctx.register_cleanup(lambda: order.append("sync"))
        ctx.register_cleanup(async_cleanup)
        await ctx.run_cleanups()

        assert order == ["async", "sync"]
