"""
Text processors: Text source, TextMerger and LLM.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel

from canvas_engine.models.canvas import NodeResult, OutputItem
from canvas_engine.services.graph_resolver import (
    InputFilter,
    get_input_value,
    get_input_values_by_type,
    get_output_handle,
)
from canvas_engine.services.processors.base import (
    NodeProcessor,
    ProcessorContext,
    ProcessorResult,
)

logger = logging.getLogger(__name__)


class TextNodeConfig(BaseModel):
    content: str = ""


class TextMergerNodeConfig(BaseModel):
    join: str = "\n"


class LLMNodeConfig(BaseModel):
    model: str
    temperature: float = 0.0


def join_text(values: list[Any], separator: str) -> str:
    """Join non-empty text segments in order."""
    return separator.join(str(v) for v in values if v is not None and str(v) != "")


def _text_result(ctx: ProcessorContext, text: str) -> ProcessorResult:
    handle = get_output_handle(ctx.context, ctx.node.id, "Text")
    if handle is None:
        return ProcessorResult.fail("Output handle is missing.")
    return ProcessorResult.ok(
        NodeResult.single([OutputItem(type="Text", data=text, output_handle_id=handle.id)])
    )


class TextProcessor(NodeProcessor):
    """Emits the text typed into the node's config."""

    async def process(self, ctx: ProcessorContext) -> ProcessorResult:
        config = TextNodeConfig.model_validate(ctx.node.config)
        return _text_result(ctx, config.content)


class TextMergerProcessor(NodeProcessor):
    """Joins every connected Text input, in input handle order."""

    async def process(self, ctx: ProcessorContext) -> ProcessorResult:
        config = TextMergerNodeConfig.model_validate(ctx.node.config)
        values = get_input_values_by_type(ctx.context, ctx.node.id, InputFilter(data_type="Text"))
        merged = join_text([v.data if v else None for v in values], config.join)
        return _text_result(ctx, merged)


class TextProvider(Protocol):
    async def generate_text(
        self,
        *,
        model: str,
        prompt: str,
        system_prompt: str | None = None,
        images: list[Any] | None = None,
        temperature: float = 0.0,
        api_key: str | None = None,
    ) -> str:
        ...


class LLMProcessor(NodeProcessor):
    execution = "remote"

    def __init__(self, provider: TextProvider):
        self.provider = provider

    async def process(self, ctx: ProcessorContext) -> ProcessorResult:
        config = LLMNodeConfig.model_validate(ctx.node.config)

        prompt = get_input_value(
            ctx.context, ctx.node.id, True, InputFilter(data_type="Text", label="Prompt")
        )
        system_prompt = get_input_value(
            ctx.context, ctx.node.id, False, InputFilter(data_type="Text", label="System Prompt")
        )
        images = get_input_values_by_type(ctx.context, ctx.node.id, InputFilter(data_type="Image"))

        logger.info(
            "LLM node %s: model=%s, %d reference images",
            ctx.node.id,
            config.model,
            sum(1 for i in images if i),
        )
        text = await self.provider.generate_text(
            model=config.model,
            prompt=str(prompt.data) if prompt else "",
            system_prompt=str(system_prompt.data) if system_prompt else None,
            images=[i.data for i in images if i],
            temperature=config.temperature,
            api_key=ctx.api_key,
        )
        return _text_result(ctx, text)
