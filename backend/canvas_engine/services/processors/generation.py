"""
Media generation processors (image, video, speech).

Each run calls the provider once and appends the output as a new
generation, selecting it. Earlier generations stay on the result for
browsing; downstream nodes only ever see the selected one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict

from canvas_engine.models.canvas import DataType, NodeResult, Output, OutputItem
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


class MediaGenNodeConfig(BaseModel):
    model_config = ConfigDict(extra="allow", protected_namespaces=())

    model: str


class MediaProvider(Protocol):
    async def generate(
        self,
        *,
        media_type: DataType,
        model: str,
        prompt: str,
        references: list[Any],
        options: dict[str, Any],
        api_key: str | None,
        abort: asyncio.Event,
    ) -> Any:
        """Return the generated media payload (e.g. a stored file reference)."""
        ...


class MediaGenerationProcessor(NodeProcessor):
    execution = "remote"

    def __init__(
        self,
        provider: MediaProvider,
        media_type: DataType,
        prompt_label: str = "Prompt",
        reference_type: DataType | None = "Image",
    ):
        self.provider = provider
        self.media_type = media_type
        self.prompt_label = prompt_label
        self.reference_type = reference_type

    async def process(self, ctx: ProcessorContext) -> ProcessorResult:
        config = MediaGenNodeConfig.model_validate(ctx.node.config)
        node_id = ctx.node.id

        prompt = get_input_value(
            ctx.context, node_id, True, InputFilter(data_type="Text", label=self.prompt_label)
        )
        references: list[Any] = []
        if self.reference_type:
            references = [
                item.data
                for item in get_input_values_by_type(
                    ctx.context, node_id, InputFilter(data_type=self.reference_type)
                )
                if item is not None
            ]

        output_handle = get_output_handle(ctx.context, node_id, self.media_type)
        if output_handle is None:
            return ProcessorResult.fail("Output handle is missing.")

        logger.info(
            "%s generation for node %s: model=%s, %d references",
            self.media_type,
            node_id,
            config.model,
            len(references),
        )
        options = config.model_dump(exclude={"model"})
        data = await self.provider.generate(
            media_type=self.media_type,
            model=config.model,
            prompt=str(prompt.data) if prompt else "",
            references=references,
            options=options,
            api_key=ctx.api_key,
            abort=ctx.abort,
        )
        if data is None:
            return ProcessorResult.fail(f"No {self.media_type.lower()} generated")

        generation = Output(
            items=(OutputItem(type=self.media_type, data=data, output_handle_id=output_handle.id),)
        )
        previous = ctx.node.result or NodeResult()
        return ProcessorResult.ok(previous.with_generation(generation))
