"""
Built-in node processors and the default registry wiring.
"""

from __future__ import annotations

from canvas_engine.services.processors.base import (
    NodeProcessor,
    PassthroughProcessor,
    ProcessorContext,
    ProcessorResult,
)
from canvas_engine.services.processors.generation import MediaGenerationProcessor, MediaProvider
from canvas_engine.services.processors.registry import ProcessorRegistry
from canvas_engine.services.processors.text import (
    LLMProcessor,
    TextMergerProcessor,
    TextProcessor,
    TextProvider,
)

PASSTHROUGH_TYPES = ("File", "Note", "Preview", "Export")


def build_default_registry(
    text_provider: TextProvider | None = None,
    media_provider: MediaProvider | None = None,
) -> ProcessorRegistry:
    """
    Register every built-in node type.

    Provider-backed types are only registered when their provider is given,
    so a canvas using them without a provider fails with UnknownNodeTypeError.
    """
    registry = ProcessorRegistry()
    registry.register("Text", TextProcessor())
    registry.register("TextMerger", TextMergerProcessor())

    passthrough = PassthroughProcessor()
    for node_type in PASSTHROUGH_TYPES:
        registry.register(node_type, passthrough)

    if text_provider is not None:
        registry.register("LLM", LLMProcessor(text_provider))
    if media_provider is not None:
        registry.register("ImageGen", MediaGenerationProcessor(media_provider, "Image"))
        registry.register("VideoGen", MediaGenerationProcessor(media_provider, "Video"))
        registry.register(
            "TextToSpeech",
            MediaGenerationProcessor(media_provider, "Audio", prompt_label="Text", reference_type=None),
        )
    return registry


__all__ = [
    "NodeProcessor",
    "PassthroughProcessor",
    "ProcessorContext",
    "ProcessorResult",
    "ProcessorRegistry",
    "MediaGenerationProcessor",
    "MediaProvider",
    "LLMProcessor",
    "TextMergerProcessor",
    "TextProcessor",
    "TextProvider",
    "build_default_registry",
]
