"""
Maps node type strings to processor instances.

Built once at startup and injected into the orchestrator. Each node type
resolves to exactly one processor.
"""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from canvas_engine.errors import UnknownNodeTypeError
from canvas_engine.services.processors.base import NodeProcessor

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=type[NodeProcessor])


class ProcessorRegistry:
    def __init__(self) -> None:
        self._processors: dict[str, NodeProcessor] = {}

    def register(self, node_type: str, processor: NodeProcessor) -> None:
        if node_type in self._processors:
            logger.warning("Overwriting existing processor for node type: %s", node_type)
        self._processors[node_type] = processor

    def processor(self, node_type: str) -> Callable[[P], P]:
        """
        Class decorator that registers a no-argument processor for a node type.

        Usage:
            @registry.processor("MyNodeType")
            class MyProcessor(NodeProcessor):
                async def process(self, ctx): ...
        """
        def decorator(cls: P) -> P:
            self.register(node_type, cls())
            return cls
        return decorator

    def get_by_type(self, node_type: str) -> NodeProcessor:
        processor = self._processors.get(node_type)
        if processor is None:
            raise UnknownNodeTypeError(f"No processor for node type '{node_type}'")
        return processor

    def has(self, node_type: str) -> bool:
        return node_type in self._processors

    def types(self) -> list[str]:
        return sorted(self._processors)

    def __len__(self) -> int:
        return len(self._processors)
