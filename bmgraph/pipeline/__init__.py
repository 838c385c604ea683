"""Pipeline stages and the capability interfaces they depend on."""

from bmgraph.pipeline.interfaces import (
    ChatImage,
    ChatMessage,
    ChunkIndexerInterface,
    ContentExtractorInterface,
    ExtractedPage,
    ImageExtractorInterface,
    LLMProviderInterface,
    MessageQueueInterface,
    NoOpChunkIndexer,
)

__all__ = [
    "ChatImage",
    "ChatMessage",
    "ChunkIndexerInterface",
    "ContentExtractorInterface",
    "ExtractedPage",
    "ImageExtractorInterface",
    "LLMProviderInterface",
    "MessageQueueInterface",
    "NoOpChunkIndexer",
]
