"""Embedding provider boundary."""

from sonagraph.ingestion.embeddings import (
    EmbeddingProvider,
    OpenAIEmbeddingProvider,
    embed_all_with_timeout,
    embed_with_timeout,
)

__all__ = [
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "embed_all_with_timeout",
    "embed_with_timeout",
]
