"""
Embedding provider boundary.

The core never generates embeddings itself; it calls a provider at the few
places where a vector is missing. Provider calls are the only suspension
points in the core, so every call here takes a timeout and maps failures
to ProviderUnavailable. Retrying is left to the caller.
"""

import asyncio
import logging
import os
import time
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np
from openai import APIError, AsyncOpenAI

from sonagraph.exceptions import DimensionMismatch, ProviderUnavailable

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that turns text into a fixed-width vector."""

    dimension: int

    async def embed(self, text: str) -> List[float]:
        ...


class OpenAIEmbeddingProvider:
    """
    Embedding provider backed by the OpenAI embeddings API.

    text-embedding-3 models are asked for exactly ``dimension`` values, so
    their output matches the core's configured width without truncation.
    The client's own retry loop is disabled.
    """

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        dimension: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        """
        Args:
            api_key: OpenAI API key (defaults to OPENAI_API_KEY env var)
            model: Embedding model name
            dimension: Requested output width (defaults to the model's native width)
            client: Pre-built client, mainly for tests
        """
        self.client = client or AsyncOpenAI(
            api_key=api_key or os.getenv("OPENAI_API_KEY"),
            max_retries=0,
        )
        self.model = model
        self.dimension = dimension or self.MODEL_DIMENSIONS.get(model, 1536)

    def _request_args(self, texts: List[str]) -> dict:
        args = {"model": self.model, "input": texts}
        if self.model.startswith("text-embedding-3") and self.dimension != self.MODEL_DIMENSIONS.get(self.model):
            args["dimensions"] = self.dimension
        return args

    async def embed(self, text: str) -> List[float]:
        """
        Embed one text.

        Raises:
            ProviderUnavailable: On any API error
        """
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts in one request, preserving order."""
        start = time.time()
        try:
            response = await self.client.embeddings.create(**self._request_args(list(texts)))
        except APIError as e:
            raise ProviderUnavailable(f"OpenAI embeddings request failed: {e}") from e
        logger.debug("Embedded %d texts with %s in %.0fms", len(texts), self.model,
                     (time.time() - start) * 1000)
        return [item.embedding for item in response.data]


def _check(values, dimension: Optional[int]) -> np.ndarray:
    vector = np.asarray(values, dtype=np.float32).reshape(-1)
    if dimension is not None and vector.shape[0] != dimension:
        raise DimensionMismatch(dimension, vector.shape[0])
    return vector


async def embed_with_timeout(provider: EmbeddingProvider, text: str,
                             timeout: Optional[float] = None,
                             dimension: Optional[int] = None) -> np.ndarray:
    """
    Call ``provider.embed`` under a timeout.

    Args:
        provider: Embedding provider
        text: Text to embed
        timeout: Seconds to wait (None waits indefinitely)
        dimension: Expected vector width, checked when given

    Returns:
        np.ndarray: float32 vector

    Raises:
        ProviderUnavailable: On timeout or provider failure
        DimensionMismatch: If the provider returns the wrong width
    """
    try:
        values = await asyncio.wait_for(provider.embed(text), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Embedding provider timed out after %ss", timeout)
        raise ProviderUnavailable(f"Embedding provider timed out after {timeout}s")
    except ProviderUnavailable:
        raise
    except Exception as e:
        logger.warning("Embedding provider failed: %s", e)
        raise ProviderUnavailable(str(e)) from e
    return _check(values, dimension)


async def embed_all_with_timeout(provider: EmbeddingProvider, texts: Sequence[str],
                                 timeout: Optional[float] = None,
                                 dimension: Optional[int] = None) -> List[np.ndarray]:
    """
    Embed several texts concurrently under one overall timeout.

    Either every vector is returned or ProviderUnavailable is raised; a
    partial result is never returned.
    """
    if not texts:
        return []
    try:
        results = await asyncio.wait_for(
            asyncio.gather(*(provider.embed(t) for t in texts)),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Embedding provider timed out after %ss for %d texts", timeout, len(texts))
        raise ProviderUnavailable(f"Embedding provider timed out after {timeout}s")
    except ProviderUnavailable:
        raise
    except Exception as e:
        logger.warning("Embedding provider failed: %s", e)
        raise ProviderUnavailable(str(e)) from e
    return [_check(values, dimension) for values in results]
