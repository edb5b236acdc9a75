"""
Process-level settings for the retrieval core.

Component behaviour is configured with explicit dataclasses passed to each
component. This module only covers the values that come from the
environment: dimensionality, the persistence DSN and the embedding provider.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv


DEFAULT_DIMENSIONS = 768
DEFAULT_OUTPUT_DIM = 1024
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class CoreSettings:
    """
    Environment-derived settings.

    Attributes:
        dimensions: Width of raw embeddings handled by the core
        output_dim: Width of enhanced embeddings
        database_url: PostgreSQL DSN for the snapshot store (optional)
        openai_api_key: API key for the OpenAI embedding provider (optional)
        embedding_model: OpenAI embedding model name
        seed: Seed for every deterministic random initialisation
    """
    dimensions: int = DEFAULT_DIMENSIONS
    output_dim: int = DEFAULT_OUTPUT_DIM
    database_url: Optional[str] = None
    openai_api_key: Optional[str] = None
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    seed: int = 0

    @classmethod
    def from_env(cls, env_file: Union[str, Path, None] = None) -> "CoreSettings":
        """
        Build settings from the environment, loading a .env file first.

        Args:
            env_file: Optional explicit .env path (defaults to dotenv's search)

        Returns:
            CoreSettings populated from SONAGRAPH_* variables
        """
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()

        return cls(
            dimensions=_env_int("SONAGRAPH_DIMENSIONS", DEFAULT_DIMENSIONS),
            output_dim=_env_int("SONAGRAPH_OUTPUT_DIM", DEFAULT_OUTPUT_DIM),
            database_url=os.getenv("SONAGRAPH_DATABASE_URL") or os.getenv("DATABASE_URL"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            embedding_model=os.getenv("SONAGRAPH_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL),
            seed=_env_int("SONAGRAPH_SEED", 0),
        )
