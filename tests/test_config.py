"""
Unit tests for environment-derived settings.
"""

import os

import pytest

from sonagraph.config import DEFAULT_DIMENSIONS, DEFAULT_EMBEDDING_MODEL, CoreSettings

SETTINGS_VARS = ("DATABASE_URL", "OPENAI_API_KEY")


@pytest.fixture
def clean_env(monkeypatch):
    """Isolated os.environ without any settings variables."""
    env = {k: v for k, v in os.environ.items()
           if not k.startswith("SONAGRAPH_") and k not in SETTINGS_VARS}
    monkeypatch.setattr(os, "environ", env)
    return env


@pytest.fixture
def empty_env_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text("")
    return path


class TestCoreSettings:
    """Test CoreSettings.from_env."""

    def test_defaults(self, clean_env, empty_env_file):
        settings = CoreSettings.from_env(empty_env_file)

        assert settings.dimensions == DEFAULT_DIMENSIONS
        assert settings.embedding_model == DEFAULT_EMBEDDING_MODEL
        assert settings.database_url is None

    def test_reads_environment(self, clean_env, empty_env_file):
        clean_env.update({
            "SONAGRAPH_DIMENSIONS": "384",
            "SONAGRAPH_OUTPUT_DIM": "512",
            "DATABASE_URL": "postgresql://localhost/fallback",
            "SONAGRAPH_SEED": "7",
        })

        settings = CoreSettings.from_env(empty_env_file)

        assert settings.dimensions == 384
        assert settings.output_dim == 512
        assert settings.database_url == "postgresql://localhost/fallback"
        assert settings.seed == 7

    def test_specific_database_url_wins(self, clean_env, empty_env_file):
        clean_env["DATABASE_URL"] = "postgresql://localhost/fallback"
        clean_env["SONAGRAPH_DATABASE_URL"] = "postgresql://localhost/core"

        assert CoreSettings.from_env(empty_env_file).database_url == "postgresql://localhost/core"

    def test_reads_env_file(self, clean_env, tmp_path):
        path = tmp_path / "core.env"
        path.write_text("SONAGRAPH_DIMENSIONS=64\nOPENAI_API_KEY=sk-test\n")

        settings = CoreSettings.from_env(path)

        assert settings.dimensions == 64
        assert settings.openai_api_key == "sk-test"

    def test_invalid_integer(self, clean_env, empty_env_file):
        clean_env["SONAGRAPH_DIMENSIONS"] = "wide"
        with pytest.raises(ValueError):
            CoreSettings.from_env(empty_env_file)
