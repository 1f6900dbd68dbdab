"""Tests for environment-driven configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from memory_layer.core.config import Config
from memory_layer.core.exceptions import ConfigError

_ENV_KEYS = (
    "GEMINI_API_KEY",
    "GEMINI_MODEL",
    "GEMINI_EMBEDDING_MODEL",
    "MEMORY_BACKEND",
    "MEMORY_STORE_PATH",
    "MEMORY_EMBEDDING_DIMENSION",
    "MEMORY_TAG_MATCH",
    "MEMORY_USE_VECTOR_INDEX",
    "MEMORY_DEDUP_THRESHOLD",
    "MEMORY_UPDATE_THRESHOLD",
    "MEMORY_MIN_CONFIDENCE",
    "PROVIDER_TIMEOUT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        # setenv first so monkeypatch restores whatever load_dotenv writes
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


def test_defaults_without_env_file(tmp_path):
    config = Config.load(tmp_path / "missing.env")

    assert config.gemini_api_key is None
    assert config.gemini_model == "gemini-1.5-flash"
    assert config.embedding_model == "models/text-embedding-004"
    assert config.memory_backend == "file"
    assert config.memory_store_path == Path("data/memory/memories.json")
    assert config.embedding_dimension is None
    assert config.tag_match == "all"
    assert config.use_vector_index is True
    assert config.dedup_threshold == pytest.approx(0.95)
    assert config.update_threshold == pytest.approx(0.85)
    assert config.min_confidence == pytest.approx(0.5)
    assert config.provider_timeout == pytest.approx(30.0)
    assert config.log_level == "INFO"
    assert config.env_path is None


def test_env_file_values_are_loaded(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "GEMINI_API_KEY=abcd1234efgh5678",
                "GEMINI_MODEL=models/gemini-1.5-pro",
                "GEMINI_EMBEDDING_MODEL=text-embedding-004",
                "MEMORY_BACKEND=SQLite",
                "MEMORY_EMBEDDING_DIMENSION=768",
                "MEMORY_TAG_MATCH=any",
                "MEMORY_USE_VECTOR_INDEX=false",
                "LOG_LEVEL=debug",
            ]
        ),
        encoding="utf-8",
    )

    config = Config.load(env_file)

    assert config.gemini_api_key == "abcd1234efgh5678"
    assert config.gemini_model == "gemini-1.5-pro"
    assert config.embedding_model == "models/text-embedding-004"
    assert config.memory_backend == "sqlite"
    assert config.memory_store_path == Path("data/memory/memories.db")
    assert config.embedding_dimension == 768
    assert config.tag_match == "any"
    assert config.use_vector_index is False
    assert config.log_level == "DEBUG"
    assert config.env_path == str(env_file)
    assert config.as_dict()["gemini_api_key"] == "abcd***5678"


def test_override_env_wins(tmp_path):
    config = Config.load(
        tmp_path / "missing.env",
        override_env={"MEMORY_BACKEND": "kv", "MEMORY_STORE_PATH": str(tmp_path / "store.db")},
    )

    assert config.memory_backend == "kv"
    assert config.memory_store_path == tmp_path / "store.db"


def test_unparseable_float_falls_back_to_default(tmp_path, monkeypatch):
    monkeypatch.setenv("PROVIDER_TIMEOUT", "soon")

    assert Config.load(tmp_path / "missing.env").provider_timeout == pytest.approx(30.0)


@pytest.mark.parametrize(
    "key, value",
    [
        ("MEMORY_BACKEND", "redis"),
        ("MEMORY_TAG_MATCH", "some"),
        ("MEMORY_EMBEDDING_DIMENSION", "wide"),
        ("MEMORY_EMBEDDING_DIMENSION", "0"),
        ("MEMORY_UPDATE_THRESHOLD", "0.97"),
        ("MEMORY_MIN_CONFIDENCE", "1.5"),
    ],
)
def test_invalid_values_raise_config_error(tmp_path, monkeypatch, key, value):
    monkeypatch.setenv(key, value)

    with pytest.raises(ConfigError):
        Config.load(tmp_path / "missing.env")
