"""
Shared pytest fixtures for agent-memory tests.

Provides a deterministic mock embedder so no model or network is needed,
and a real LanceDB store in an isolated temporary directory.
"""

import math

import pytest

from config import Config
from memory_store import LanceMemoryStore


class MockEmbedder:
    """
    Deterministic mock embedding provider for testing.

    Accumulates character codes into a fixed-width vector and normalizes it.
    Records every embedded text so tests can assert on provider calls.
    """

    def __init__(self, dimensions: int = 384):
        self._dimensions = dimensions
        self.calls: list[str] = []
        self.batch_calls = 0

    async def initialize(self) -> None:
        pass

    async def embed(self, text: str, task_type: str = "SEMANTIC_SIMILARITY") -> list[float]:
        self.calls.append(text)
        return self._vector(text)

    async def embed_batch(self, texts: list[str], task_type: str = "SEMANTIC_SIMILARITY") -> list[list[float]]:
        self.batch_calls += 1
        self.calls.extend(texts)
        return [self._vector(t) for t in texts]

    def dimensions(self) -> int:
        return self._dimensions

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self._dimensions
        for i, ch in enumerate(text):
            vector[i % self._dimensions] += ord(ch) / 1000
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm > 0 else vector


def make_config(tmp_path, **overrides) -> Config:
    """Isolated config; pins the env-derived settings tests depend on."""
    settings = {
        "db_path": tmp_path / "lancedb-memory-test",
        "decay_half_life_days": 30.0,
        "native_fusion": True,
        "enable_hardcopy": False,
        "hardcopy_path": None,
    }
    settings.update(overrides)
    return Config(**settings)


@pytest.fixture
def embedder():
    return MockEmbedder()


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
async def store(embedder, config):
    """Initialized LanceMemoryStore over an empty database."""
    memory_store = LanceMemoryStore(embedder, config)
    await memory_store.initialize()
    return memory_store
