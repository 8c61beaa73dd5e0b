"""Text embedding provider: Ollama, Google Gemini fallback, hash last resort."""

from __future__ import annotations

import asyncio
import hashlib
import os
import sys
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import requests

from config import CONFIG, Config

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient


def _get_api_key() -> str:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip()
    raise ValueError(
        "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
    )


def fit_vector(values, dimensions: int) -> list[float]:
    """Truncate or zero-pad to `dimensions`, then normalize to unit length."""
    embedding = np.asarray(values, dtype=np.float64)
    if len(embedding) > dimensions:
        embedding = embedding[:dimensions]
    elif len(embedding) < dimensions:
        embedding = np.concatenate([embedding, np.zeros(dimensions - len(embedding))])
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def hash_embedding(text: str, dimensions: int) -> list[float]:
    """
    Last-resort fallback: deterministic hash-based embedding.
    Not real semantic meaning, but ensures memory can be saved.
    """
    digest = hashlib.shake_256(text.encode()).digest(dimensions)
    return fit_vector([(b - 128) / 128.0 for b in digest], dimensions)


class Embedder:
    """Maps text to fixed-width, unit-normalized vectors."""

    def __init__(self, config: Config = CONFIG):
        self.config = config
        self._genai_client: GenAIClient | None = None
        self._lock = threading.Lock()
        self._embed_cached = lru_cache(maxsize=config.embedding_cache_size)(self._embed_one)

    def dimensions(self) -> int:
        return self.config.embedding_dim

    async def initialize(self) -> None:
        """Warm up the provider so the first real call doesn't pay the model load."""
        await self.embed("warmup")

    async def embed(self, text: str, task_type: str = "SEMANTIC_SIMILARITY") -> list[float]:
        cached = await asyncio.to_thread(self._embed_cached, text, task_type)
        return list(cached)

    async def embed_batch(
        self, texts: list[str], task_type: str = "SEMANTIC_SIMILARITY"
    ) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_many, texts, task_type)

    # -- providers ----------------------------------------------------------

    def _get_genai_client(self) -> GenAIClient:
        if self._genai_client is None:
            with self._lock:
                if self._genai_client is None:  # Double-check after acquiring lock
                    from google import genai

                    self._genai_client = genai.Client(api_key=_get_api_key())
        return self._genai_client

    def _ollama(self, texts: list[str]) -> list[list[float]] | None:
        """One /api/embeddings request per text; any failure fails the whole batch."""
        try:
            vectors = []
            for text in texts:
                response = requests.post(
                    f"{self.config.ollama_base_url}/api/embeddings",
                    json={"model": self.config.embedding_model, "prompt": text},
                    timeout=30,
                )
                response.raise_for_status()
                embedding = response.json().get("embedding")
                if not embedding:
                    raise ValueError("response carried no embedding")
                vectors.append(fit_vector(embedding, self.dimensions()))
            return vectors
        except Exception as e:
            print(f"[agent-memory] Ollama embedding error: {e}", file=sys.stderr)
            return None

    def _google(self, texts: list[str], task_type: str) -> list[list[float]] | None:
        try:
            from google.genai import types

            client = self._get_genai_client()
            response = client.models.embed_content(
                model=self.config.google_embedding_model,
                contents=texts,
                config=types.EmbedContentConfig(
                    task_type=task_type, output_dimensionality=self.dimensions()
                ),
            )
            return [fit_vector(e.values, self.dimensions()) for e in response.embeddings]
        except Exception as e:
            print(f"[agent-memory] Google embedding error: {e}", file=sys.stderr)
            return None

    def _embed_many(self, texts: list[str], task_type: str) -> list[list[float]]:
        """Provider fallback chain. Never fails; the hash fallback always answers."""
        if self.config.embedding_provider.lower() == "ollama":
            result = self._ollama(texts)
            if result:
                return result
            print("[agent-memory] Ollama failed, falling back to Google", file=sys.stderr)

        result = self._google(texts, task_type)
        if result:
            return result

        print("[agent-memory] Using hash fallback embedding (poor semantic quality)", file=sys.stderr)
        return [hash_embedding(text, self.dimensions()) for text in texts]

    def _embed_one(self, text: str, task_type: str) -> tuple[float, ...]:
        return tuple(self._embed_many([text], task_type)[0])
