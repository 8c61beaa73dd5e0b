"""Process configuration for agent-memory."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DECAY_HALF_LIFE_DAYS = 30.0


def parse_decay_half_life(value: str | None) -> float:
    """Parse MEMORY_DECAY_HALF_LIFE into days.

    Missing means the default of 30 days. Anything unparseable, NaN, zero or
    negative disables decay and is returned as 0.
    """
    if value is None:
        return DEFAULT_DECAY_HALF_LIFE_DAYS
    try:
        parsed = float(value)
    except ValueError:
        return 0.0
    if math.isnan(parsed) or parsed <= 0:
        return 0.0
    return parsed


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = Path(os.environ.get("MEMORY_DB_PATH", Path.home() / ".agent-memory" / "lancedb"))
    table_name: str = "memories"
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | google
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "all-minilm")
    google_embedding_model: str = os.environ.get("GOOGLE_EMBEDDING_MODEL", "gemini-embedding-001")
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "384"))
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    embedding_cache_size: int = 128
    decay_half_life_days: float = parse_decay_half_life(os.environ.get("MEMORY_DECAY_HALF_LIFE"))
    default_limit: int = 10
    max_limit: int = 100
    over_fetch_factor: int = 3  # candidates fetched per requested result
    rrf_k: int = 60
    native_fusion: bool = _env_flag("MEMORY_NATIVE_FUSION", True)
    enable_hardcopy: bool = _env_flag("ENABLE_HARDCOPY", False)
    hardcopy_path: Path | None = (
        Path(os.environ["HARDCOPY_PATH"]) if os.environ.get("HARDCOPY_PATH") else None
    )


CONFIG = Config()
