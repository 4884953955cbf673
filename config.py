"""Process configuration for tiered-memory."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOME = Path.home() / ".tiered-memory"


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = Path(os.environ.get("TIERED_MEMORY_DB_PATH", DEFAULT_HOME / "lancedb-memory"))
    settings_path: Path = Path(
        os.environ.get("TIERED_MEMORY_SETTINGS_PATH", DEFAULT_HOME / "settings.json")
    )
    table_name: str = "memories"
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b")
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "1536"))
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "ollama")  # ollama | google | hash
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    qdrant_url: str = os.environ.get("QDRANT_URL", "http://localhost:6333")  # or ":memory:"
    qdrant_api_key: str | None = os.environ.get("QDRANT_API_KEY") or None
    qdrant_timeout: int = 60
    default_namespace: str = "default"
    default_metric: str = "cosine"
    batch_size: int = 100
    default_vector_limit: int = 1000
    search_overfetch: int = 3  # candidates fetched per requested result
    preview_chars: int = 100


CONFIG = Config()
