"""Embedding generation with provider fallback (Ollama -> Google -> hash)."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import threading
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import requests

from config import CONFIG

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_genai_client: GenAIClient | None = None


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


def get_genai_client() -> GenAIClient:
    """Get or create the GenAI client singleton (thread-safe)."""
    global _genai_client
    if _genai_client is None:
        with _lock:
            if _genai_client is None:  # Double-check after acquiring lock
                from google import genai

                _genai_client = genai.Client(api_key=_get_api_key())
    return _genai_client


def _normalize(embedding: np.ndarray) -> list[float]:
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


def _fit_dimension(embedding: np.ndarray, dim: int) -> np.ndarray:
    """Truncate or zero-pad a provider vector to the configured dimension."""
    if len(embedding) > dim:
        return embedding[:dim]
    if len(embedding) < dim:
        return np.concatenate([embedding, np.zeros(dim - len(embedding))])
    return embedding


def _compute_embedding_ollama(text: str, dim: int) -> list[float] | None:
    """Generate embedding using a local Ollama server."""
    try:
        response = requests.post(
            f"{CONFIG.ollama_base_url}/api/embeddings",
            json={"model": CONFIG.embedding_model, "prompt": text},
            timeout=30,
        )
        response.raise_for_status()
        embedding = np.array(response.json().get("embedding", []), dtype=float)
        if embedding.size == 0:
            return None
        return _normalize(_fit_dimension(embedding, dim))
    except (requests.RequestException, ValueError) as e:
        logger.warning("Ollama embedding error: %s", e)
        return None


def _compute_embedding_google(text: str, dim: int, task_type: str) -> list[float] | None:
    """Generate embedding using Google Genai API."""
    try:
        from google.genai import types

        client = get_genai_client()
        response = client.models.embed_content(
            model=CONFIG.embedding_model,
            contents=text,
            config=types.EmbedContentConfig(task_type=task_type, output_dimensionality=dim),
        )
        return _normalize(np.array(response.embeddings[0].values, dtype=float))
    except Exception as e:  # noqa: BLE001 - provider SDK raises assorted errors
        logger.warning("Google embedding error: %s", e)
        return None


def compute_embedding_hash(text: str, dim: int) -> list[float]:
    """Deterministic hash-based embedding.

    Not real semantic meaning, but identical text always maps to the same
    unit vector, which is enough for offline use and tests.
    """
    values: list[float] = []
    counter = 0
    while len(values) < dim:
        digest = hashlib.sha256(f"{counter}:{text}".encode()).digest()
        values.extend((b - 128) / 128.0 for b in digest)
        counter += 1
    return _normalize(np.array(values[:dim], dtype=float))


def _compute_embedding_sync(text: str, dim: int, task_type: str) -> list[float]:
    """Synchronous embedding computation with provider fallback chain."""
    provider = CONFIG.embedding_provider.lower()

    if provider == "hash":
        return compute_embedding_hash(text, dim)

    if provider == "ollama":
        result = _compute_embedding_ollama(text, dim)
        if result:
            return result
        logger.warning("Ollama failed, falling back to Google")

    result = _compute_embedding_google(text, dim, task_type)
    if result:
        return result

    logger.warning("Using hash fallback embedding (poor semantic quality)")
    return compute_embedding_hash(text, dim)


@lru_cache(maxsize=128)
def _compute_embedding_cached(text: str, dim: int, task_type: str) -> tuple[float, ...]:
    """Cached embedding computation to avoid redundant API calls."""
    return tuple(_compute_embedding_sync(text, dim, task_type))


async def get_embedding(
    text: str, dim: int | None = None, task_type: str = "SEMANTIC_SIMILARITY"
) -> list[float]:
    """Generate an embedding off the event loop, with LRU cache."""
    cached = await asyncio.to_thread(
        _compute_embedding_cached, text, dim or CONFIG.embedding_dim, task_type
    )
    return list(cached)
