"""Adaptive retrieval: query classification, threshold resolution, similarity search.

Questions widen recall by lowering the similarity cutoff; statements tighten
precision by raising it. The blend between the configured base threshold and
the per-kind factor is a named policy so it can be swapped and tested alone.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from errors import ConfigurationError, StoreUnavailable
from models import FACTOR_RANGE, QueryKind, RetrievalSettings, ScoredMemory
from primary_store import PrimaryStore
from secondary_store import ArchiveMatch, SecondaryStore

logger = logging.getLogger(__name__)

# =============================================================================
# Embedding Classifier
# =============================================================================

INTERROGATIVE_LEADS = (
    "what", "who", "whom", "whose", "which", "when", "where", "why", "how",
    "can", "could", "would", "should", "will", "shall", "may", "might",
    "do", "does", "did", "is", "are", "was", "were", "am", "have", "has", "had",
)
_LEADING_INTERROGATIVE = re.compile(rf"^(?:{'|'.join(INTERROGATIVE_LEADS)})\b", re.IGNORECASE)


def classify_query(text: str) -> QueryKind:
    """Label a query as a question or a statement.

    A question mark anywhere, or a leading wh-word / auxiliary verb, marks a
    question. Empty input carries no evidence of interrogation.
    """
    stripped = text.strip()
    if not stripped:
        return QueryKind.STATEMENT
    if "?" in stripped or _LEADING_INTERROGATIVE.match(stripped):
        return QueryKind.QUESTION
    return QueryKind.STATEMENT


# =============================================================================
# Threshold Resolver
# =============================================================================

ThresholdPolicy = Callable[[float, float, float, QueryKind], float]


def blend_policy(base: float, question_factor: float, statement_factor: float, kind: QueryKind) -> float:
    """Move halfway from the base toward the factor, never past the base the wrong way."""
    if kind is QueryKind.QUESTION:
        return min(base, (base + question_factor) / 2)
    return max(base, (base + statement_factor) / 2)


def minmax_policy(base: float, question_factor: float, statement_factor: float, kind: QueryKind) -> float:
    """Use the factor itself as the cutoff when it is more permissive (questions) or stricter (statements)."""
    if kind is QueryKind.QUESTION:
        return min(base, question_factor)
    return max(base, statement_factor)


THRESHOLD_POLICIES: dict[str, ThresholdPolicy] = {
    "blend": blend_policy,
    "minmax": minmax_policy,
}


def resolve_threshold(
    base: float,
    question_factor: float,
    statement_factor: float,
    kind: QueryKind,
    policy: str | ThresholdPolicy = "blend",
) -> float:
    """Effective similarity cutoff for a query of the given kind, in [0, 1]."""
    if not 0.0 <= base <= 1.0:
        raise ConfigurationError(f"similarity_threshold must be in [0, 1], got {base}")
    low, high = FACTOR_RANGE
    for name, factor in (("question", question_factor), ("statement", statement_factor)):
        if not low <= factor <= high:
            raise ConfigurationError(f"{name}_threshold_factor must be in [{low}, {high}], got {factor}")
    if isinstance(policy, str):
        if policy not in THRESHOLD_POLICIES:
            raise ConfigurationError(f"Unknown threshold policy '{policy}'. Valid: {sorted(THRESHOLD_POLICIES)}")
        policy = THRESHOLD_POLICIES[policy]
    return min(1.0, max(0.0, policy(base, question_factor, statement_factor, kind)))


def effective_threshold(settings: RetrievalSettings, kind: QueryKind) -> float:
    return resolve_threshold(
        settings.similarity_threshold,
        settings.question_threshold_factor,
        settings.statement_threshold_factor,
        kind,
        settings.threshold_policy,
    )


# =============================================================================
# Similarity Search Engine
# =============================================================================


def rank_candidates(candidates: list[ScoredMemory], threshold: float, context_size: int) -> list[ScoredMemory]:
    """Keep candidates at or above the threshold, best first, newest first on ties."""
    eligible = [c for c in candidates if c.score >= threshold]
    # Two stable sorts: recency as the secondary key, score as the primary
    eligible.sort(key=lambda c: c.memory.timestamp, reverse=True)
    eligible.sort(key=lambda c: c.score, reverse=True)
    return eligible[:context_size]


class SimilaritySearch:
    """Filters and reranks what the primary store's cosine operator returns."""

    def __init__(self, store: PrimaryStore, overfetch: int = 3):
        self.store = store
        self.overfetch = max(1, overfetch)

    async def search(self, query_embedding: list[float], threshold: float, context_size: int) -> list[ScoredMemory]:
        """Ranked memories scoring >= threshold, at most ``context_size`` of them.

        Raises StoreUnavailable if the primary store cannot be queried.
        """
        if context_size <= 0:
            return []
        candidates = await asyncio.to_thread(self.store.nearest, query_embedding, context_size * self.overfetch)
        return rank_candidates(candidates, threshold, context_size)


@dataclass(frozen=True, slots=True)
class Retrieval:
    kind: QueryKind
    threshold: float
    memories: list[ScoredMemory]
    degraded: bool = False


async def retrieve(
    engine: SimilaritySearch,
    query: str,
    query_embedding: list[float],
    settings: RetrievalSettings,
) -> Retrieval:
    """Classify, resolve the cutoff, and search, degrading to no context if the store is down."""
    kind = classify_query(query)
    threshold = effective_threshold(settings, kind)
    try:
        memories = await engine.search(query_embedding, threshold, settings.context_size)
    except StoreUnavailable as e:
        logger.warning("Retrieval degraded to empty context: %s", e)
        return Retrieval(kind, threshold, [], degraded=True)
    logger.debug("Retrieved %d memories for %s (threshold %.3f)", len(memories), kind.value, threshold)
    return Retrieval(kind, threshold, memories)


async def search_archive(
    store: SecondaryStore,
    query: str,
    query_embedding: list[float],
    settings: RetrievalSettings,
) -> list[ArchiveMatch]:
    """Search the bound secondary index with the same adaptive cutoff."""
    if not settings.is_enabled or not settings.active_index_name:
        return []
    threshold = effective_threshold(settings, classify_query(query))
    matches = await asyncio.to_thread(
        store.query, settings.active_index_name, settings.namespace, query_embedding, settings.context_size
    )
    return [m for m in matches if m.score >= threshold]


def format_context(memories: list[ScoredMemory]) -> str:
    """Context block handed to the prompt builder; empty when nothing matched."""
    if not memories:
        return ""
    lines = ["Here are some relevant past interactions:", ""]
    for i, scored in enumerate(memories, 1):
        lines.append(f"[Memory {i}] {scored.memory.content}")
        lines.append("")
    return "\n".join(lines).rstrip()
