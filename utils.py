"""Shared utility functions for tiered-memory."""

import hashlib
from datetime import datetime
from enum import Enum

FINGERPRINT_SEPARATOR = "\x1f"


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return datetime.now().isoformat()


def fingerprint(content: str, memory_type: str | Enum, origin_message_id: str | None) -> str:
    """Content-addressed identity of a memory, used only for dedup decisions.

    Embedding values never participate: two encodings of the same text by
    the same message are the same memory.

    Examples:
        fingerprint("Hi", "prompt", "42") == fingerprint("  Hi\\n", "prompt", "42")
        fingerprint("Hi", "prompt", "42") != fingerprint("Hi", "response", "42")
    """
    if isinstance(memory_type, Enum):
        memory_type = memory_type.value
    parts = [content.strip(), str(memory_type), "" if origin_message_id is None else str(origin_message_id)]
    return hashlib.sha256(FINGERPRINT_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


def dedup_rate(duplicates: int, total: int) -> float:
    """Fraction of candidates skipped as duplicates (0.0 when nothing was processed)."""
    return duplicates / total if total > 0 else 0.0


def cosine_distance_to_score(distance: float) -> float:
    """Map a cosine distance in [0, 2] to a similarity score in [0, 1]."""
    return min(1.0, max(0.0, 1.0 - distance / 2.0))


def cosine_to_score(cosine: float) -> float:
    """Map a raw cosine similarity in [-1, 1] to a similarity score in [0, 1]."""
    return min(1.0, max(0.0, (cosine + 1.0) / 2.0))


def euclidean_to_score(distance: float) -> float:
    """Map a euclidean distance between unit vectors to a similarity score in [0, 1].

    For unit vectors cos = 1 - d**2 / 2, so the score matches ``cosine_to_score``.
    """
    return min(1.0, max(0.0, 1.0 - distance * distance / 4.0))


def to_iso(value: object) -> str:
    """Normalize a stored timestamp to an ISO string.

    Numbers are epoch seconds, or epoch milliseconds when too large to be
    seconds. Anything else is kept as its string form.
    """
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds).isoformat()
        except (OverflowError, OSError, ValueError):
            return str(value)
    return str(value)
