"""Shared data models for tiered-memory."""

import uuid
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Literal

from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, ConfigDict, Field

from utils import dedup_rate, now_iso

FACTOR_RANGE = (0.55, 0.95)
CONTEXT_SIZE_RANGE = (1, 10)

# Settings that bind the secondary index; frozen while a sync/hydrate runs
INDEX_BINDING_FIELDS = frozenset({"active_index_name", "namespace", "is_enabled"})


class MemoryType(str, Enum):
    PROMPT = "prompt"
    RESPONSE = "response"


class QueryKind(str, Enum):
    QUESTION = "question"
    STATEMENT = "statement"


class Memory(BaseModel):
    """A retrievable unit of conversation text with its embedding."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: str
    type: MemoryType
    embedding: list[float]
    origin_message_id: str | None = None  # weak reference into the message log
    timestamp: str = Field(default_factory=now_iso)
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScoredMemory:
    memory: Memory
    score: float  # normalized cosine similarity in [0, 1]


@lru_cache(maxsize=None)
def memory_table_schema(dim: int) -> type[LanceModel]:
    """LanceDB table schema for a given embedding dimension.

    IMPORTANT: Any changes to this schema require migration of existing data.
    """

    class MemoryRow(LanceModel):
        id: str  # UUID hex
        content: str
        vector: Vector(dim)  # type: ignore[valid-type]
        type: str
        origin_message_id: str | None = None
        fingerprint: str
        timestamp: str
        metadata: str  # JSON object as string

    return MemoryRow


class RetrievalSettings(BaseModel):
    """Immutable settings snapshot read by every retrieval call.

    Updates never mutate an instance; the settings store swaps in a new one.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    context_size: int = Field(5, ge=CONTEXT_SIZE_RANGE[0], le=CONTEXT_SIZE_RANGE[1])
    similarity_threshold: float = Field(0.75, ge=0.0, le=1.0)
    question_threshold_factor: float = Field(0.70, ge=FACTOR_RANGE[0], le=FACTOR_RANGE[1])
    statement_threshold_factor: float = Field(0.85, ge=FACTOR_RANGE[0], le=FACTOR_RANGE[1])
    threshold_policy: Literal["blend", "minmax"] = "blend"
    active_index_name: str | None = None
    namespace: str = Field("default", min_length=1)
    is_enabled: bool = False
    last_sync_timestamp: str | None = None


class SyncResult(BaseModel):
    index_name: str
    namespace: str
    pushed_count: int = 0
    duplicate_count: int = 0
    failed_count: int = 0
    total_vectors_in_index: int = 0
    timestamp: str = Field(default_factory=now_iso)

    @property
    def dedup_rate(self) -> float:
        return dedup_rate(self.duplicate_count, self.pushed_count + self.duplicate_count)

    def summary(self) -> dict[str, Any]:
        return {**self.model_dump(), "dedup_rate": self.dedup_rate}


class HydrateResult(BaseModel):
    index_name: str
    namespace: str
    restored_count: int = 0
    duplicate_count: int = 0
    failed_count: int = 0
    vectors_processed: int = 0
    timestamp: str = Field(default_factory=now_iso)

    @property
    def dedup_rate(self) -> float:
        return dedup_rate(self.duplicate_count, self.vectors_processed)

    def summary(self) -> dict[str, Any]:
        return {**self.model_dump(), "dedup_rate": self.dedup_rate}


class OperationMetrics(BaseModel):
    """Cumulative dedup accounting across sync and hydrate runs."""

    last_sync: SyncResult | None = None
    last_hydrate: HydrateResult | None = None
    total_processed: int = 0
    total_duplicates: int = 0
    was_reset: bool = False
    reset_timestamp: str | None = None

    @property
    def cumulative_dedup_rate(self) -> float:
        return dedup_rate(self.total_duplicates, self.total_processed)
