"""Primary memory index on LanceDB: fast local per-turn retrieval."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa

from errors import DimensionMismatch, StoreUnavailable
from models import Memory, MemoryType, ScoredMemory, memory_table_schema
from utils import cosine_distance_to_score, fingerprint

logger = logging.getLogger(__name__)

STORE_ERRORS = (OSError, RuntimeError, ValueError, pa.ArrowException)


def memory_to_row(memory: Memory) -> dict[str, Any]:
    return {
        "id": memory.id,
        "content": memory.content,
        "vector": memory.embedding,
        "type": memory.type.value,
        "origin_message_id": memory.origin_message_id,
        "fingerprint": fingerprint(memory.content, memory.type, memory.origin_message_id),
        "timestamp": memory.timestamp,
        "metadata": json.dumps(memory.metadata),
    }


def row_to_memory(row: dict[str, Any]) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        type=MemoryType(row["type"]),
        embedding=[float(v) for v in row["vector"]],
        origin_message_id=row.get("origin_message_id"),
        timestamp=row["timestamp"],
        metadata=json.loads(row["metadata"]) if row.get("metadata") else {},
    )


class PrimaryStore:
    """LanceDB table of memories with a fixed embedding dimension."""

    name = "primary"

    def __init__(self, db_path: Path, table_name: str, dim: int):
        self.db_path = db_path
        self.table_name = table_name
        self.dim = dim
        self._lock = threading.RLock()  # RLock allows reentrant calls (get_table -> get_db)
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    def get_db(self) -> lancedb.DBConnection:
        """Get or create LanceDB connection (thread-safe)."""
        if self._db is None:
            with self._lock:
                if self._db is None:  # Double-check after acquiring lock
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                    self._db = lancedb.connect(str(self.db_path))
        return self._db

    def get_table(self) -> lancedb.table.Table:
        """Get or create the memories table (thread-safe)."""
        if self._table is None:
            with self._lock:
                if self._table is None:
                    db = self.get_db()
                    try:
                        table = db.open_table(self.table_name)
                    except (FileNotFoundError, ValueError):
                        table = db.create_table(self.table_name, schema=memory_table_schema(self.dim))
                        logger.info("Created primary table '%s' (%dD)", self.table_name, self.dim)
                    stored_dim = table.schema.field("vector").type.list_size
                    if stored_dim != self.dim:
                        raise DimensionMismatch(self.dim, stored_dim, where=f"table '{self.table_name}'")
                    self._table = table
        return self._table

    def _check_dimension(self, vector: list[float], where: str = "embedding") -> None:
        if len(vector) != self.dim:
            raise DimensionMismatch(self.dim, len(vector), where=where)

    def add(self, memories: list[Memory]) -> int:
        """Insert memories; every vector is validated before anything is written."""
        if not memories:
            return 0
        for memory in memories:
            self._check_dimension(memory.embedding, where=f"memory {memory.id}")
        rows = [memory_to_row(memory) for memory in memories]
        try:
            self.get_table().add(rows)
        except STORE_ERRORS as e:
            raise StoreUnavailable(self.name, str(e)) from e
        return len(rows)

    def nearest(self, vector: list[float], limit: int) -> list[ScoredMemory]:
        """Nearest neighbours by the table's native cosine distance."""
        self._check_dimension(vector, where="query embedding")
        try:
            rows = self.get_table().search(vector).distance_type("cosine").limit(limit).to_list()
        except STORE_ERRORS as e:
            raise StoreUnavailable(self.name, str(e)) from e
        return [ScoredMemory(row_to_memory(row), cosine_distance_to_score(row["_distance"])) for row in rows]

    def all_memories(self) -> list[Memory]:
        try:
            rows = self.get_table().to_arrow().to_pylist()
        except STORE_ERRORS as e:
            raise StoreUnavailable(self.name, str(e)) from e
        return [row_to_memory(row) for row in rows]

    def count(self) -> int:
        try:
            return self.get_table().count_rows()
        except STORE_ERRORS as e:
            raise StoreUnavailable(self.name, str(e)) from e

    def clear(self) -> int:
        """Delete every memory. Returns how many were removed."""
        try:
            table = self.get_table()
            removed = table.count_rows()
            table.delete("id IS NOT NULL")
        except STORE_ERRORS as e:
            raise StoreUnavailable(self.name, str(e)) from e
        logger.info("Cleared %d memories from primary store", removed)
        return removed

    def count_by_type(self) -> dict[str, int]:
        try:
            types = self.get_table().to_arrow().column("type").to_pylist()
        except STORE_ERRORS as e:
            raise StoreUnavailable(self.name, str(e)) from e
        counts: dict[str, int] = {}
        for memory_type in types:
            counts[memory_type] = counts.get(memory_type, 0) + 1
        return counts
