"""Sync (primary -> secondary) and hydrate (secondary -> primary) pipelines.

Both run under the operation lock, dedup by content fingerprint, and never
retry: a failed store call aborts the run and the caller gets the counts
accumulated so far. Re-running a sync is always safe because already-pushed
memories are fingerprint duplicates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from config import CONFIG
from errors import ConfigurationError, DimensionMismatch, PartialFailure, PartialHydrate, StoreUnavailable
from locking import OperationKind, OperationLock
from models import HydrateResult, Memory, MemoryType, SyncResult
from primary_store import PrimaryStore
from secondary_store import SecondaryStore, SecondaryVector, point_id
from settings_store import SettingsStore
from utils import fingerprint, now_iso, to_iso

logger = logging.getLogger(__name__)


def _batches(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _validate_target(index_name: str, namespace: str) -> None:
    if not index_name or not index_name.strip():
        raise ConfigurationError("Index name is required")
    if not namespace or not namespace.strip():
        raise ConfigurationError("Namespace is required")


# =============================================================================
# Sync
# =============================================================================


def memory_payload(memory: Memory, memory_fingerprint: str) -> dict[str, Any]:
    return {
        "memory_id": memory.id,
        "content": memory.content,
        "type": memory.type.value,
        "origin_message_id": memory.origin_message_id,
        "timestamp": memory.timestamp,
        "fingerprint": memory_fingerprint,
        "metadata": memory.metadata,
    }


def run_sync(
    primary: PrimaryStore,
    secondary: SecondaryStore,
    index_name: str,
    namespace: str,
    batch_size: int = CONFIG.batch_size,
) -> SyncResult:
    """Push every primary memory not already present in ``index_name/namespace``."""
    _validate_target(index_name, namespace)
    secondary.check_dimension(index_name, primary.dim)

    memories = primary.all_memories()
    seen = secondary.fingerprints(index_name, namespace)
    logger.info(
        "Syncing %d memories to %s/%s (%d fingerprints already present)",
        len(memories), index_name, namespace, len(seen),
    )

    result = SyncResult(index_name=index_name, namespace=namespace)
    pending: list[SecondaryVector] = []
    for memory in memories:
        memory_fingerprint = fingerprint(memory.content, memory.type, memory.origin_message_id)
        if memory_fingerprint in seen:
            result.duplicate_count += 1
            continue
        seen.add(memory_fingerprint)
        pending.append(
            SecondaryVector(
                id=point_id(namespace, memory_fingerprint),
                values=memory.embedding,
                payload=memory_payload(memory, memory_fingerprint),
            )
        )

    for batch in _batches(pending, batch_size):
        try:
            result.pushed_count += secondary.upsert(index_name, namespace, batch)
        except StoreUnavailable as e:
            result.failed_count = len(pending) - result.pushed_count
            raise PartialFailure(
                f"Sync to {index_name}/{namespace} stopped after pushing {result.pushed_count} "
                f"of {len(pending)} vectors: {e}",
                result,
            ) from e

    result.total_vectors_in_index = secondary.count(index_name)
    logger.info(
        "Sync complete: pushed=%d duplicates=%d dedup_rate=%.1f%% total_in_index=%d",
        result.pushed_count, result.duplicate_count, result.dedup_rate * 100, result.total_vectors_in_index,
    )
    return result


async def sync_to_secondary(
    primary: PrimaryStore,
    secondary: SecondaryStore,
    settings: SettingsStore,
    lock: OperationLock,
    index_name: str,
    namespace: str,
    batch_size: int = CONFIG.batch_size,
) -> SyncResult:
    """Run a sync under the operation lock; on success bind settings to the target."""
    with lock.hold(OperationKind.SYNC, index_name, namespace):
        try:
            result = await asyncio.to_thread(run_sync, primary, secondary, index_name, namespace, batch_size)
        except PartialFailure as e:
            settings.record_sync(e.result)
            raise
        settings.record_sync(result)
        settings.bind_index(index_name, namespace)
    return result


# =============================================================================
# Hydrate
# =============================================================================


def vector_to_memory(vector: SecondaryVector, index_name: str) -> Memory:
    payload = vector.payload
    try:
        memory_type = MemoryType(payload.get("type", MemoryType.PROMPT.value))
    except ValueError:
        memory_type = MemoryType.PROMPT
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
    origin = payload.get("origin_message_id")
    content = payload.get("content")
    timestamp = payload.get("timestamp")
    # Payloads may come from other clients, so every scalar is coerced
    return Memory(
        id=str(payload.get("memory_id") or vector.id.replace("-", "")),
        content=f"Memory imported from index: {index_name}" if content in (None, "") else str(content),
        type=memory_type,
        embedding=vector.values,
        origin_message_id=None if origin is None else str(origin),
        timestamp=now_iso() if timestamp in (None, "") else to_iso(timestamp),
        metadata={**metadata, "imported_from": index_name, "import_timestamp": now_iso()},
    )


def run_hydrate(
    primary: PrimaryStore,
    secondary: SecondaryStore,
    index_name: str,
    namespace: str,
    limit: int = CONFIG.default_vector_limit,
    batch_size: int = CONFIG.batch_size,
) -> HydrateResult:
    """Replace the primary store's contents with up to ``limit`` vectors from the namespace.

    Not atomic across stores: once the primary store is cleared, an
    insertion failure leaves it degraded and raises PartialHydrate.
    """
    _validate_target(index_name, namespace)
    if limit <= 0:
        raise ConfigurationError(f"limit must be positive, got {limit}")
    secondary.check_dimension(index_name, primary.dim)

    vectors = secondary.fetch(index_name, namespace, limit)
    result = HydrateResult(index_name=index_name, namespace=namespace, vectors_processed=len(vectors))
    if not vectors:
        logger.info("No vectors in %s/%s, primary store left untouched", index_name, namespace)
        return result

    for vector in vectors:
        if len(vector.values) != primary.dim:
            raise DimensionMismatch(primary.dim, len(vector.values), where=f"vector {vector.id}")

    incoming: list[Memory] = []
    seen: set[str] = set()
    for vector in vectors:
        try:
            memory = vector_to_memory(vector, index_name)
        except ValidationError as e:
            raise ConfigurationError(
                f"Vector {vector.id} in {index_name}/{namespace} has an unusable payload: {e}"
            ) from e
        memory_fingerprint = fingerprint(memory.content, memory.type, memory.origin_message_id)
        stored = vector.payload.get("fingerprint")
        if stored and stored != memory_fingerprint:
            logger.warning("Vector %s carries stale fingerprint %s, using recomputed value", vector.id, str(stored)[:12])
        if memory_fingerprint in seen:
            result.duplicate_count += 1
            continue
        seen.add(memory_fingerprint)
        memory.metadata["fingerprint"] = memory_fingerprint
        incoming.append(memory)

    removed = primary.clear()
    logger.info("Hydrating %d memories from %s/%s (replaced %d)", len(incoming), index_name, namespace, removed)

    for batch in _batches(incoming, batch_size):
        try:
            result.restored_count += primary.add(batch)
        except StoreUnavailable as e:
            result.failed_count = len(incoming) - result.restored_count
            logger.error("Hydrate degraded after %d of %d memories: %s", result.restored_count, len(incoming), e)
            raise PartialHydrate(result.restored_count, result, e) from e

    logger.info(
        "Hydrate complete: restored=%d duplicates=%d dedup_rate=%.1f%%",
        result.restored_count, result.duplicate_count, result.dedup_rate * 100,
    )
    return result


async def hydrate_from_secondary(
    primary: PrimaryStore,
    secondary: SecondaryStore,
    settings: SettingsStore,
    lock: OperationLock,
    index_name: str,
    namespace: str,
    limit: int = CONFIG.default_vector_limit,
    batch_size: int = CONFIG.batch_size,
) -> HydrateResult:
    """Run a hydrate under the operation lock; on success bind settings to the source."""
    with lock.hold(OperationKind.HYDRATE, index_name, namespace):
        try:
            result = await asyncio.to_thread(
                run_hydrate, primary, secondary, index_name, namespace, limit, batch_size
            )
        except PartialFailure as e:
            settings.record_hydrate(e.result)
            raise
        settings.record_hydrate(result)
        settings.bind_index(index_name, namespace)
    return result
