#!/usr/bin/env python3
"""
Tiered Memory MCP Server - adaptive retrieval over a two-tier vector memory

Provides conversation memory with explicit cross-store synchronization using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB as the fast primary index for per-turn retrieval
- Qdrant as the durable secondary index (collections = indexes, payload namespaces)
- Question/statement-aware similarity thresholds
- Fingerprint (content hash) dedup for sync and hydrate
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import threading
from dataclasses import asdict
from typing import Any

from mcp.server.fastmcp import FastMCP

from config import CONFIG
from embeddings import get_embedding
from errors import MemorySyncError, OperationInProgress, PartialFailure, PartialHydrate
from locking import OperationLock
from models import CONTEXT_SIZE_RANGE, Memory, MemoryType
from pipelines import hydrate_from_secondary, sync_to_secondary
from primary_store import PrimaryStore
from retrieval import SimilaritySearch, format_context, retrieve, search_archive
from secondary_store import SecondaryStore
from settings_store import SettingsStore

logger = logging.getLogger("tiered-memory")

VALID_TYPES = frozenset(t.value for t in MemoryType)
PREVIEW_LIMIT = 100

# =============================================================================
# Engine Singletons (lazy, thread-safe)
# =============================================================================

_lock = threading.RLock()
_primary: PrimaryStore | None = None
_secondary: SecondaryStore | None = None
_operation_lock: OperationLock | None = None
_settings_store: SettingsStore | None = None
_search: SimilaritySearch | None = None


def get_primary() -> PrimaryStore:
    global _primary
    if _primary is None:
        with _lock:
            if _primary is None:
                _primary = PrimaryStore(CONFIG.db_path, CONFIG.table_name, CONFIG.embedding_dim)
    return _primary


def get_secondary() -> SecondaryStore:
    global _secondary
    if _secondary is None:
        with _lock:
            if _secondary is None:
                _secondary = SecondaryStore(CONFIG.qdrant_url, CONFIG.qdrant_api_key, CONFIG.qdrant_timeout)
    return _secondary


def get_operation_lock() -> OperationLock:
    global _operation_lock
    if _operation_lock is None:
        with _lock:
            if _operation_lock is None:
                _operation_lock = OperationLock()
    return _operation_lock


def get_settings_store() -> SettingsStore:
    global _settings_store
    if _settings_store is None:
        with _lock:
            if _settings_store is None:
                _settings_store = SettingsStore(CONFIG.settings_path, get_operation_lock())
    return _settings_store


def get_search() -> SimilaritySearch:
    global _search
    if _search is None:
        with _lock:
            if _search is None:
                _search = SimilaritySearch(get_primary(), CONFIG.search_overfetch)
    return _search


async def init_stores() -> None:
    """Open the primary table, load settings, and report secondary reachability."""
    primary = get_primary()
    await asyncio.to_thread(primary.get_table)
    settings = get_settings_store().snapshot()
    logger.info("Primary store ready: %s (%dD)", CONFIG.db_path, CONFIG.embedding_dim)
    available = await asyncio.to_thread(get_secondary().is_available)
    logger.info(
        "Secondary store %s at %s (active index: %s/%s)",
        "available" if available else "unavailable",
        CONFIG.qdrant_url,
        settings.active_index_name or "-",
        settings.namespace,
    )


# =============================================================================
# Formatting
# =============================================================================


def _error(e: Exception) -> str:
    if isinstance(e, PartialFailure):
        return f"Error: {e}\nPartial result: {json.dumps(e.result.summary())}"
    return f"Error: {e}"


def _to_json(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def _check_index_idle(index_name: str) -> None:
    """Reject index mutations while a sync/hydrate is using that index."""
    current = get_operation_lock().current
    if current is not None and current.target_index == index_name:
        raise OperationInProgress(current)


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "tiered-memory",
    instructions=(
        "Two-tier conversation memory: LanceDB primary index for adaptive-threshold retrieval, "
        "Qdrant secondary index for durable archival, with fingerprint-deduplicated sync and hydrate"
    ),
)


# -----------------------------------------------------------------------------
# Memories & retrieval
# -----------------------------------------------------------------------------


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_save(
    content: str,
    type: str = "prompt",
    origin_message_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> str:
    """Store a conversation fragment in the primary memory index.

    Args:
        content: Text of the prompt or response
        type: Who produced it: prompt or response
        origin_message_id: ID of the conversation message it came from
        metadata: Optional key-value data kept with the memory
    """
    if not content.strip():
        return "Error: content is required"
    if type not in VALID_TYPES:
        return f"Error: Invalid type '{type}'. Valid: {sorted(VALID_TYPES)}"

    primary = get_primary()
    embedding = await get_embedding(content, primary.dim)
    memory = Memory(
        content=content,
        type=MemoryType(type),
        embedding=embedding,
        origin_message_id=origin_message_id,
        metadata=metadata or {},
    )
    try:
        await asyncio.to_thread(primary.add, [memory])
    except MemorySyncError as e:
        return _error(e)
    return f"Saved (ID: {memory.id[:8]}..., {type})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_recall(query: str, limit: int | None = None) -> str:
    """Retrieve memories relevant to a query with question/statement-aware thresholds.

    Args:
        query: The chat turn to find context for
        limit: Max results (defaults to the configured context size, 1-10)
    """
    if not query.strip():
        return "Error: query is required"
    settings = get_settings_store().snapshot()
    if limit is not None:
        low, high = CONTEXT_SIZE_RANGE
        if not low <= limit <= high:
            return f"Error: limit must be between {low} and {high}, got {limit}"
        settings = settings.model_copy(update={"context_size": limit})

    embedding = await get_embedding(query, get_primary().dim, task_type="RETRIEVAL_QUERY")
    try:
        retrieval = await retrieve(get_search(), query, embedding, settings)
    except MemorySyncError as e:
        return _error(e)

    header = f"{retrieval.kind.value}, threshold {retrieval.threshold:.2f}"
    if retrieval.degraded:
        return f"No memories available: primary store unreachable ({header})"
    if not retrieval.memories:
        return f"No memories found for '{query}' ({header})"

    lines = [f"Found {len(retrieval.memories)} memories ({header}):\n"]
    for i, scored in enumerate(retrieval.memories, 1):
        memory = scored.memory
        lines.append(f"[{i}] {memory.type.value} (ID: {memory.id[:8]}...)")
        lines.append(f"    {memory.content}")
        lines.append(f"    Similarity: {scored.score:.0%} | {memory.timestamp[:19]}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_context(query: str) -> str:
    """Build the relevant-memories block for a prompt. Empty string when nothing matches.

    Args:
        query: The chat turn being answered
    """
    if not query.strip():
        return ""
    embedding = await get_embedding(query, get_primary().dim, task_type="RETRIEVAL_QUERY")
    try:
        retrieval = await retrieve(get_search(), query, embedding, get_settings_store().snapshot())
    except MemorySyncError as e:
        logger.warning("Context retrieval failed: %s", e)
        return ""
    return format_context(retrieval.memories)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_recall_archive(query: str) -> str:
    """Search the long-term archive (the active secondary index) for a query.

    Args:
        query: Search query
    """
    if not query.strip():
        return "Error: query is required"
    settings = get_settings_store().snapshot()
    if not settings.is_enabled or not settings.active_index_name:
        return "Error: No active secondary index. Run memory_sync or bind one with settings_update."

    embedding = await get_embedding(query, get_primary().dim, task_type="RETRIEVAL_QUERY")
    try:
        matches = await search_archive(get_secondary(), query, embedding, settings)
    except MemorySyncError as e:
        return _error(e)
    scope = f"{settings.active_index_name}/{settings.namespace}"
    if not matches:
        return f"No archived memories found for '{query}' in {scope}"

    lines = [f"Found {len(matches)} archived memories in {scope}:\n"]
    for i, match in enumerate(matches, 1):
        lines.append(f"[{i}] {match.payload.get('type', '?')} (ID: {str(match.payload.get('memory_id', match.id))[:8]}...)")
        lines.append(f"    {match.payload.get('content', '')}")
        lines.append(f"    Similarity: {match.score:.0%}")
        lines.append("")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get primary memory statistics - totals, by type, current operation."""
    primary = get_primary()
    try:
        total = await asyncio.to_thread(primary.count)
        by_type = await asyncio.to_thread(primary.count_by_type) if total else {}
    except MemorySyncError as e:
        return _error(e)

    settings = get_settings_store().snapshot()
    operation = get_operation_lock().current
    lines = [
        "=== Memory Statistics ===",
        f"Total: {total} memories",
        f"Dimension: {primary.dim}",
        f"Active index: {settings.active_index_name or '-'} / {settings.namespace}"
        f" ({'enabled' if settings.is_enabled else 'disabled'})",
        f"Operation: {operation.kind.value + ' of ' + operation.target_index if operation else 'idle'}",
        "",
        "By Type:",
    ]
    for memory_type, count in sorted(by_type.items()):
        lines.append(f"  {memory_type}: {count}")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def settings_get() -> str:
    """Get the current retrieval settings."""
    return _to_json(get_settings_store().snapshot().model_dump())


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def settings_update(
    context_size: int | None = None,
    similarity_threshold: float | None = None,
    question_threshold_factor: float | None = None,
    statement_threshold_factor: float | None = None,
    threshold_policy: str | None = None,
    active_index_name: str | None = None,
    namespace: str | None = None,
    is_enabled: bool | None = None,
) -> str:
    """Update retrieval settings. Index fields are locked while a sync/hydrate runs.

    Args:
        context_size: Max memories returned per query (1-10)
        similarity_threshold: Base similarity cutoff (0-1)
        question_threshold_factor: Cutoff factor for questions (0.55-0.95)
        statement_threshold_factor: Cutoff factor for statements (0.55-0.95)
        threshold_policy: blend or minmax
        active_index_name: Secondary index to bind ("" to unbind)
        namespace: Secondary namespace to bind
        is_enabled: Whether the secondary index is used
    """
    patch = {
        name: value
        for name, value in {
            "context_size": context_size,
            "similarity_threshold": similarity_threshold,
            "question_threshold_factor": question_threshold_factor,
            "statement_threshold_factor": statement_threshold_factor,
            "threshold_policy": threshold_policy,
            "active_index_name": active_index_name,
            "namespace": namespace,
            "is_enabled": is_enabled,
        }.items()
        if value is not None
    }
    if not patch:
        return "Error: no settings given"
    if patch.get("active_index_name") == "":
        patch["active_index_name"] = None
    try:
        updated = get_settings_store().update(patch)
    except MemorySyncError as e:
        return _error(e)
    return _to_json(updated.model_dump())


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def settings_restore_defaults() -> str:
    """Restore all retrieval settings to their defaults."""
    try:
        restored = get_settings_store().restore_defaults()
    except MemorySyncError as e:
        return _error(e)
    return _to_json(restored.model_dump())


# -----------------------------------------------------------------------------
# Secondary indexes
# -----------------------------------------------------------------------------


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def secondary_status() -> str:
    """Check whether the secondary store is reachable."""
    available = await asyncio.to_thread(get_secondary().is_available)
    return _to_json(
        {
            "available": available,
            "status": "connected" if available else "disconnected",
            "configured": bool(CONFIG.qdrant_url),
        }
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def index_list() -> str:
    """List secondary indexes with dimension, metric, vector count, and namespaces."""
    try:
        indexes = await asyncio.to_thread(get_secondary().list_indexes)
    except MemorySyncError as e:
        return _error(e)
    return _to_json([asdict(index) for index in indexes])


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def index_create(name: str, dimension: int | None = None, metric: str = CONFIG.default_metric) -> str:
    """Create a secondary index.

    Args:
        name: Index name
        dimension: Vector dimension (defaults to the primary store dimension)
        metric: cosine, euclidean, or dotproduct
    """
    dimension = dimension or get_primary().dim
    try:
        created = await asyncio.to_thread(get_secondary().create_index, name, dimension, metric)
    except MemorySyncError as e:
        return _error(e)
    if not created:
        return f"Index {name} already exists"
    return f"Index {name} created ({dimension}D, {metric})"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def index_delete(name: str) -> str:
    """Delete a secondary index. Clears the active binding if it pointed there.

    Args:
        name: Index name
    """
    try:
        _check_index_idle(name)
        settings = get_settings_store()
        settings.ensure_unbindable(name)
        await asyncio.to_thread(get_secondary().delete_index, name)
        unbound = settings.unbind_index(name)
    except MemorySyncError as e:
        return _error(e)
    suffix = " (active index cleared)" if unbound else ""
    return f"Index {name} deleted{suffix}"


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def index_wipe(name: str, namespace: str = CONFIG.default_namespace) -> str:
    """Delete every vector in one namespace of a secondary index.

    Args:
        name: Index name
        namespace: Namespace to clear
    """
    try:
        _check_index_idle(name)
        removed = await asyncio.to_thread(get_secondary().wipe, name, namespace)
    except MemorySyncError as e:
        return _error(e)
    return f"Index {name} wiped in namespace '{namespace}' ({removed} vectors removed)"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def index_vectors(name: str, namespace: str = CONFIG.default_namespace, limit: int = 10) -> str:
    """Preview vectors stored in a secondary index namespace.

    Args:
        name: Index name
        namespace: Namespace to read
        limit: Max vectors to show (1-100)
    """
    if not 0 < limit <= PREVIEW_LIMIT:
        return f"Error: limit must be between 1 and {PREVIEW_LIMIT}, got {limit}"
    try:
        vectors = await asyncio.to_thread(get_secondary().fetch, name, namespace, limit)
    except MemorySyncError as e:
        return _error(e)
    preview = []
    for vector in vectors:
        content = str(vector.payload.get("content", ""))
        if len(content) > CONFIG.preview_chars:
            content = content[: CONFIG.preview_chars] + "..."
        preview.append(
            {
                "id": vector.id,
                "dimension": len(vector.values),
                "type": vector.payload.get("type"),
                "origin_message_id": vector.payload.get("origin_message_id"),
                "fingerprint": vector.payload.get("fingerprint"),
                "content": content,
            }
        )
    return _to_json({"index_name": name, "namespace": namespace, "count": len(preview), "vectors": preview})


# -----------------------------------------------------------------------------
# Sync & hydrate
# -----------------------------------------------------------------------------


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_sync(index_name: str, namespace: str = CONFIG.default_namespace) -> str:
    """Push primary memories into a secondary index, skipping fingerprint duplicates.

    Args:
        index_name: Target secondary index
        namespace: Target namespace
    """
    try:
        result = await sync_to_secondary(
            get_primary(), get_secondary(), get_settings_store(), get_operation_lock(), index_name, namespace
        )
    except MemorySyncError as e:
        return _error(e)
    return "\n".join(
        [
            f"Synced to {index_name}/{namespace}",
            f"Pushed: {result.pushed_count}",
            f"Duplicates skipped: {result.duplicate_count} ({result.dedup_rate:.1%})",
            f"Vectors in index: {result.total_vectors_in_index}",
        ]
    )


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": False,
    }
)
async def memory_hydrate(
    index_name: str,
    namespace: str = CONFIG.default_namespace,
    limit: int = CONFIG.default_vector_limit,
    confirm: bool = False,
) -> str:
    """Replace ALL primary memories with vectors pulled from a secondary index.

    Destructive and not atomic: the primary store is cleared before restoring.

    Args:
        index_name: Source secondary index
        namespace: Source namespace
        limit: Max vectors to restore
        confirm: Must be true to proceed
    """
    if not confirm:
        try:
            current = await asyncio.to_thread(get_primary().count)
        except MemorySyncError as e:
            return _error(e)
        return (
            f"Error: hydrate replaces all {current} primary memories with the contents of "
            f"{index_name}/{namespace}. Call again with confirm=true to proceed."
        )
    try:
        result = await hydrate_from_secondary(
            get_primary(), get_secondary(), get_settings_store(), get_operation_lock(), index_name, namespace, limit
        )
    except PartialHydrate as e:
        return f"{_error(e)}\nWARNING: primary store is degraded; re-run memory_hydrate to restore it."
    except MemorySyncError as e:
        return _error(e)
    return "\n".join(
        [
            f"Hydrated from {index_name}/{namespace}",
            f"Restored: {result.restored_count}",
            f"Duplicates skipped: {result.duplicate_count} ({result.dedup_rate:.1%})",
            f"Vectors processed: {result.vectors_processed}",
        ]
    )


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def sync_stats() -> str:
    """Stats for the active secondary index plus last sync/hydrate dedup rates."""
    settings = get_settings_store().snapshot()
    metrics = get_settings_store().metrics
    stats: dict[str, Any] = {
        "enabled": settings.is_enabled,
        "active_index": settings.active_index_name,
        "namespace": settings.namespace,
        "vector_count": 0,
        "namespaces": [],
    }
    if settings.is_enabled and settings.active_index_name:
        try:
            info = await asyncio.to_thread(get_secondary().describe, settings.active_index_name)
        except MemorySyncError as e:
            return _error(e)
        stats["vector_count"] = info.vector_count
        stats["namespaces"] = [asdict(ns) for ns in info.namespaces]

    rates = []
    if metrics.last_sync is not None:
        stats["last_sync_dedup_rate"] = metrics.last_sync.dedup_rate
        rates.append(metrics.last_sync.dedup_rate)
    if metrics.last_hydrate is not None:
        stats["last_hydrate_dedup_rate"] = metrics.last_hydrate.dedup_rate
        rates.append(metrics.last_hydrate.dedup_rate)
    if rates:
        stats["avg_dedup_rate"] = sum(rates) / len(rates)
    stats["cumulative_dedup_rate"] = metrics.cumulative_dedup_rate
    stats["operation"] = get_operation_lock().state.value
    return _to_json(stats)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def metrics_reset() -> str:
    """Reset cumulative deduplication counters to zero."""
    metrics = get_settings_store().reset_metrics()
    return f"Deduplication metrics reset at {metrics.reset_timestamp}"


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server after opening the stores."""
    await init_stores()
    await mcp.run_stdio_async()


def main():
    """Entry point."""
    # stdout carries the MCP stdio protocol; logs go to stderr
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="[tiered-memory] %(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
