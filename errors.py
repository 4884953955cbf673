"""Error taxonomy for retrieval and cross-store synchronization."""

from __future__ import annotations

from typing import Any


class MemorySyncError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(MemorySyncError):
    """Invalid threshold, factor, dimension, or index binding."""


class IndexNotFound(ConfigurationError):
    """The named secondary index does not exist."""

    def __init__(self, index_name: str):
        super().__init__(f"Index '{index_name}' does not exist")
        self.index_name = index_name


class StoreUnavailable(MemorySyncError):
    """A vector store could not be reached or rejected the request."""

    def __init__(self, store: str, detail: str):
        super().__init__(f"{store} store unavailable: {detail}")
        self.store = store


class OperationInProgress(MemorySyncError):
    """A sync or hydrate is already running."""

    def __init__(self, operation: Any):
        super().__init__(
            f"A {operation.kind.value} of '{operation.target_index}/{operation.namespace}' "
            f"is already in progress (started {operation.started_at})"
        )
        self.operation = operation


class DimensionMismatch(MemorySyncError):
    """Embedding length disagrees with the configured store dimension."""

    def __init__(self, expected: int, actual: int, where: str = "embedding"):
        super().__init__(f"{where} dimension {actual} does not match expected {expected}")
        self.expected = expected
        self.actual = actual


class PartialFailure(MemorySyncError):
    """A sync or hydrate stopped after some items were already applied.

    ``result`` carries the counts accumulated before the failure.
    """

    def __init__(self, message: str, result: Any):
        super().__init__(message)
        self.result = result


class PartialHydrate(PartialFailure):
    """Hydrate cleared the primary store but could not restore every memory."""

    def __init__(self, restored_count: int, result: Any, cause: Exception):
        super().__init__(
            f"Hydrate left the primary store degraded: restored {restored_count} "
            f"memories before failing ({cause})",
            result,
        )
        self.restored_count = restored_count
