"""Mutual exclusion for sync and hydrate.

Both operations mutate the same logical memory set, so at most one may run
at a time. Contention fails fast with ``OperationInProgress``; nothing is
queued.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from errors import ConfigurationError, OperationInProgress
from utils import now_iso

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    SYNC = "sync"
    HYDRATE = "hydrate"
    NONE = "none"


class OperationState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    HYDRATING = "hydrating"


@dataclass(frozen=True, slots=True)
class SyncOperation:
    kind: OperationKind
    target_index: str
    namespace: str
    started_at: str = field(default_factory=now_iso)


_STARTS = {OperationKind.SYNC: OperationState.SYNCING, OperationKind.HYDRATE: OperationState.HYDRATING}


def transition(state: OperationState, kind: OperationKind) -> OperationState | None:
    """Next state for starting ``kind`` (or finishing, for NONE); None if not allowed."""
    if kind is OperationKind.NONE:
        return OperationState.IDLE
    if state is not OperationState.IDLE:
        return None
    return _STARTS[kind]


class OperationLock:
    """State machine Idle -> Syncing | Hydrating -> Idle, guarded by a mutex."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._state = OperationState.IDLE
        self._current: SyncOperation | None = None

    @property
    def state(self) -> OperationState:
        return self._state

    @property
    def current(self) -> SyncOperation | None:
        return self._current

    def can_change_index_settings(self) -> bool:
        return self._state is OperationState.IDLE

    def begin(self, kind: OperationKind, target_index: str, namespace: str) -> SyncOperation:
        if kind is OperationKind.NONE:
            raise ConfigurationError("An operation must be a sync or a hydrate")
        with self._mutex:
            next_state = transition(self._state, kind)
            if next_state is None:
                raise OperationInProgress(self._current)
            operation = SyncOperation(kind=kind, target_index=target_index, namespace=namespace)
            self._state = next_state
            self._current = operation
        logger.info("Started %s of %s/%s", kind.value, target_index, namespace)
        return operation

    def finish(self, operation: SyncOperation) -> None:
        with self._mutex:
            if self._current is not operation:
                return  # stale handle, someone else owns the lock now
            self._state = transition(self._state, OperationKind.NONE)
            self._current = None
        logger.info("Finished %s of %s/%s", operation.kind.value, operation.target_index, operation.namespace)

    @contextmanager
    def hold(self, kind: OperationKind, target_index: str, namespace: str) -> Iterator[SyncOperation]:
        """Hold the lock for the duration of the block; released on success or failure."""
        operation = self.begin(kind, target_index, namespace)
        try:
            yield operation
        finally:
            self.finish(operation)
