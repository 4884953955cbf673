"""Secondary memory index on Qdrant: durable archive of synced memories.

An "index" is a Qdrant collection. Namespaces partition a collection by
the ``namespace`` payload field, so every read and write is filtered on it.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from errors import ConfigurationError, DimensionMismatch, IndexNotFound, StoreUnavailable
from utils import cosine_to_score, euclidean_to_score

logger = logging.getLogger(__name__)

METRICS = {
    "cosine": models.Distance.COSINE,
    "euclidean": models.Distance.EUCLID,
    "dotproduct": models.Distance.DOT,
}
METRIC_NAMES = {distance: name for name, distance in METRICS.items()}
# Raw Qdrant score -> similarity in [0, 1]; embeddings are unit vectors, so dot == cosine
SCORE_MAPPINGS = {
    "cosine": cosine_to_score,
    "dotproduct": cosine_to_score,
    "euclidean": euclidean_to_score,
}
MAX_DIMENSION = 65536
SCROLL_PAGE = 256

STORE_ERRORS = (UnexpectedResponse, ResponseHandlingException, ConnectionError, TimeoutError, OSError)

# Fixed namespace for point ids; ids derive from (namespace, fingerprint)
POINT_ID_NAMESPACE = uuid.UUID("6f1c2a7e-3d4b-5a9c-8e21-4b7d9f0a1c35")


@dataclass(frozen=True, slots=True)
class NamespaceInfo:
    name: str
    vector_count: int


@dataclass(frozen=True, slots=True)
class IndexInfo:
    name: str
    dimension: int
    metric: str
    vector_count: int
    namespaces: list[NamespaceInfo] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class SecondaryVector:
    id: str
    values: list[float]
    payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ArchiveMatch:
    id: str
    score: float  # normalized to [0, 1]
    payload: dict[str, Any]


def point_id(namespace: str, memory_fingerprint: str) -> str:
    """Stable point id, so re-pushing the same memory overwrites in place."""
    return str(uuid.uuid5(POINT_ID_NAMESPACE, f"{namespace}:{memory_fingerprint}"))


def _namespace_filter(namespace: str) -> models.Filter:
    return models.Filter(
        must=[models.FieldCondition(key="namespace", match=models.MatchValue(value=namespace))]
    )


class SecondaryStore:
    """Thin, error-normalizing wrapper around a Qdrant client."""

    name = "secondary"

    def __init__(self, url: str, api_key: str | None = None, timeout: int = 60):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._lock = threading.Lock()
        self._client: QdrantClient | None = None

    def get_client(self) -> QdrantClient:
        """Get or create the Qdrant client (thread-safe)."""
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    kwargs: dict[str, Any] = {"location": self.url}
                    if self.url != ":memory:":
                        kwargs["timeout"] = self.timeout
                        if self.api_key:
                            kwargs["api_key"] = self.api_key
                    self._client = QdrantClient(**kwargs)
        return self._client

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except STORE_ERRORS as e:
            logger.warning("Secondary store %s failed: %s", what, e)
            raise StoreUnavailable(self.name, f"{what}: {e}") from e

    # -------------------------------------------------------------------------
    # Availability & indexes
    # -------------------------------------------------------------------------

    def is_available(self) -> bool:
        try:
            self._call("list collections", self.get_client().get_collections)
        except StoreUnavailable:
            return False
        return True

    def index_exists(self, index_name: str) -> bool:
        return self._call("check collection", self.get_client().collection_exists, index_name)

    def _require_index(self, index_name: str) -> None:
        if not self.index_exists(index_name):
            raise IndexNotFound(index_name)

    def dimension(self, index_name: str) -> tuple[int, str]:
        """(dimension, metric) of an index."""
        self._require_index(index_name)
        info = self._call("describe collection", self.get_client().get_collection, index_name)
        params = info.config.params.vectors
        return params.size, METRIC_NAMES.get(params.distance, str(params.distance).lower())

    def check_dimension(self, index_name: str, expected: int) -> None:
        actual, _ = self.dimension(index_name)
        if actual != expected:
            raise DimensionMismatch(expected, actual, where=f"index '{index_name}'")

    def namespaces(self, index_name: str) -> list[NamespaceInfo]:
        counts: dict[str, int] = {}
        for point in self._scroll(index_name, namespace=None, with_vectors=False, payload=["namespace"]):
            name = (point.payload or {}).get("namespace", "")
            counts[name] = counts.get(name, 0) + 1
        return [NamespaceInfo(name, count) for name, count in sorted(counts.items())]

    def describe(self, index_name: str) -> IndexInfo:
        dimension, metric = self.dimension(index_name)
        return IndexInfo(
            name=index_name,
            dimension=dimension,
            metric=metric,
            vector_count=self.count(index_name),
            namespaces=self.namespaces(index_name),
        )

    def list_indexes(self) -> list[IndexInfo]:
        response = self._call("list collections", self.get_client().get_collections)
        indexes = []
        for collection in response.collections:
            try:
                indexes.append(self.describe(collection.name))
            except StoreUnavailable as e:
                # Keep the index visible even when its stats cannot be read
                logger.warning("Could not describe index %s: %s", collection.name, e)
                indexes.append(IndexInfo(name=collection.name, dimension=0, metric="unknown", vector_count=0))
        return sorted(indexes, key=lambda idx: idx.name)

    def create_index(self, index_name: str, dimension: int, metric: str = "cosine") -> bool:
        """Create an index; False if it already existed."""
        if not index_name.strip():
            raise ConfigurationError("Index name is required")
        if not 0 < dimension <= MAX_DIMENSION:
            raise ConfigurationError(f"Dimension must be in 1..{MAX_DIMENSION}, got {dimension}")
        distance = METRICS.get(metric.lower())
        if distance is None:
            raise ConfigurationError(f"Invalid metric '{metric}'. Valid: {sorted(METRICS)}")
        if self.index_exists(index_name):
            logger.info("Index %s already exists, skipping creation", index_name)
            return False
        client = self.get_client()
        self._call(
            "create collection",
            client.create_collection,
            collection_name=index_name,
            vectors_config=models.VectorParams(size=dimension, distance=distance),
        )
        self._call(
            "create namespace index",
            client.create_payload_index,
            collection_name=index_name,
            field_name="namespace",
            field_schema=models.PayloadSchemaType.KEYWORD,
        )
        logger.info("Created index %s (%dD, %s)", index_name, dimension, metric)
        return True

    def delete_index(self, index_name: str) -> None:
        self._require_index(index_name)
        self._call("delete collection", self.get_client().delete_collection, index_name)
        logger.info("Deleted index %s", index_name)

    def wipe(self, index_name: str, namespace: str) -> int:
        """Delete every vector in one namespace. Returns how many were removed."""
        removed = self.count(index_name, namespace)
        self._call(
            "wipe namespace",
            self.get_client().delete,
            collection_name=index_name,
            points_selector=models.FilterSelector(filter=_namespace_filter(namespace)),
            wait=True,
        )
        logger.info("Wiped %d vectors from %s/%s", removed, index_name, namespace)
        return removed

    # -------------------------------------------------------------------------
    # Vectors
    # -------------------------------------------------------------------------

    def count(self, index_name: str, namespace: str | None = None) -> int:
        self._require_index(index_name)
        result = self._call(
            "count",
            self.get_client().count,
            collection_name=index_name,
            count_filter=_namespace_filter(namespace) if namespace is not None else None,
            exact=True,
        )
        return result.count

    def _scroll(
        self,
        index_name: str,
        namespace: str | None,
        with_vectors: bool,
        payload: bool | list[str] = True,
        limit: int | None = None,
    ):
        self._require_index(index_name)
        client = self.get_client()
        offset = None
        seen = 0
        while limit is None or seen < limit:
            page_size = SCROLL_PAGE if limit is None else min(SCROLL_PAGE, limit - seen)
            points, offset = self._call(
                "scroll",
                client.scroll,
                collection_name=index_name,
                scroll_filter=_namespace_filter(namespace) if namespace is not None else None,
                limit=page_size,
                offset=offset,
                with_payload=payload,
                with_vectors=with_vectors,
            )
            for point in points:
                yield point
            seen += len(points)
            if offset is None or not points:
                break

    def fingerprints(self, index_name: str, namespace: str) -> set[str]:
        """Fingerprints tagged on vectors already stored in the namespace."""
        return {
            fp
            for point in self._scroll(index_name, namespace, with_vectors=False, payload=["fingerprint"])
            if (fp := (point.payload or {}).get("fingerprint"))
        }

    def fetch(self, index_name: str, namespace: str, limit: int) -> list[SecondaryVector]:
        return [
            SecondaryVector(id=str(point.id), values=list(point.vector or []), payload=dict(point.payload or {}))
            for point in self._scroll(index_name, namespace, with_vectors=True, limit=limit)
        ]

    def upsert(self, index_name: str, namespace: str, vectors: list[SecondaryVector]) -> int:
        if not vectors:
            return 0
        points = [
            models.PointStruct(id=v.id, vector=v.values, payload={**v.payload, "namespace": namespace})
            for v in vectors
        ]
        self._call("upsert", self.get_client().upsert, collection_name=index_name, points=points, wait=True)
        return len(points)

    def query(self, index_name: str, namespace: str, vector: list[float], limit: int) -> list[ArchiveMatch]:
        _, metric = self.dimension(index_name)
        to_score = SCORE_MAPPINGS.get(metric)
        if to_score is None:
            raise ConfigurationError(f"Index '{index_name}' uses unsupported metric '{metric}'")
        response = self._call(
            "query",
            self.get_client().query_points,
            collection_name=index_name,
            query=vector,
            query_filter=_namespace_filter(namespace),
            limit=limit,
            with_payload=True,
        )
        return [
            ArchiveMatch(id=str(point.id), score=to_score(point.score), payload=dict(point.payload or {}))
            for point in response.points
        ]
