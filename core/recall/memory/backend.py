"""Vector Backend Protocol and Implementations.

Provides a pluggable table-oriented interface for vector storage:
- VectorBackend: a database holding named tables
- VectorTable: a table of rows (id, vector, scalar metadata, document)
- ChromaDBBackend: default persistent backend
- InMemoryBackend: ephemeral backend for testing

Filters use Chroma-style ``where`` dicts on scalar metadata columns:

    {"folder_id": "abc"}
    {"quality_score": {"$gte": 50}}
    {"$and": [{"outcome": {"$in": ["success", "partial"]}}, {"folder_id": "abc"}]}

Search distances are cosine distances (0 = identical direction).
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Where = dict[str, Any]

DOCUMENT_FIELD = "document"


class VectorRow(BaseModel):
    """A row in a vector table."""

    id: str
    vector: list[float] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    document: str = ""

    distance: float | None = None


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def where_all(*clauses: Where | None) -> Where | None:
    """Combine clauses with $and, dropping empty ones."""
    filters = [c for c in clauses if c]
    if not filters:
        return None
    if len(filters) == 1:
        return filters[0]
    return {"$and": filters}


def where_in(field: str, values: list[Any]) -> Where | None:
    if not values:
        return None
    if len(values) == 1:
        return {field: values[0]}
    return {field: {"$in": list(values)}}


def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$eq":
        return value == operand
    if op == "$ne":
        return value != operand
    if op == "$in":
        return value in operand
    if op == "$nin":
        return value not in operand
    if value is None:
        return False
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    raise ValueError(f"Unsupported where operator: {op}")


def matches_where(metadata: dict[str, Any], where: Where | None) -> bool:
    """Evaluate a where dict against a row's metadata."""
    if not where:
        return True

    for key, condition in where.items():
        if key == "$and":
            if not all(matches_where(metadata, c) for c in condition):
                return False
        elif key == "$or":
            if not any(matches_where(metadata, c) for c in condition):
                return False
        elif isinstance(condition, dict):
            value = metadata.get(key)
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif metadata.get(key) != condition:
            return False

    return True


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class VectorTable(Protocol):
    """Protocol for a table handle.

    All backends must implement these methods for unified access.
    """

    async def add(self, rows: list[VectorRow]) -> None:
        """Insert rows."""
        ...

    async def search(
        self,
        vector: list[float],
        limit: int = 10,
        where: Where | None = None,
    ) -> list[VectorRow]:
        """Nearest neighbours of vector, closest first, with distance set."""
        ...

    async def scan(
        self,
        where: Where | None = None,
        limit: int | None = None,
        include_vectors: bool = False,
    ) -> list[VectorRow]:
        """Rows matching a predicate, in no particular order.

        Vectors are only guaranteed to be populated when include_vectors is set.
        """
        ...

    async def update(self, where: Where, values: dict[str, Any]) -> int:
        """Set metadata columns (or the document) on matching rows.

        Row vectors are left unchanged.

        Returns:
            Number of rows updated.
        """
        ...

    async def delete(self, where: Where) -> None:
        """Delete rows matching a predicate."""
        ...

    async def count(self) -> int:
        """Get the total number of rows."""
        ...


class VectorBackend(Protocol):
    """Protocol for vector databases."""

    async def connect(self) -> None:
        """Open the database (create directories, clients, etc.)."""
        ...

    async def table_names(self) -> list[str]:
        ...

    async def create_table(self, name: str, rows: list[VectorRow]) -> VectorTable:
        """Create a table seeded with rows."""
        ...

    async def open_table(self, name: str) -> VectorTable:
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


def cosine_distance(a: list[float], b: list[float]) -> float:
    """Cosine distance between two vectors (1 - cosine similarity)."""
    if len(a) != len(b) or not a:
        return 1.0

    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5

    if norm_a == 0 or norm_b == 0:
        return 1.0

    return 1.0 - dot_product / (norm_a * norm_b)


class InMemoryTable:
    """Table kept in a dict. Not persistent."""

    def __init__(self) -> None:
        self._rows: dict[str, VectorRow] = {}

    async def add(self, rows: list[VectorRow]) -> None:
        for row in rows:
            self._rows[row.id] = row.model_copy(deep=True)

    async def search(
        self,
        vector: list[float],
        limit: int = 10,
        where: Where | None = None,
    ) -> list[VectorRow]:
        results = []
        for row in self._rows.values():
            if not matches_where(row.metadata, where):
                continue
            distance = cosine_distance(vector, row.vector)
            results.append(row.model_copy(update={"distance": distance}, deep=True))

        results.sort(key=lambda r: r.distance)
        return results[:limit]

    async def scan(
        self,
        where: Where | None = None,
        limit: int | None = None,
        include_vectors: bool = False,
    ) -> list[VectorRow]:
        results = [
            row.model_copy(deep=True)
            for row in self._rows.values()
            if matches_where(row.metadata, where)
        ]
        return results if limit is None else results[:limit]

    async def update(self, where: Where, values: dict[str, Any]) -> int:
        updated = 0
        for row_id, row in list(self._rows.items()):
            if not matches_where(row.metadata, where):
                continue
            document = values.get(DOCUMENT_FIELD, row.document)
            metadata = {**row.metadata, **{k: v for k, v in values.items() if k != DOCUMENT_FIELD}}
            self._rows[row_id] = row.model_copy(update={"document": document, "metadata": metadata})
            updated += 1
        return updated

    async def delete(self, where: Where) -> None:
        for row_id in [rid for rid, row in self._rows.items() if matches_where(row.metadata, where)]:
            del self._rows[row_id]

    async def count(self) -> int:
        return len(self._rows)


class InMemoryBackend:
    """Simple in-memory vector database for testing.

    Uses brute-force cosine distance for search.
    """

    def __init__(self) -> None:
        self._tables: dict[str, InMemoryTable] = {}
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def table_names(self) -> list[str]:
        return list(self._tables)

    async def create_table(self, name: str, rows: list[VectorRow]) -> InMemoryTable:
        if name in self._tables:
            raise ValueError(f"Table {name} already exists")
        table = InMemoryTable()
        await table.add(rows)
        self._tables[name] = table
        return table

    async def open_table(self, name: str) -> InMemoryTable:
        if name not in self._tables:
            raise ValueError(f"Table {name} does not exist")
        return self._tables[name]

    async def close(self) -> None:
        self.connected = False


# ---------------------------------------------------------------------------
# ChromaDB
# ---------------------------------------------------------------------------


def _chroma_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma rejects None metadata values
    return {k: v for k, v in metadata.items() if v is not None}


class ChromaTable:
    """A ChromaDB collection used as a vector table."""

    def __init__(self, collection: Any) -> None:
        self._collection = collection

    async def add(self, rows: list[VectorRow]) -> None:
        if not rows:
            return
        await asyncio.to_thread(
            self._collection.add,
            ids=[r.id for r in rows],
            embeddings=[r.vector for r in rows],
            metadatas=[_chroma_metadata(r.metadata) for r in rows],
            documents=[r.document for r in rows],
        )

    async def search(
        self,
        vector: list[float],
        limit: int = 10,
        where: Where | None = None,
    ) -> list[VectorRow]:
        total = await self.count()
        n_results = min(limit, total)
        if n_results <= 0:
            return []

        results = await asyncio.to_thread(
            self._collection.query,
            query_embeddings=[vector],
            n_results=n_results,
            where=where or None,
            include=["distances", "metadatas", "documents"],
        )

        rows = []
        if results and results.get("ids"):
            ids = results["ids"][0]
            distances = (results.get("distances") or [[]])[0]
            metadatas = (results.get("metadatas") or [[]])[0]
            documents = (results.get("documents") or [[]])[0]

            for i, id_ in enumerate(ids):
                rows.append(
                    VectorRow(
                        id=id_,
                        metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
                        document=(documents[i] or "") if i < len(documents) else "",
                        distance=float(distances[i]) if i < len(distances) else 1.0,
                    )
                )

        return rows

    async def scan(
        self,
        where: Where | None = None,
        limit: int | None = None,
        include_vectors: bool = False,
    ) -> list[VectorRow]:
        include = ["metadatas", "documents"]
        if include_vectors:
            include.append("embeddings")

        results = await asyncio.to_thread(
            self._collection.get,
            where=where or None,
            limit=limit,
            include=include,
        )

        rows = []
        if results and results.get("ids"):
            ids = results["ids"]
            metadatas = results.get("metadatas") or []
            documents = results.get("documents") or []
            # newer chromadb releases return embeddings as a numpy array
            embeddings = results.get("embeddings")
            if embeddings is None:
                embeddings = []

            for i, id_ in enumerate(ids):
                rows.append(
                    VectorRow(
                        id=id_,
                        vector=[float(x) for x in embeddings[i]] if i < len(embeddings) else [],
                        metadata=dict(metadatas[i] or {}) if i < len(metadatas) else {},
                        document=(documents[i] or "") if i < len(documents) else "",
                    )
                )

        return rows

    async def update(self, where: Where, values: dict[str, Any]) -> int:
        # Stored vectors are passed back so chroma never re-embeds the document
        existing = await self.scan(where, include_vectors=True)
        if not existing:
            return 0

        document = values.get(DOCUMENT_FIELD)
        columns = {k: v for k, v in values.items() if k != DOCUMENT_FIELD}

        await asyncio.to_thread(
            self._collection.update,
            ids=[row.id for row in existing],
            embeddings=[row.vector for row in existing],
            metadatas=[_chroma_metadata({**row.metadata, **columns}) for row in existing],
            documents=[row.document if document is None else document for row in existing],
        )
        return len(existing)

    async def delete(self, where: Where) -> None:
        await asyncio.to_thread(self._collection.delete, where=where)

    async def count(self) -> int:
        return await asyncio.to_thread(self._collection.count)


class ChromaDBBackend:
    """ChromaDB backend for local and single-host deployments.

    Persists data to disk under persist_directory and provides efficient
    vector search over cosine distance.

    Requires: pip install chromadb
    """

    def __init__(self, persist_directory: Path | str) -> None:
        self._persist_directory = Path(persist_directory)
        self._client: Any = None

    async def connect(self) -> None:
        """Create the persist directory and the ChromaDB client."""
        import chromadb

        self._persist_directory.mkdir(parents=True, exist_ok=True)
        self._client = await asyncio.to_thread(
            chromadb.PersistentClient, path=str(self._persist_directory)
        )
        logger.info(f"ChromaDB connected at {self._persist_directory}")

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("ChromaDB backend is not connected")
        return self._client

    async def table_names(self) -> list[str]:
        client = self._require_client()
        collections = await asyncio.to_thread(client.list_collections)
        # chromadb < 0.6 returns Collection objects, newer releases return names
        return [c if isinstance(c, str) else c.name for c in collections]

    async def create_table(self, name: str, rows: list[VectorRow]) -> ChromaTable:
        client = self._require_client()
        collection = await asyncio.to_thread(
            client.create_collection,
            name=name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )
        table = ChromaTable(collection)
        await table.add(rows)
        return table

    async def open_table(self, name: str) -> ChromaTable:
        client = self._require_client()
        collection = await asyncio.to_thread(
            client.get_collection, name=name, embedding_function=None
        )
        return ChromaTable(collection)

    async def close(self) -> None:
        self._client = None
