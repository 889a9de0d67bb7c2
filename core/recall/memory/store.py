"""Episodic Memory Store - Persistent storage with vector indexing.

The EpisodicMemoryStore coordinates:
1. Embedding episodes through the external embedding function
2. Persisting them as typed records in a vector table (via VectorBackend)
3. Lookups, statistics and batch compaction over the stored episodes
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from recall.memory.backend import (
    DOCUMENT_FIELD,
    ChromaDBBackend,
    InMemoryBackend,
    VectorBackend,
    VectorRow,
    VectorTable,
    Where,
    where_all,
)
from recall.memory.compaction import EpisodeCompactor
from recall.memory.config import CompactionConfig, MemoryConfig
from recall.memory.embeddings import EmbeddingFunction, get_embedding
from recall.memory.episode import CompressionStatistics, Episode, EpisodeStatistics
from recall.memory.errors import EpisodeStoreError
from recall.memory.record import EpisodeRecord, serialize_episode, to_epoch_ms

logger = logging.getLogger(__name__)


class EpisodicMemoryStore:
    """Persistent storage for episodes with vector indexing.

    Storage layout:
        {base_path}/
          chroma.sqlite3 ...   # vector database (ChromaDB backend)

    The table is created on the first insert. Reads against a store with no
    table return empty results.
    """

    def __init__(
        self,
        base_path: Path | str,
        backend: VectorBackend | None = None,
        embedding_function: EmbeddingFunction | None = None,
        config: MemoryConfig | None = None,
    ) -> None:
        self._base_path = Path(base_path)
        self._config = config or MemoryConfig()
        self._backend = backend if backend is not None else self._default_backend()
        self._embedding_function = embedding_function
        self._table_name = self._config.table_name

        self._table: VectorTable | None = None
        self._initialized = False
        self._init_task: asyncio.Future[None] | None = None
        self._create_task: asyncio.Future[VectorTable] | None = None

    def _default_backend(self) -> VectorBackend:
        if self._config.backend == "memory":
            return InMemoryBackend()
        return ChromaDBBackend(self._base_path)

    @property
    def backend(self) -> VectorBackend:
        return self._backend

    @property
    def base_path(self) -> Path:
        return self._base_path

    @property
    def config(self) -> MemoryConfig:
        return self._config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Connect to the backend and open the table if it exists.

        Concurrent callers share one in-flight initialization. A failure
        propagates to every waiting caller; the next call retries.
        """
        if self._initialized:
            return

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task

        try:
            await asyncio.shield(task)
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _initialize(self) -> None:
        await self._backend.connect()

        if self._table_name in await self._backend.table_names():
            self._table = await self._backend.open_table(self._table_name)

        self._initialized = True
        logger.info(f"EpisodicMemoryStore initialized at {self._base_path}")

    async def close(self) -> None:
        """Release the backend. The store re-initializes on next use."""
        await self._backend.close()
        self._table = None
        self._initialized = False
        self._init_task = None
        self._create_task = None

    async def has_table(self) -> bool:
        await self.initialize()
        return self._table is not None

    async def embed(self, text: str) -> list[float]:
        if self._embedding_function is None:
            raise EpisodeStoreError("No embedding function configured")
        return await get_embedding(self._embedding_function, text)

    async def _insert(self, row: VectorRow) -> None:
        """Add a row, creating the table on first use."""
        if self._table is not None:
            await self._table.add([row])
            return

        created_here = False
        if self._create_task is None:
            self._create_task = asyncio.ensure_future(
                self._backend.create_table(self._table_name, [row])
            )
            created_here = True
        task = self._create_task

        try:
            table = await asyncio.shield(task)
        except Exception:
            if self._create_task is task:
                self._create_task = None
            raise

        if self._table is None:
            self._table = table
            logger.info(f"Created table {self._table_name} at {self._base_path}")

        if not created_here:
            await table.add([row])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _to_record(self, episode: Episode) -> EpisodeRecord:
        vector = await self.embed(episode.get_embedding_text())
        return EpisodeRecord.from_episode(episode, vector)

    async def store(self, episode: Episode) -> str:
        """Embed and store an episode.

        Returns:
            The episode id.
        """
        await self.initialize()

        record = await self._to_record(episode)
        await self._insert(record.to_row())

        logger.debug(f"Stored episode {episode.id} (task {episode.task_id})")
        return episode.id

    async def update(self, episode: Episode) -> None:
        """Replace a stored episode, re-embedding it."""
        await self.initialize()

        if self._table is None:
            raise EpisodeStoreError("Episode table not initialized")

        record = await self._to_record(episode)
        await self._table.delete({"id": episode.id})
        await self._table.add([record.to_row()])

    async def delete(self, episode_id: str) -> None:
        """Delete an episode. Does nothing if it is absent."""
        await self.initialize()

        if self._table is None:
            return

        await self._table.delete({"id": episode_id})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _parse_records(self, rows: list[VectorRow]) -> list[EpisodeRecord]:
        records = []
        for row in rows:
            try:
                records.append(EpisodeRecord.from_row(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed episode row {row.id}: {e}")
        return records

    def _parse_episodes(self, records: list[EpisodeRecord]) -> list[Episode]:
        episodes = []
        for record in records:
            try:
                episodes.append(record.to_episode())
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Failed to parse episode {record.id}: {e}")
        return episodes

    async def _scan(self, where: Where | None = None, limit: int | None = None) -> list[EpisodeRecord]:
        await self.initialize()

        if self._table is None:
            return []

        rows = await self._table.scan(where, limit=limit or self._config.scan_limit)
        return self._parse_records(rows)

    async def query(
        self,
        vector: list[float],
        limit: int,
        where: Where | None = None,
    ) -> list[EpisodeRecord]:
        """Nearest-neighbour records for a vector, closest first."""
        await self.initialize()

        if self._table is None:
            return []

        rows = await self._table.search(vector, limit=limit, where=where)
        return self._parse_records(rows)

    async def get(self, episode_id: str) -> Episode | None:
        """Get a specific episode by ID."""
        episodes = self._parse_episodes(await self._scan({"id": episode_id}, limit=1))
        return episodes[0] if episodes else None

    async def get_by_task_id(self, task_id: str) -> list[Episode]:
        records = await self._scan({"task_id": task_id})
        records.sort(key=lambda r: r.created_at)
        return self._parse_episodes(records)

    async def get_recent(
        self,
        limit: int = 5,
        folder_id: str | None = None,
        where: Where | None = None,
    ) -> list[Episode]:
        """Most recently created episodes, newest first, optionally filtered."""
        where = where_all({"folder_id": folder_id} if folder_id else None, where)
        records = await self._scan(where)
        records.sort(key=lambda r: r.created_at, reverse=True)

        episodes: list[Episode] = []
        for record in records:
            if len(episodes) >= limit:
                break
            episodes.extend(self._parse_episodes([record]))
        return episodes

    async def count(self) -> int:
        await self.initialize()
        if self._table is None:
            return 0
        return await self._table.count()

    async def get_statistics(self) -> EpisodeStatistics:
        """Counts by type and outcome, average quality and duration."""
        return EpisodeStatistics.from_records(await self._scan())

    async def get_compression_stats(self) -> CompressionStatistics:
        records = await self._scan()
        return CompressionStatistics.from_episodes(len(records), self._parse_episodes(records))

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def compress_old_episodes(
        self,
        options: CompactionConfig | None = None,
        **overrides: Any,
    ) -> int:
        """Compact old, oversized episodes in place.

        A failure on one episode is logged and the pass moves on.

        Returns:
            Number of episodes compacted.
        """
        await self.initialize()

        if self._table is None:
            return 0

        config = options or self._config.compaction
        if overrides:
            config = CompactionConfig.from_dict({**config.to_dict(), **overrides})
        compactor = EpisodeCompactor(config)

        cutoff_ms = to_epoch_ms(compactor.cutoff())
        rows = await self._table.scan({"created_at": {"$lt": cutoff_ms}}, limit=config.limit)

        compacted = 0
        for row in rows:
            try:
                episode = EpisodeRecord.from_row(row).to_episode()
                if not compactor.is_eligible(episode):
                    continue

                updated = compactor.compact(episode)
                await self._table.update(
                    {"id": row.id},
                    {
                        DOCUMENT_FIELD: serialize_episode(updated),
                        "updated_at": to_epoch_ms(updated.updated_at),
                    },
                )
                compacted += 1
            except Exception as e:
                logger.warning(f"Failed to compress episode {row.id}: {e}", exc_info=True)

        logger.info(f"Compaction pass over {len(rows)} episodes compacted {compacted}")
        return compacted
