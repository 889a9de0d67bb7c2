"""Tests for EpisodicMemoryStore with the in-memory backend."""

import asyncio
import logging
from pathlib import Path
import tempfile

import pytest

from recall.memory.backend import DOCUMENT_FIELD, InMemoryBackend
from recall.memory.config import CompactionConfig, MemoryConfig
from recall.memory.episode import EpisodeOutcome, EpisodeType
from recall.memory.errors import EpisodeStoreError
from recall.memory.record import EpisodeRecord
from recall.memory.store import EpisodicMemoryStore


class CountingBackend(InMemoryBackend):
    """InMemoryBackend that counts connects and table creations."""

    def __init__(self, fail_connects: int = 0) -> None:
        super().__init__()
        self.connect_calls = 0
        self.create_calls = 0
        self._fail_connects = fail_connects

    async def connect(self) -> None:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.connect_calls <= self._fail_connects:
            raise ConnectionError("backend unavailable")
        await super().connect()

    async def create_table(self, name, rows):
        self.create_calls += 1
        await asyncio.sleep(0)
        return await super().create_table(name, rows)


class TestEpisodicMemoryStore:
    @pytest.mark.asyncio
    async def test_store_and_get(self, store, make_episode):
        episode = make_episode(tags=["cache"])

        episode_id = await store.store(episode)
        retrieved = await store.get(episode_id)

        assert episode_id == episode.id
        assert retrieved == episode
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, store, make_episode):
        assert await store.get("nope") is None

        await store.store(make_episode())

        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_reads_on_empty_store(self, store):
        assert await store.get_recent() == []
        assert await store.get_by_task_id("task_1") == []
        assert (await store.get_statistics()).total_episodes == 0
        assert (await store.get_compression_stats()).total_episodes == 0
        assert await store.compress_old_episodes() == 0
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_get_by_task_id(self, store, make_episode):
        first = make_episode(task_id="task_a", age_days=2)
        second = make_episode(task_id="task_a", age_days=1)
        await store.store(second)
        await store.store(first)
        await store.store(make_episode(task_id="task_b"))

        episodes = await store.get_by_task_id("task_a")

        assert [e.id for e in episodes] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_get_recent_newest_first(self, store, make_episode):
        old = make_episode(age_days=3)
        newest = make_episode(age_days=1)
        middle = make_episode(age_days=2)
        other_folder = make_episode(folder_id="folder_2")
        for episode in (old, newest, middle, other_folder):
            await store.store(episode)

        recent = await store.get_recent(limit=2, folder_id="folder_1")

        assert [e.id for e in recent] == [newest.id, middle.id]
        assert (await store.get_recent(limit=10))[0].id == other_folder.id

    @pytest.mark.asyncio
    async def test_update_replaces_episode(self, store, make_episode, embedder):
        episode = make_episode()
        await store.store(episode)

        updated = episode.with_tags(["reviewed"]).with_user_feedback(5, "Helpful")
        await store.update(updated)
        retrieved = await store.get(episode.id)

        assert retrieved.tags == ("reviewed",)
        assert retrieved.reflection.user_rating == 5
        assert await store.count() == 1
        assert len(embedder.calls) == 2

    @pytest.mark.asyncio
    async def test_update_without_table_fails(self, store, make_episode):
        with pytest.raises(EpisodeStoreError):
            await store.update(make_episode())

    @pytest.mark.asyncio
    async def test_delete(self, store, make_episode):
        await store.delete("missing")

        episode = make_episode()
        await store.store(episode)
        await store.delete(episode.id)
        await store.delete(episode.id)

        assert await store.get(episode.id) is None
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_store_without_embedding_function(self, tmp_path, make_episode):
        store = EpisodicMemoryStore(base_path=tmp_path, backend=InMemoryBackend())

        with pytest.raises(EpisodeStoreError):
            await store.store(make_episode())

    @pytest.mark.asyncio
    async def test_async_embedding_function(self, tmp_path, make_episode, embedder):
        async def embed(text: str) -> list[float]:
            return embedder(text)

        store = EpisodicMemoryStore(base_path=tmp_path, backend=InMemoryBackend(), embedding_function=embed)
        episode = make_episode()
        await store.store(episode)

        assert await store.get(episode.id) == episode

    @pytest.mark.asyncio
    async def test_statistics(self, store, make_episode):
        await store.store(make_episode(outcome=EpisodeOutcome.SUCCESS))
        await store.store(make_episode(outcome=EpisodeOutcome.FAILURE))
        await store.store(
            make_episode(outcome=EpisodeOutcome.SUCCESS, episode_type=EpisodeType.TOOL_DISCOVERY)
        )

        stats = await store.get_statistics()

        assert stats.total_episodes == 3
        assert stats.by_outcome["success"] == 2
        assert stats.by_outcome["failure"] == 1
        assert stats.by_type["tool_discovery"] == 1
        assert stats.by_type["task_execution"] == 2
        assert stats.success_rate == pytest.approx(2 / 3)
        assert stats.avg_quality_score == pytest.approx((50 + 10 + 50) / 3)

    @pytest.mark.asyncio
    async def test_corrupt_payload_is_skipped(self, store, make_episode, corrupt_row):
        good = make_episode(age_days=1)
        await store.store(good)
        await corrupt_row(store, EpisodeRecord.from_episode(good, [1.0]), "corrupt")

        assert [e.id for e in await store.get_recent(limit=10)] == [good.id]
        assert await store.get("corrupt") is None
        assert (await store.get_compression_stats()).total_episodes == 2

    @pytest.mark.asyncio
    async def test_default_backend_follows_config(self, tmp_path):
        store = EpisodicMemoryStore(tmp_path, config=MemoryConfig(backend="memory"))

        assert isinstance(store.backend, InMemoryBackend)

    @pytest.mark.asyncio
    async def test_memory_backend_does_not_touch_disk(self, tmp_path, embedder, make_episode):
        base_path = tmp_path / "unused"
        store = EpisodicMemoryStore(
            base_path, embedding_function=embedder, config=MemoryConfig(backend="memory")
        )

        await store.store(make_episode())

        assert await store.count() == 1
        assert not base_path.exists()


class TestStoreInitialization:
    @pytest.mark.asyncio
    async def test_concurrent_initialize_connects_once(self, embedder):
        backend = CountingBackend()
        with tempfile.TemporaryDirectory() as tmpdir:
            store = EpisodicMemoryStore(Path(tmpdir), backend=backend, embedding_function=embedder)

            await asyncio.gather(*(store.initialize() for _ in range(5)))

            assert backend.connect_calls == 1
            assert backend.connected

    @pytest.mark.asyncio
    async def test_failed_initialize_can_be_retried(self, tmp_path, embedder):
        backend = CountingBackend(fail_connects=1)
        store = EpisodicMemoryStore(tmp_path, backend=backend, embedding_function=embedder)

        results = await asyncio.gather(store.initialize(), store.initialize(), return_exceptions=True)
        assert all(isinstance(r, ConnectionError) for r in results)
        assert backend.connect_calls == 1

        await store.initialize()
        assert backend.connect_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_first_stores_create_one_table(self, tmp_path, embedder, make_episode):
        backend = CountingBackend()
        store = EpisodicMemoryStore(tmp_path, backend=backend, embedding_function=embedder)
        episodes = [make_episode() for _ in range(4)]

        await asyncio.gather(*(store.store(e) for e in episodes))

        assert backend.create_calls == 1
        assert await store.count() == 4
        for episode in episodes:
            assert await store.get(episode.id) == episode

    @pytest.mark.asyncio
    async def test_reopen_existing_table(self, tmp_path, embedder, make_episode):
        backend = InMemoryBackend()
        first = EpisodicMemoryStore(tmp_path, backend=backend, embedding_function=embedder)
        episode = make_episode()
        await first.store(episode)
        await first.close()

        second = EpisodicMemoryStore(tmp_path, backend=backend, embedding_function=embedder)

        assert await second.has_table()
        assert await second.get(episode.id) == episode

    @pytest.mark.asyncio
    async def test_close_resets_state(self, store, make_episode):
        await store.store(make_episode())

        await store.close()

        assert not store.backend.connected
        assert await store.count() == 1
        assert store.backend.connected


class TestCompressOldEpisodes:
    @pytest.mark.asyncio
    async def test_compaction_trigger(self, store, make_episode):
        large = make_episode(actions=50, output_chars=1200, age_days=40)
        small = make_episode(actions=10, output_chars=1200, age_days=40)
        fresh = make_episode(actions=50, output_chars=1200)
        for episode in (large, small, fresh):
            await store.store(episode)

        compacted = await store.compress_old_episodes()

        assert compacted == 1
        large_after = await store.get(large.id)
        summary = large_after.trajectory.compressed_summary
        assert summary is not None
        assert summary.compressed_token_count < summary.original_token_count
        assert large_after.trajectory.recent_actions == large.trajectory.actions[-5:]
        assert await store.get(small.id) == small
        assert await store.get(fresh.id) == fresh

    @pytest.mark.asyncio
    async def test_compaction_is_idempotent(self, store, make_episode):
        await store.store(make_episode(actions=50, output_chars=1200, age_days=40))
        await store.store(make_episode(actions=60, output_chars=1200, age_days=45))

        assert await store.compress_old_episodes() == 2
        assert await store.compress_old_episodes() == 0

        stats = await store.get_compression_stats()
        assert stats.total_episodes == 2
        assert stats.compressed_episodes == 2
        assert stats.total_tokens_saved > 0
        assert 0 < stats.avg_compression_ratio < 1

    @pytest.mark.asyncio
    async def test_compaction_options(self, store, make_episode):
        episode = make_episode(actions=10, output_chars=1200, age_days=5)
        await store.store(episode)

        assert await store.compress_old_episodes() == 0
        assert (
            await store.compress_old_episodes(
                CompactionConfig(older_than_days=1, token_threshold=1000)
            )
            == 1
        )

    @pytest.mark.asyncio
    async def test_compaction_overrides(self, store, make_episode):
        await store.store(make_episode(actions=10, output_chars=1200, age_days=5))

        assert await store.compress_old_episodes(older_than_days=1, token_threshold=1000) == 1

    @pytest.mark.asyncio
    async def test_compaction_limit(self, store, make_episode):
        for _ in range(3):
            await store.store(make_episode(actions=50, output_chars=1200, age_days=40))

        assert await store.compress_old_episodes(CompactionConfig(limit=2)) == 2
        assert await store.compress_old_episodes(CompactionConfig(limit=2)) <= 1

    @pytest.mark.asyncio
    async def test_compaction_skips_failing_episode(self, store, make_episode, corrupt_row, caplog):
        episode = make_episode(actions=50, output_chars=1200, age_days=40)
        await store.store(episode)
        await corrupt_row(store, EpisodeRecord.from_episode(episode, [1.0]), "corrupt")

        with caplog.at_level(logging.WARNING, logger="recall.memory.store"):
            assert await store.compress_old_episodes() == 1

        assert (await store.get(episode.id)).trajectory.compressed_summary is not None
        failures = [r for r in caplog.records if "Failed to compress episode corrupt" in r.getMessage()]
        assert len(failures) == 1
        assert failures[0].exc_info is not None

    @pytest.mark.asyncio
    async def test_compaction_updates_document_in_place(self, store, make_episode):
        episode = make_episode(actions=50, output_chars=1200, age_days=40)
        await store.store(episode)
        table = await store.backend.open_table(store.config.table_name)
        before = (await table.scan({"id": episode.id}))[0]

        await store.compress_old_episodes()
        after = (await table.scan({"id": episode.id}))[0]

        assert after.vector == before.vector
        assert after.document != before.document
        assert after.metadata["created_at"] == before.metadata["created_at"]
        assert DOCUMENT_FIELD not in after.metadata
