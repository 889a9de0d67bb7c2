"""Tests for the persistent ChromaDB backend."""

from pathlib import Path
import tempfile

import pytest

pytest.importorskip("chromadb")

from recall.memory.backend import ChromaDBBackend, VectorRow  # noqa: E402
from recall.memory.episode import EpisodeOutcome, EpisodeSearchOptions  # noqa: E402
from recall.memory.retriever import EpisodeRetriever  # noqa: E402
from recall.memory.store import EpisodicMemoryStore  # noqa: E402


def _row(row_id: str, vector: list[float], **metadata) -> VectorRow:
    return VectorRow(id=row_id, vector=vector, metadata={"id": row_id, **metadata}, document=row_id)


class TestChromaDBBackend:
    @pytest.mark.asyncio
    async def test_table_lifecycle(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            backend = ChromaDBBackend(Path(tmpdir))
            await backend.connect()

            assert await backend.table_names() == []

            table = await backend.create_table(
                "rows",
                [
                    _row("a", [1.0, 0.0], kind="x", score=10),
                    _row("b", [0.0, 1.0], kind="y", score=90),
                ],
            )

            assert await backend.table_names() == ["rows"]
            assert await table.count() == 2

            nearest = await table.search([1.0, 0.1], limit=10)
            assert [r.id for r in nearest] == ["a", "b"]
            assert nearest[0].distance < nearest[1].distance

            filtered = await table.search([1.0, 0.0], limit=10, where={"score": {"$gte": 50}})
            assert [r.id for r in filtered] == ["b"]

            assert await table.update({"id": "a"}, {"document": "changed", "score": 20}) == 1
            updated = (await table.scan({"id": "a"}, include_vectors=True))[0]
            assert updated.document == "changed"
            assert updated.metadata["score"] == 20
            assert updated.metadata["kind"] == "x"
            assert updated.vector == pytest.approx([1.0, 0.0])

            await table.delete({"kind": "y"})
            assert await table.count() == 1

            await backend.close()

    @pytest.mark.asyncio
    async def test_none_metadata_is_dropped(self, tmp_path):
        backend = ChromaDBBackend(tmp_path)
        await backend.connect()

        table = await backend.create_table("rows", [_row("a", [1.0, 0.0], rating=None)])
        row = (await table.scan())[0]

        assert "rating" not in row.metadata


class TestChromaEpisodeStore:
    @pytest.mark.asyncio
    async def test_persists_across_stores(self, tmp_path, embedder, make_episode):
        episode = make_episode(
            task_description="Implement caching",
            result="Cache added",
            key_insights=["Use consistent cache key naming"],
        )
        first = EpisodicMemoryStore(tmp_path, embedding_function=embedder)
        await first.store(episode)
        await first.close()

        second = EpisodicMemoryStore(tmp_path, embedding_function=embedder)

        assert await second.get(episode.id) == episode

        results = await EpisodeRetriever(second).search(
            "add a cache layer", EpisodeSearchOptions(outcomes=[EpisodeOutcome.SUCCESS])
        )
        assert [r.episode.id for r in results] == [episode.id]

        await second.update(episode.with_tags(["cache"]))
        assert (await second.get(episode.id)).tags == ("cache",)

        await second.delete(episode.id)
        assert await second.count() == 0

    @pytest.mark.asyncio
    async def test_compaction_keeps_stored_vector(self, tmp_path, embedder, make_episode):
        store = EpisodicMemoryStore(tmp_path, embedding_function=embedder)
        episode = make_episode(actions=50, output_chars=1200, age_days=40)
        await store.store(episode)
        table = await store.backend.open_table(store.config.table_name)
        before = (await table.scan({"id": episode.id}, include_vectors=True))[0]

        assert await store.compress_old_episodes() == 1

        after = (await table.scan({"id": episode.id}, include_vectors=True))[0]
        assert after.vector == pytest.approx(before.vector)
        assert after.vector == pytest.approx(embedder(episode.get_embedding_text()))
        assert (await store.get(episode.id)).trajectory.compressed_summary is not None

        results = await EpisodeRetriever(store).search("implement caching")
        assert [r.episode.id for r in results] == [episode.id]
