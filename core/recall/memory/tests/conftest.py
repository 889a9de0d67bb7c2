"""
Shared fixtures for episodic memory tests.

Provides a deterministic embedding function, stores backed by
InMemoryBackend, and factories for building episodes.
"""

import re
from datetime import timedelta
from typing import Awaitable, Callable

import pytest

from recall.memory.backend import InMemoryBackend, VectorRow
from recall.memory.config import MemoryConfig
from recall.memory.episode import (
    Episode,
    EpisodeBuilder,
    EpisodeOutcome,
    EpisodeReflection,
    EpisodeType,
    utc_now,
)
from recall.memory.record import EpisodeRecord
from recall.memory.store import EpisodicMemoryStore

STOP_WORDS = {"a", "an", "the", "to", "of", "and", "for", "with", "in", "on"}


def _stem(word: str) -> str:
    for suffix in ("ing", "ed", "es", "s", "e"):
        if word.endswith(suffix) and len(word) - len(suffix) >= 3:
            return word[: -len(suffix)]
    return word


class BagOfWordsEmbedder:
    """Deterministic embedding: stemmed word counts over a growing vocabulary."""

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = dimensions
        self.vocabulary: dict[str, int] = {}
        self.calls: list[str] = []

    def __call__(self, text: str) -> list[float]:
        self.calls.append(text)
        vector = [0.0] * self.dimensions
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            if word in STOP_WORDS:
                continue
            stem = _stem(word)
            if stem not in self.vocabulary:
                self.vocabulary[stem] = len(self.vocabulary) % self.dimensions
            vector[self.vocabulary[stem]] += 1.0
        return vector


@pytest.fixture
def embedder() -> BagOfWordsEmbedder:
    return BagOfWordsEmbedder()


@pytest.fixture
def memory_config(tmp_path) -> MemoryConfig:
    return MemoryConfig(data_dir=tmp_path / "episodes", backend="memory")


@pytest.fixture
def store(tmp_path, embedder, memory_config) -> EpisodicMemoryStore:
    """EpisodicMemoryStore backed by an InMemoryBackend."""
    return EpisodicMemoryStore(
        base_path=tmp_path / "store",
        backend=InMemoryBackend(),
        embedding_function=embedder,
        config=memory_config,
    )


@pytest.fixture
def make_episode() -> Callable[..., Episode]:
    """
    Factory fixture building episodes through EpisodeBuilder.

    Accepts task/outcome/reflection overrides plus:
        actions: number of actions to record
        output_chars: length of each action's output
        age_days: backdate created_at by this many days
    """

    def _make_episode(
        task_description: str = "Implement caching",
        outcome: EpisodeOutcome = EpisodeOutcome.SUCCESS,
        result: str = "Done",
        task_id: str = "task_1",
        folder_id: str = "folder_1",
        episode_type: EpisodeType = EpisodeType.TASK_EXECUTION,
        what_worked: list[str] | None = None,
        what_failed: list[str] | None = None,
        key_insights: list[str] | None = None,
        user_rating: int | None = None,
        tags: list[str] | None = None,
        actions: int = 0,
        output_chars: int = 0,
        age_days: float = 0,
    ) -> Episode:
        builder = EpisodeBuilder(task_id, folder_id, episode_type)
        builder.set_context(task_description=task_description, project_path="/repo")
        for i in range(actions):
            builder.add_action(
                action=f"step {i}",
                tool="run_command",
                output="x" * output_chars,
                duration=100,
            )

        reflection = EpisodeReflection(
            what_worked=what_worked or [],
            what_failed=what_failed or [],
            key_insights=key_insights or [],
            user_rating=user_rating,
        )
        episode = builder.build(outcome, result, reflection, tags)

        if age_days:
            created = utc_now() - timedelta(days=age_days)
            episode = episode.model_copy(update={"created_at": created, "updated_at": created})
        return episode

    return _make_episode


@pytest.fixture
def corrupt_row() -> Callable[..., Awaitable[None]]:
    """
    Factory fixture inserting a row whose payload cannot be deserialized.

    The row copies the scalar columns and vector of a valid record so that
    it matches the same filters and queries.
    """

    async def _corrupt_row(store: EpisodicMemoryStore, template: EpisodeRecord, row_id: str) -> None:
        table = await store.backend.open_table(store.config.table_name)
        metadata = {**template.scalar_columns(), "id": row_id}
        await table.add(
            [VectorRow(id=row_id, vector=template.vector, metadata=metadata, document="{not json")]
        )

    return _corrupt_row
