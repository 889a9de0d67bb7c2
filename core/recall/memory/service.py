"""EpisodicMemoryService - High-level interface for episodic memory.

One facade over a folder's store, retriever and recorder:
- Context injection: prime a new task with similar past experience
- Recording: capture task executions as episodes
- Retrieval and analysis: search, learnings, statistics, cross-episode patterns
- Hindsight: reflection notes generated from recorded trajectories
- Promotion: high-quality, consistent episodes as reusable pattern candidates
- Management: feedback, tags, deletion, compaction
"""

from __future__ import annotations

import logging
from collections import Counter

from pydantic import BaseModel, Field

from recall.memory.config import CompactionConfig
from recall.memory.episode import (
    CompressionStatistics,
    Episode,
    EpisodeOutcome,
    EpisodeReflection,
    EpisodeSearchOptions,
    EpisodeSearchResult,
    EpisodeStatistics,
    SimilarExperiences,
)
from recall.memory.hindsight import (
    HindsightAnalysis,
    PatternAnalysis,
    analyze_episode_patterns,
    apply_hindsight,
    generate_hindsight,
)
from recall.memory.recorder import EpisodeRecorder
from recall.memory.registry import StoreRegistry
from recall.memory.retriever import EpisodeRetriever
from recall.memory.store import EpisodicMemoryStore

logger = logging.getLogger(__name__)

MAX_LEARNINGS = 5
LEARNINGS_SEARCH_LIMIT = 10
PROMPT_ITEMS_PER_SECTION = 2
PROMPT_APPROACH_CHARS = 200
STATS_SAMPLE_SIZE = 50
STATS_MIN_QUALITY = 50
PATTERN_SAMPLE_SIZE = 50
PROMOTION_MIN_QUALITY = 70
PROMOTION_CANDIDATES = 20
PROMOTION_SIMILAR_LIMIT = 5
PROMOTION_MIN_SIMILAR = 3


class ContextInjection(BaseModel):
    """Past experience rendered for a new task."""

    has_relevant_experience: bool = False
    success_approaches: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    context_text: str = ""


class LearningOutcome(BaseModel):
    """Patterns, recommendations and avoidances distilled from episodes."""

    patterns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    avoidances: list[str] = Field(default_factory=list)


class MemoryStats(BaseModel):
    total_episodes: int = 0
    success_rate: float = 0.0  # percent
    avg_quality_score: float = 0.0
    top_insights: list[str] = Field(default_factory=list)
    common_failures: list[str] = Field(default_factory=list)


class PatternCandidate(BaseModel):
    """An insight backed by promotable episodes."""

    pattern: str
    confidence: float
    evidence: list[str] = Field(default_factory=list)


def render_context(experiences: SimilarExperiences) -> str:
    """Markdown block of successes, failure warnings and insights."""
    parts: list[str] = []

    if experiences.successful_approaches:
        parts.append("## Relevant Past Successes\n")
        for result in experiences.successful_approaches:
            parts.append(result.episode.get_context_for_similar_task())
            parts.append("")

    if experiences.warnings_from_failures:
        parts.append("## Warnings from Past Failures\n")
        for result in experiences.warnings_from_failures:
            parts.append("⚠️ Similar task failed previously:")
            parts.append(result.episode.get_context_for_similar_task())
            parts.append("")

    if experiences.relevant_insights:
        parts.append("## Key Insights from Experience\n")
        parts.extend(f"- 💡 {insight}" for insight in experiences.relevant_insights)

    return "\n".join(parts)


class EpisodicMemoryService:
    """Facade over one folder's episodic memory.

    Usage:
        registry = StoreRegistry(MemoryConfig(), embedding_function=embed)
        service = EpisodicMemoryService.for_folder(registry, "folder_1")

        context = await service.get_context_for_task("Implement caching")
        if context.has_relevant_experience:
            prompt = context.context_text
    """

    def __init__(
        self,
        store: EpisodicMemoryStore,
        retriever: EpisodeRetriever | None = None,
        recorder: EpisodeRecorder | None = None,
    ) -> None:
        self.store = store
        self.retriever = retriever or EpisodeRetriever(store)
        self.recorder = recorder or EpisodeRecorder(store)

    @classmethod
    def for_folder(
        cls,
        registry: StoreRegistry,
        folder_id: str | None = None,
    ) -> "EpisodicMemoryService":
        return cls(registry.get(folder_id))

    # --- context injection ---

    async def get_context_for_task(
        self,
        task_description: str,
        options: EpisodeSearchOptions | None = None,
    ) -> ContextInjection:
        experiences = await self.retriever.find_similar_experiences(task_description, options)

        if not experiences.has_experience:
            return ContextInjection()

        return ContextInjection(
            has_relevant_experience=True,
            success_approaches=[
                "; ".join(r.episode.reflection.what_worked)
                for r in experiences.successful_approaches
            ],
            warnings=[
                item
                for r in experiences.warnings_from_failures
                for item in r.episode.reflection.what_failed
            ],
            insights=list(experiences.relevant_insights),
            context_text=render_context(experiences),
        )

    async def generate_context_prompt(self, task_description: str, max_length: int = 1000) -> str:
        """Concise prompt prefix, or "" when there is no relevant experience."""
        context = await self.get_context_for_task(task_description)
        if not context.has_relevant_experience:
            return ""

        lines = ["Based on past experience:"]

        if context.success_approaches:
            lines.append("\n✓ What worked before:")
            lines.extend(
                f"  - {approach[:PROMPT_APPROACH_CHARS]}"
                for approach in context.success_approaches[:PROMPT_ITEMS_PER_SECTION]
            )

        if context.warnings:
            lines.append("\n⚠️ Avoid (caused failures):")
            lines.extend(f"  - {w}" for w in context.warnings[:PROMPT_ITEMS_PER_SECTION])

        if context.insights:
            lines.append("\n💡 Key insights:")
            lines.extend(f"  - {i}" for i in context.insights[:PROMPT_ITEMS_PER_SECTION])

        prompt = "\n".join(lines) + "\n"
        if len(prompt) > max_length:
            prompt = prompt[: max(0, max_length - 3)] + "..."
        return prompt

    # --- retrieval ---

    async def search(
        self,
        query: str,
        options: EpisodeSearchOptions | None = None,
    ) -> list[EpisodeSearchResult]:
        return await self.retriever.search(query, options)

    async def find_similar_experiences(
        self,
        task_description: str,
        options: EpisodeSearchOptions | None = None,
    ) -> SimilarExperiences:
        return await self.retriever.find_similar_experiences(task_description, options)

    async def store_episode(self, episode: Episode) -> str:
        return await self.store.store(episode)

    async def get_episode(self, episode_id: str) -> Episode | None:
        return await self.store.get(episode_id)

    async def get_episodes_for_task(self, task_id: str) -> list[Episode]:
        return await self.store.get_by_task_id(task_id)

    async def get_recent_episodes(self, limit: int = 5) -> list[Episode]:
        return await self.store.get_recent(limit)

    # --- learning & analysis ---

    async def extract_learnings(
        self,
        query: str,
        options: EpisodeSearchOptions | None = None,
    ) -> LearningOutcome:
        """Insights and what worked from successes; what failed from failures."""
        opts = (options or EpisodeSearchOptions()).model_copy(
            update={"limit": LEARNINGS_SEARCH_LIMIT}
        )
        results = await self.retriever.search(query, opts)

        patterns: dict[str, None] = {}
        recommendations: dict[str, None] = {}
        avoidances: dict[str, None] = {}
        for result in results:
            episode = result.episode
            if episode.is_success():
                patterns.update(dict.fromkeys(episode.reflection.key_insights))
                recommendations.update(dict.fromkeys(episode.reflection.what_worked))
            elif episode.is_failed():
                avoidances.update(dict.fromkeys(episode.reflection.what_failed))

        return LearningOutcome(
            patterns=list(patterns)[:MAX_LEARNINGS],
            recommendations=list(recommendations)[:MAX_LEARNINGS],
            avoidances=list(avoidances)[:MAX_LEARNINGS],
        )

    async def get_statistics(self) -> EpisodeStatistics:
        return await self.store.get_statistics()

    async def get_memory_stats(self) -> MemoryStats:
        """Store statistics plus the most frequent insights and failures."""
        stats = await self.store.get_statistics()
        recent = await self.store.get_recent(STATS_SAMPLE_SIZE)

        insight_counts: Counter[str] = Counter()
        failure_counts: Counter[str] = Counter()
        for episode in recent:
            if episode.is_success() and episode.get_quality_score() >= STATS_MIN_QUALITY:
                insight_counts.update(episode.reflection.key_insights)
            elif episode.outcome.outcome == EpisodeOutcome.FAILURE:
                failure_counts.update(episode.reflection.what_failed)

        return MemoryStats(
            total_episodes=stats.total_episodes,
            success_rate=round(stats.success_rate * 100, 1),
            avg_quality_score=round(stats.avg_quality_score, 1),
            top_insights=[i for i, _ in insight_counts.most_common(MAX_LEARNINGS)],
            common_failures=[f for f, _ in failure_counts.most_common(MAX_LEARNINGS)],
        )

    # --- hindsight ---

    async def generate_hindsight(self, episode_id: str) -> HindsightAnalysis | None:
        episode = await self.store.get(episode_id)
        if episode is None:
            return None
        return generate_hindsight(episode)

    async def apply_hindsight(self, episode_id: str) -> Episode | None:
        """Merge generated notes into a stored episode's reflection.

        Notes the episode already carries are kept as they are.
        """
        episode = await self.store.get(episode_id)
        if episode is None:
            return None

        updated = apply_hindsight(episode)
        await self.store.update(updated)
        return updated

    async def complete_recording_with_hindsight(
        self,
        session_id: str,
        outcome: EpisodeOutcome | str,
        result: str,
        reflection: EpisodeReflection | None = None,
        tags: list[str] | None = None,
    ) -> Episode:
        """Complete a recording, filling the reflection from the trajectory."""
        return await self.recorder.complete_recording(
            session_id, outcome, result, reflection, tags, hindsight=True
        )

    async def analyze_patterns(self, options: EpisodeSearchOptions | None = None) -> PatternAnalysis:
        """Common success and failure patterns over recent matching episodes."""
        where = self.retriever.build_filter(options or EpisodeSearchOptions())
        episodes = await self.store.get_recent(PATTERN_SAMPLE_SIZE, where=where)
        return analyze_episode_patterns(episodes)

    # --- promotion ---

    async def identify_promotable_episodes(self) -> list[Episode]:
        """High-quality episodes whose similar episodes agree on the outcome.

        A candidate needs quality >= PROMOTION_MIN_QUALITY and at least
        PROMOTION_MIN_SIMILAR similar episodes (itself included) that all
        succeeded or all failed.
        """
        candidates = await self.store.get_recent(
            PROMOTION_CANDIDATES,
            where={"quality_score": {"$gte": PROMOTION_MIN_QUALITY}},
        )

        promotable = []
        for episode in candidates:
            similar = await self.retriever.search(
                episode.context.task_description,
                EpisodeSearchOptions(limit=PROMOTION_SIMILAR_LIMIT),
            )
            if len(similar) < PROMOTION_MIN_SIMILAR:
                continue
            if all(s.episode.is_success() for s in similar) or all(
                s.episode.is_failed() for s in similar
            ):
                promotable.append(episode)

        logger.debug(f"{len(promotable)} of {len(candidates)} candidates are promotable")
        return promotable

    async def extract_pattern_candidates(self) -> list[PatternCandidate]:
        """Key insights of promotable successes, as reusable pattern candidates."""
        candidates = []
        for episode in await self.identify_promotable_episodes():
            if not episode.is_success():
                continue
            confidence = episode.get_quality_score() / 100
            candidates.extend(
                PatternCandidate(pattern=insight, confidence=confidence, evidence=[episode.id])
                for insight in episode.reflection.key_insights
            )
        return candidates

    # --- management ---

    async def add_feedback(
        self,
        episode_id: str,
        rating: int,
        feedback: str | None = None,
    ) -> Episode | None:
        episode = await self.store.get(episode_id)
        if episode is None:
            return None

        updated = episode.with_user_feedback(rating, feedback)
        await self.store.update(updated)
        return updated

    async def add_tags(self, episode_id: str, tags: list[str]) -> Episode | None:
        episode = await self.store.get(episode_id)
        if episode is None:
            return None

        updated = episode.with_tags(tags)
        await self.store.update(updated)
        return updated

    async def delete_episode(self, episode_id: str) -> None:
        await self.store.delete(episode_id)

    async def compress_old_episodes(self, options: CompactionConfig | None = None) -> int:
        return await self.store.compress_old_episodes(options)

    async def get_compression_stats(self) -> CompressionStatistics:
        return await self.store.get_compression_stats()
