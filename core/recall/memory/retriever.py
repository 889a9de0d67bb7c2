"""EpisodeRetriever - Retrieves relevant past experiences.

The EpisodeRetriever answers "what happened last time we did something like
this?". It embeds the query, over-fetches nearest neighbours from the store
with filters pushed down, then re-ranks with a fused score:

    score = max(0, 1 - distance)
          + recency boost  (fresh episodes, linear decay over the window)
          + quality boost  (stored quality score)

clamped to 1.0.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

from pydantic import ValidationError

from recall.memory.backend import Where, where_all, where_in
from recall.memory.config import RetrievalConfig
from recall.memory.embeddings import EmbeddingFunction, get_embedding
from recall.memory.episode import (
    EpisodeOutcome,
    EpisodeSearchOptions,
    EpisodeSearchResult,
    SimilarExperiences,
    utc_now,
)
from recall.memory.record import EpisodeRecord, to_epoch_ms
from recall.memory.store import EpisodicMemoryStore

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000


def get_relevance_reason(record: EpisodeRecord, score: float) -> str:
    """Short human-readable explanation of why a result was returned."""
    if score > 0.8:
        reasons = ["Highly similar task"]
    elif score > 0.6:
        reasons = ["Similar task"]
    else:
        reasons = ["Related task"]

    if record.outcome == EpisodeOutcome.SUCCESS.value:
        reasons.append("successful")
    elif record.outcome == EpisodeOutcome.FAILURE.value:
        reasons.append("failed")

    if record.quality_score > 70:
        reasons.append("high quality learnings")

    return ", ".join(reasons)


class EpisodeRetriever:
    """Retrieves relevant episodes from episodic memory.

    Usage:
        store = EpisodicMemoryStore(base_path, embedding_function=embed)
        retriever = EpisodeRetriever(store)

        results = await retriever.search(
            "Implement caching layer",
            EpisodeSearchOptions(outcomes=[EpisodeOutcome.SUCCESS]),
        )
        experiences = await retriever.find_similar_experiences("Add a cache")
    """

    def __init__(
        self,
        store: EpisodicMemoryStore,
        embedding_function: EmbeddingFunction | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._store = store
        self._embedding_function = embedding_function
        self._config = config or store.config.retrieval

    @property
    def config(self) -> RetrievalConfig:
        return self._config

    async def _get_embedding_async(self, text: str) -> list[float]:
        if self._embedding_function is None:
            return await self._store.embed(text)
        return await get_embedding(self._embedding_function, text)

    def build_filter(self, options: EpisodeSearchOptions) -> Where | None:
        """Translate search options into a where predicate."""
        quality = None
        if options.min_quality_score is not None:
            quality = {"quality_score": {"$gte": options.min_quality_score}}

        return where_all(
            where_in("type", [t.value for t in options.types]),
            where_in("outcome", [o.value for o in options.outcomes]),
            {"folder_id": options.folder_id} if options.folder_id else None,
            quality,
        )

    def fuse_score(
        self,
        record: EpisodeRecord,
        prefer_recent: bool,
        now: datetime | None = None,
    ) -> float:
        cfg = self._config
        distance = record.distance if record.distance is not None else 1.0
        score = max(0.0, 1.0 - distance)

        if prefer_recent and cfg.recency_window_days > 0:
            age_days = max(0.0, (to_epoch_ms(now or utc_now()) - record.created_at) / MS_PER_DAY)
            score += max(0.0, 1.0 - age_days / cfg.recency_window_days) * cfg.recency_weight

        score += (record.quality_score / 100) * cfg.quality_weight

        return min(1.0, score)

    async def search(
        self,
        query: str,
        options: EpisodeSearchOptions | None = None,
    ) -> list[EpisodeSearchResult]:
        """Semantic search for episodes similar to a task description.

        Results are the first `limit` candidates (in nearest-neighbour order)
        whose fused score reaches `min_score`, sorted by score descending.
        """
        opts = options or EpisodeSearchOptions()
        cfg = self._config
        limit = opts.limit if opts.limit is not None else cfg.limit
        min_score = opts.min_score if opts.min_score is not None else cfg.min_score
        prefer_recent = opts.prefer_recent if opts.prefer_recent is not None else cfg.prefer_recent

        if limit <= 0 or not await self._store.has_table():
            return []

        vector = await self._get_embedding_async(query)
        records = await self._store.query(
            vector,
            limit=limit * cfg.over_fetch_factor,
            where=self.build_filter(opts),
        )

        now = utc_now()
        results: list[EpisodeSearchResult] = []
        for record in records:
            if len(results) >= limit:
                break

            score = self.fuse_score(record, prefer_recent, now)
            if score < min_score:
                continue

            try:
                episode = record.to_episode()
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Failed to parse episode {record.id}: {e}")
                continue

            results.append(
                EpisodeSearchResult(
                    episode=episode,
                    score=score,
                    relevance_reason=get_relevance_reason(record, score),
                )
            )

        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f"Search returned {len(results)} of {len(records)} candidates")
        return results

    async def find_similar_experiences(
        self,
        task_description: str,
        options: EpisodeSearchOptions | None = None,
    ) -> SimilarExperiences:
        """Successful approaches, failure warnings and insights for a task."""
        opts = options or EpisodeSearchOptions()
        cfg = self._config

        successes = await self.search(
            task_description,
            opts.model_copy(
                update={"outcomes": [EpisodeOutcome.SUCCESS], "limit": cfg.success_limit}
            ),
        )
        failures = await self.search(
            task_description,
            opts.model_copy(
                update={"outcomes": [EpisodeOutcome.FAILURE], "limit": cfg.failure_limit}
            ),
        )

        insights: list[str] = []
        for result in [*successes, *failures]:
            for insight in result.episode.reflection.key_insights:
                if insight not in insights:
                    insights.append(insight)

        return SimilarExperiences(
            successful_approaches=successes,
            warnings_from_failures=failures,
            relevant_insights=insights[: cfg.max_insights],
        )

    def format_for_injection(
        self,
        results: list[EpisodeSearchResult],
        format_type: str = "summary",
    ) -> str:
        """Format search results for injection into LLM context.

        Args:
            results: Results to format
            format_type: "summary" or "detailed"

        Returns:
            Formatted string for LLM context.
        """
        if not results:
            return ""

        if format_type == "detailed":
            return self._format_detailed(results)
        return self._format_summary(results)

    def _format_summary(self, results: list[EpisodeSearchResult]) -> str:
        lines = ["## Relevant Past Experiences\n"]

        for i, result in enumerate(results, 1):
            ep = result.episode
            outcome_emoji = "✓" if ep.is_success() else "✗"
            lines.append(f"{i}. {outcome_emoji} {ep.context.task_description[:80]}")
            if ep.reflection.key_insights:
                lines.append(f"   Insight: {ep.reflection.key_insights[0][:100]}")

        return "\n".join(lines)

    def _format_detailed(self, results: list[EpisodeSearchResult]) -> str:
        lines = ["## Past Task Episodes\n"]

        for i, result in enumerate(results, 1):
            ep = result.episode
            lines.append(f"### Episode {i}: {ep.context.task_description[:80]}")
            lines.append(f"- **Outcome**: {ep.outcome.outcome.value}")
            lines.append(f"- **Relevance**: {result.relevance_reason} ({result.score:.2f})")

            tools = list(dict.fromkeys(a.tool for a in ep.trajectory.actions if a.tool))
            if tools:
                lines.append(f"- **Tools used**: {', '.join(tools)}")

            if ep.outcome.result:
                lines.append(f"- **Result**: {ep.outcome.result[:200]}")

            learnings = ep.get_learnings_summary()
            if learnings:
                lines.append(f"- **Learnings**: {learnings}")

            lines.append("")

        return "\n".join(lines)
