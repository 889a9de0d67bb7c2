"""Episode models for Episodic Memory.

An Episode is one recorded attempt at a task:
- Context: what the agent was asked to do and where
- Trajectory: actions, observations, decisions and pivots along the way
- Outcome: how it ended (success/failure, duration, error and tool counts)
- Reflection: what worked, what failed, key insights, user feedback

Episodes are immutable, down to their collection fields (tuples). They are
created through EpisodeBuilder and changed only by producing copies
(with_tags, with_reflection, with_user_feedback).
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from recall.memory.errors import EpisodeBuildError

if TYPE_CHECKING:
    from recall.memory.record import EpisodeRecord


def utc_now() -> datetime:
    return datetime.now(UTC)


class EpisodeType(str, Enum):
    """Kind of experience an episode records."""

    TASK_EXECUTION = "task_execution"
    ERROR_RECOVERY = "error_recovery"
    TOOL_DISCOVERY = "tool_discovery"
    AGENT_INTERACTION = "agent_interaction"
    USER_FEEDBACK = "user_feedback"


class EpisodeOutcome(str, Enum):
    """Outcome classification for an episode."""

    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class PivotTrigger(str, Enum):
    """What caused the agent to change approach."""

    ERROR = "error"
    FEEDBACK = "feedback"
    DISCOVERY = "discovery"
    TIMEOUT = "timeout"


class TrajectoryStep(BaseModel):
    """A single action taken during an episode."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    action: str
    tool: str | None = None
    input: str | None = None
    output: str | None = None
    duration: int = 0  # ms
    success: bool = True


class Decision(BaseModel):
    """A choice made between alternatives."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    context: str
    options: tuple[str, ...] = ()
    chosen: str
    reasoning: str = ""


class Pivot(BaseModel):
    """A change of approach mid-task."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    from_approach: str
    to_approach: str
    reason: str = ""
    trigger: PivotTrigger = PivotTrigger.DISCOVERY


class CompressedSummary(BaseModel):
    """Digest of the trajectory content removed by compaction."""

    model_config = ConfigDict(frozen=True)

    compressed_action_count: int = 0
    compressed_observation_count: int = 0
    action_summary: str = ""
    key_outcomes: tuple[str, ...] = ()
    errors_encountered: tuple[str, ...] = ()
    compressed_at: datetime = Field(default_factory=utc_now)
    original_token_count: int = 0
    compressed_token_count: int = 0


class EpisodeContext(BaseModel):
    """The situation an episode started from."""

    model_config = ConfigDict(frozen=True)

    task_description: str = ""
    project_path: str = ""
    initial_state: str = ""
    agent_provider: str | None = None
    session_id: str | None = None


class EpisodeTrajectory(BaseModel):
    """Everything the agent did and saw during an episode.

    recent_actions / recent_observations hold the rolling window preserved
    verbatim by compaction; they are None on uncompacted episodes.
    """

    model_config = ConfigDict(frozen=True)

    actions: tuple[TrajectoryStep, ...] = ()
    observations: tuple[str, ...] = ()
    decisions: tuple[Decision, ...] = ()
    pivots: tuple[Pivot, ...] = ()

    recent_actions: tuple[TrajectoryStep, ...] | None = None
    recent_observations: tuple[str, ...] | None = None
    compressed_summary: CompressedSummary | None = None


class EpisodeOutcomeData(BaseModel):
    """How an episode ended."""

    model_config = ConfigDict(frozen=True)

    outcome: EpisodeOutcome
    result: str = ""
    duration: int = 0  # ms
    cost: float | None = None
    error_count: int = 0
    tool_call_count: int = 0


class EpisodeReflection(BaseModel):
    """Lessons recorded after an episode."""

    model_config = ConfigDict(frozen=True)

    what_worked: tuple[str, ...] = ()
    what_failed: tuple[str, ...] = ()
    key_insights: tuple[str, ...] = ()
    would_do_differently: str | None = None
    user_rating: int | None = Field(default=None, ge=1, le=5)
    user_feedback: str | None = None

    def item_count(self) -> int:
        return len(self.what_worked) + len(self.what_failed) + len(self.key_insights)


OUTCOME_BASE_SCORE: dict[EpisodeOutcome, float] = {
    EpisodeOutcome.SUCCESS: 50.0,
    EpisodeOutcome.PARTIAL: 30.0,
    EpisodeOutcome.FAILURE: 10.0,
    EpisodeOutcome.CANCELLED: 0.0,
}
MAX_ERROR_PENALTY = 0.5
USER_RATING_WEIGHT = 30.0
REFLECTION_POINTS_PER_ITEM = 2
MAX_REFLECTION_POINTS = 20


class Episode(BaseModel):
    """A single recorded task attempt.

    Episodes are the atomic unit of episodic memory. They are frozen: every
    modification returns a new Episode with updated_at refreshed.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    task_id: str
    folder_id: str = ""
    type: EpisodeType = EpisodeType.TASK_EXECUTION

    context: EpisodeContext = Field(default_factory=EpisodeContext)
    trajectory: EpisodeTrajectory = Field(default_factory=EpisodeTrajectory)
    outcome: EpisodeOutcomeData
    reflection: EpisodeReflection = Field(default_factory=EpisodeReflection)
    tags: tuple[str, ...] = ()

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    # --- persistence ---

    def to_props(self) -> dict[str, Any]:
        """Plain, JSON-safe representation for persistence."""
        return self.model_dump(mode="json")

    @classmethod
    def from_props(cls, props: dict[str, Any]) -> "Episode":
        """Reconstitute an Episode from to_props() output."""
        return cls.model_validate(props)

    # --- copies ---

    def _copy_with(self, **changes: Any) -> "Episode":
        changes["updated_at"] = utc_now()
        return self.model_copy(update=changes, deep=True)

    def with_tags(self, tags: Iterable[str]) -> "Episode":
        """Return a copy with tags appended (duplicates dropped, order kept)."""
        merged = tuple(dict.fromkeys([*self.tags, *tags]))
        return self._copy_with(tags=merged)

    def with_reflection(self, reflection: EpisodeReflection) -> "Episode":
        return self._copy_with(reflection=reflection.model_copy(deep=True))

    def with_user_feedback(self, rating: int, feedback: str | None = None) -> "Episode":
        """Return a copy carrying a 1-5 user rating and optional feedback text."""
        reflection = EpisodeReflection(
            **{
                **self.reflection.model_dump(),
                "user_rating": rating,
                "user_feedback": feedback,
            }
        )
        return self._copy_with(reflection=reflection)

    def with_trajectory(self, trajectory: EpisodeTrajectory) -> "Episode":
        """Return a copy with a replaced trajectory. Used by compaction."""
        return self._copy_with(trajectory=trajectory)

    # --- derived views ---

    def is_success(self) -> bool:
        return self.outcome.outcome == EpisodeOutcome.SUCCESS

    def is_failed(self) -> bool:
        return self.outcome.outcome == EpisodeOutcome.FAILURE

    def get_quality_score(self) -> float:
        """Score 0-100 estimating how useful this episode is as future context.

        Components:
        - outcome base (success > partial > failure > cancelled)
        - scaled down by up to half with the action error rate
        - plus up to 30 points from the user rating
        - plus up to 20 points for reflection completeness
        """
        score = OUTCOME_BASE_SCORE[self.outcome.outcome]

        if self.outcome.tool_call_count > 0:
            error_rate = min(1.0, self.outcome.error_count / self.outcome.tool_call_count)
            score *= 1.0 - MAX_ERROR_PENALTY * error_rate

        if self.reflection.user_rating is not None:
            score += (self.reflection.user_rating / 5) * USER_RATING_WEIGHT

        score += min(
            self.reflection.item_count() * REFLECTION_POINTS_PER_ITEM,
            MAX_REFLECTION_POINTS,
        )

        return round(max(0.0, min(score, 100.0)), 2)

    def get_summary(self) -> str:
        """One-line summary for listings."""
        if self.is_success():
            marker = "✅"
        elif self.is_failed():
            marker = "❌"
        else:
            marker = "⚠️"
        seconds = round(self.outcome.duration / 1000)
        return (
            f"{marker} {self.type.value}: {self.context.task_description[:100]}"
            f" ({seconds}s, {self.outcome.tool_call_count} tools)"
        )

    def get_learnings_summary(self) -> str:
        parts = []
        if self.reflection.what_worked:
            parts.append(f"What worked: {'; '.join(self.reflection.what_worked)}")
        if self.reflection.what_failed:
            parts.append(f"What failed: {'; '.join(self.reflection.what_failed)}")
        if self.reflection.key_insights:
            parts.append(f"Key insights: {'; '.join(self.reflection.key_insights)}")
        if self.reflection.would_do_differently:
            parts.append(f"Would do differently: {self.reflection.would_do_differently}")
        return "\n".join(parts)

    def get_context_for_similar_task(self, max_length: int = 2000) -> str:
        """Render past experience for priming a new, similar task.

        Empty sections are left out. The result is cut to max_length.
        """
        lines = [
            "## Previous Similar Task Experience",
            f"Task: {self.context.task_description}",
            f"Outcome: {self.outcome.outcome.value} ({round(self.outcome.duration / 1000)}s)",
        ]

        if self.reflection.what_worked:
            lines.append("\n### What Worked")
            lines.extend(f"- {item}" for item in self.reflection.what_worked)

        if self.reflection.what_failed:
            lines.append("\n### What Failed (Avoid These)")
            lines.extend(f"- ⚠️ {item}" for item in self.reflection.what_failed)

        if self.reflection.key_insights:
            lines.append("\n### Key Insights")
            lines.extend(f"- {item}" for item in self.reflection.key_insights)

        if self.reflection.would_do_differently:
            lines.append("\n### Recommended Approach")
            lines.append(self.reflection.would_do_differently)

        text = "\n".join(lines)
        if len(text) > max_length:
            text = text[: max(0, max_length - 3)] + "..."
        return text

    def get_all_actions(self) -> tuple[TrajectoryStep, ...]:
        """Actions in order, including the window kept aside by compaction."""
        return self.trajectory.actions + (self.trajectory.recent_actions or ())

    def get_key_decisions(self) -> list[str]:
        return [f"{d.chosen}: {d.reasoning}" for d in self.trajectory.decisions]

    def get_pivots(self) -> list[str]:
        return [
            f'Changed from "{p.from_approach}" to "{p.to_approach}" because: {p.reason}'
            for p in self.trajectory.pivots
        ]

    def get_embedding_text(self) -> str:
        """Text embedded for similarity search."""
        parts = [
            self.context.task_description,
            self.outcome.result,
            *self.reflection.what_worked,
            *self.reflection.what_failed,
            *self.reflection.key_insights,
        ]
        if self.reflection.would_do_differently:
            parts.append(self.reflection.would_do_differently)
        return " ".join(parts)


class EpisodeBuilder:
    """Accumulates an episode incrementally while a task runs.

    Usage:
        builder = EpisodeBuilder(task_id="task_1", folder_id="folder_1")
        builder.set_context(task_description="Implement caching")
        builder.add_action(action="Read config", tool="read_file")
        episode = builder.build(EpisodeOutcome.SUCCESS, "Done", reflection)
    """

    def __init__(
        self,
        task_id: str,
        folder_id: str = "",
        episode_type: EpisodeType = EpisodeType.TASK_EXECUTION,
    ) -> None:
        self.task_id = task_id
        self.folder_id = folder_id
        self.episode_type = EpisodeType(episode_type)
        self.started_at = utc_now()

        self._context: dict[str, Any] | None = None
        self._actions: list[TrajectoryStep] = []
        self._observations: list[str] = []
        self._decisions: list[Decision] = []
        self._pivots: list[Pivot] = []

    def set_context(self, **context: Any) -> "EpisodeBuilder":
        """Merge context fields (task_description, project_path, ...)."""
        self._context = {**(self._context or {}), **context}
        return self

    def add_action(
        self,
        action: str,
        tool: str | None = None,
        input: str | None = None,
        output: str | None = None,
        duration: int = 0,
        success: bool = True,
    ) -> "EpisodeBuilder":
        self._actions.append(
            TrajectoryStep(
                action=action,
                tool=tool,
                input=input,
                output=output,
                duration=duration,
                success=success,
            )
        )
        return self

    def add_observation(self, observation: str) -> "EpisodeBuilder":
        self._observations.append(observation)
        return self

    def add_decision(
        self,
        context: str,
        options: list[str],
        chosen: str,
        reasoning: str = "",
    ) -> "EpisodeBuilder":
        self._decisions.append(
            Decision(context=context, options=tuple(options), chosen=chosen, reasoning=reasoning)
        )
        return self

    def add_pivot(
        self,
        from_approach: str,
        to_approach: str,
        reason: str = "",
        trigger: PivotTrigger | str = PivotTrigger.DISCOVERY,
    ) -> "EpisodeBuilder":
        self._pivots.append(
            Pivot(
                from_approach=from_approach,
                to_approach=to_approach,
                reason=reason,
                trigger=PivotTrigger(trigger),
            )
        )
        return self

    @property
    def action_count(self) -> int:
        return len(self._actions)

    def build(
        self,
        outcome: EpisodeOutcome | str,
        result: str,
        reflection: EpisodeReflection | None = None,
        tags: list[str] | None = None,
    ) -> Episode:
        """Freeze the trajectory and produce the Episode."""
        if self._context is None:
            raise EpisodeBuildError("set_context() must be called before build()")
        return self._assemble(outcome, result, reflection, tags)

    def preview(self, outcome: EpisodeOutcome | str = EpisodeOutcome.PARTIAL) -> Episode:
        """Snapshot of the episode so far. Context is optional here."""
        return self._assemble(outcome, "", None, None)

    def _assemble(
        self,
        outcome: EpisodeOutcome | str,
        result: str,
        reflection: EpisodeReflection | None,
        tags: list[str] | None,
    ) -> Episode:
        now = utc_now()
        duration_ms = int((now - self.started_at).total_seconds() * 1000)

        return Episode(
            task_id=self.task_id,
            folder_id=self.folder_id,
            type=self.episode_type,
            context=EpisodeContext(**(self._context or {})),
            trajectory=EpisodeTrajectory(
                actions=tuple(self._actions),
                observations=tuple(self._observations),
                decisions=tuple(self._decisions),
                pivots=tuple(self._pivots),
            ),
            outcome=EpisodeOutcomeData(
                outcome=EpisodeOutcome(outcome),
                result=result,
                duration=duration_ms,
                error_count=sum(1 for a in self._actions if not a.success),
                tool_call_count=sum(1 for a in self._actions if a.tool),
            ),
            reflection=reflection or EpisodeReflection(),
            tags=tuple(tags or ()),
            created_at=now,
            updated_at=now,
        )


class EpisodeSearchOptions(BaseModel):
    """Filters and tuning for a similarity search.

    Unset numeric options fall back to the retriever's RetrievalConfig.
    """

    limit: int | None = None
    min_score: float | None = None
    types: list[EpisodeType] = Field(default_factory=list)
    outcomes: list[EpisodeOutcome] = Field(default_factory=list)
    folder_id: str | None = None
    min_quality_score: float | None = None
    prefer_recent: bool | None = None


class EpisodeSearchResult(BaseModel):
    """Result of an episode search."""

    episode: Episode
    score: float = 0.0
    relevance_reason: str = ""


class SimilarExperiences(BaseModel):
    """Past experience relevant to a new task."""

    successful_approaches: list[EpisodeSearchResult] = Field(default_factory=list)
    warnings_from_failures: list[EpisodeSearchResult] = Field(default_factory=list)
    relevant_insights: list[str] = Field(default_factory=list)

    @property
    def has_experience(self) -> bool:
        return bool(self.successful_approaches or self.warnings_from_failures)


class EpisodeStatistics(BaseModel):
    """Statistics about episodes in the store."""

    total_episodes: int = 0
    by_type: dict[str, int] = Field(
        default_factory=lambda: {t.value: 0 for t in EpisodeType}
    )
    by_outcome: dict[str, int] = Field(
        default_factory=lambda: {o.value: 0 for o in EpisodeOutcome}
    )
    avg_quality_score: float = 0.0
    avg_duration: float = 0.0

    @property
    def success_rate(self) -> float:
        if not self.total_episodes:
            return 0.0
        return self.by_outcome.get(EpisodeOutcome.SUCCESS.value, 0) / self.total_episodes

    @classmethod
    def from_records(cls, records: list[EpisodeRecord]) -> "EpisodeStatistics":
        """Compute statistics from stored records (scalar columns only)."""
        stats = cls()
        if not records:
            return stats

        total_quality = 0.0
        total_duration = 0
        for record in records:
            stats.by_type[record.type] = stats.by_type.get(record.type, 0) + 1
            stats.by_outcome[record.outcome] = stats.by_outcome.get(record.outcome, 0) + 1
            total_quality += record.quality_score
            total_duration += record.duration

        n = len(records)
        stats.total_episodes = n
        stats.avg_quality_score = total_quality / n
        stats.avg_duration = total_duration / n
        return stats


class CompressionStatistics(BaseModel):
    """How much compaction has saved across the store."""

    total_episodes: int = 0
    compressed_episodes: int = 0
    total_tokens_saved: int = 0
    avg_compression_ratio: float = 0.0

    @classmethod
    def from_episodes(cls, total: int, episodes: list[Episode]) -> "CompressionStatistics":
        compressed = 0
        saved = 0
        total_ratio = 0.0
        for episode in episodes:
            summary = episode.trajectory.compressed_summary
            if summary is None:
                continue
            compressed += 1
            saved += summary.original_token_count - summary.compressed_token_count
            if summary.original_token_count > 0:
                total_ratio += summary.compressed_token_count / summary.original_token_count
        return cls(
            total_episodes=total,
            compressed_episodes=compressed,
            total_tokens_saved=saved,
            avg_compression_ratio=total_ratio / compressed if compressed else 0.0,
        )
