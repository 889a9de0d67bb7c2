"""Token-aware, importance-scored compaction of episode trajectories.

Compaction shrinks an old, oversized trajectory in place:
1. The last N actions/observations (the rolling window) are kept verbatim.
2. The remaining actions are scored by importance and greedily kept while
   they fit in the token budget left after the rolling window, never fewer
   than min_actions_to_keep.
3. Remaining observations are kept in the same proportion, in order.
4. Everything dropped is digested into a CompressedSummary.

Selection is greedy rather than optimal: the minimum-actions override is what
guarantees a dropped trajectory still leaves usable context.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta

from recall.memory.config import CompactionConfig
from recall.memory.episode import (
    CompressedSummary,
    Episode,
    EpisodeTrajectory,
    TrajectoryStep,
    utc_now,
)
from recall.memory.tokens import (
    calculate_action_importance,
    calculate_trajectory_tokens,
    estimate_action_tokens,
    estimate_actions_tokens,
    estimate_observations_tokens,
)

logger = logging.getLogger(__name__)

MAX_KEY_OUTCOMES = 3
KEY_OUTCOME_CHARS = 100
MAX_ERRORS = 5
ERROR_CHARS = 200


def generate_action_summary(actions: list[TrajectoryStep]) -> str:
    """Summarize dropped actions: tool histogram, success/fail counts, duration."""
    if not actions:
        return ""

    tool_counts = Counter(a.tool for a in actions if a.tool)
    success_count = sum(1 for a in actions if a.success)
    fail_count = len(actions) - success_count
    total_duration = sum(a.duration for a in actions)

    parts = [f"{len(actions)} actions"]
    if tool_counts:
        tools = ", ".join(f"{tool}×{count}" for tool, count in tool_counts.items())
        parts.append(f"tools: {tools}")
    parts.append(f"{success_count}✓ {fail_count}✗")
    parts.append(f"{round(total_duration / 1000)}s total")

    return "; ".join(parts)


def extract_key_outcomes(actions: list[TrajectoryStep]) -> list[str]:
    return [a.output[:KEY_OUTCOME_CHARS] for a in actions if a.success and a.output][
        :MAX_KEY_OUTCOMES
    ]


def extract_errors(actions: list[TrajectoryStep]) -> list[str]:
    return [a.output[:ERROR_CHARS] for a in actions if not a.success and a.output][:MAX_ERRORS]


class EpisodeCompactor:
    """Applies CompactionConfig to individual episodes.

    Usage:
        compactor = EpisodeCompactor(CompactionConfig(target_tokens=1500))
        if compactor.is_eligible(episode):
            episode = compactor.compact(episode)
    """

    def __init__(self, config: CompactionConfig | None = None) -> None:
        self.config = config or CompactionConfig()

    def cutoff(self, now: datetime | None = None) -> datetime:
        """Episodes created before this instant are old enough to compact."""
        return (now or utc_now()) - timedelta(days=self.config.older_than_days)

    def is_eligible(self, episode: Episode, now: datetime | None = None) -> bool:
        if episode.created_at >= self.cutoff(now):
            return False
        if episode.trajectory.compressed_summary is not None:
            return False
        return calculate_trajectory_tokens(episode.trajectory) > self.config.token_threshold

    def select_actions(
        self,
        remaining: list[TrajectoryStep],
        budget: int,
    ) -> set[int]:
        """Greedily pick indices of remaining actions in importance order."""
        min_keep = self.config.min_actions_to_keep
        total = len(remaining)

        scored = [
            (calculate_action_importance(action, index, total), index, action)
            for index, action in enumerate(remaining)
        ]
        # sorted() is stable, so equal scores keep their original order
        scored = sorted(scored, key=lambda item: -item[0])

        keep: set[int] = set()
        used = 0
        for _, index, action in scored:
            cost = estimate_action_tokens(action)
            if used + cost <= budget or len(keep) < min_keep:
                keep.add(index)
                used += cost
            if used >= budget and len(keep) >= min_keep:
                break

        return keep

    def compact(self, episode: Episode) -> Episode:
        """Return a compacted copy of the episode.

        Does not check eligibility; callers decide when to compact.
        """
        cfg = self.config
        trajectory = episode.trajectory
        original_tokens = calculate_trajectory_tokens(trajectory)

        all_actions = trajectory.actions
        all_observations = trajectory.observations

        window_actions = min(max(cfg.rolling_window_actions, 0), len(all_actions))
        window_observations = min(max(cfg.rolling_window_observations, 0), len(all_observations))

        split_actions = len(all_actions) - window_actions
        split_observations = len(all_observations) - window_observations

        recent_actions = all_actions[split_actions:]
        recent_observations = all_observations[split_observations:]
        remaining_actions = all_actions[:split_actions]
        remaining_observations = all_observations[:split_observations]

        window_tokens = estimate_actions_tokens(recent_actions) + estimate_observations_tokens(
            recent_observations
        )
        budget = max(
            cfg.target_tokens - window_tokens,
            cfg.min_actions_to_keep * cfg.min_tokens_per_kept_action,
        )

        keep = self.select_actions(remaining_actions, budget)

        kept_actions: list[TrajectoryStep] = []
        dropped_actions: list[TrajectoryStep] = []
        for index, action in enumerate(remaining_actions):
            if index in keep:
                kept_actions.append(action)
            else:
                dropped_actions.append(action)

        ratio = len(kept_actions) / len(remaining_actions) if remaining_actions else 0.0
        observations_to_keep = max(
            cfg.min_actions_to_keep,
            int(len(remaining_observations) * ratio),
        )
        kept_observations = remaining_observations[:observations_to_keep]
        dropped_observations = remaining_observations[observations_to_keep:]

        compacted = EpisodeTrajectory(
            actions=tuple(kept_actions),
            observations=kept_observations,
            decisions=trajectory.decisions,
            pivots=trajectory.pivots,
            recent_actions=tuple(recent_actions) or None,
            recent_observations=tuple(recent_observations) or None,
        )
        compressed_tokens = calculate_trajectory_tokens(compacted) + window_tokens

        summary = CompressedSummary(
            compressed_action_count=len(dropped_actions),
            compressed_observation_count=len(dropped_observations),
            action_summary=generate_action_summary(dropped_actions),
            key_outcomes=extract_key_outcomes(dropped_actions),
            errors_encountered=extract_errors(dropped_actions),
            original_token_count=original_tokens,
            compressed_token_count=compressed_tokens,
        )

        logger.debug(
            f"Compacted episode {episode.id}: {original_tokens} -> {compressed_tokens} tokens, "
            f"{len(dropped_actions)} actions and {len(dropped_observations)} observations dropped"
        )

        return episode.with_trajectory(compacted.model_copy(update={"compressed_summary": summary}))
