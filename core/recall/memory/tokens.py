"""Token and importance estimation for trajectories.

Token counts are a character-based heuristic (about 4 characters per token for
mixed English and code). They are only used for relative budgeting.
"""

from __future__ import annotations

import math
from typing import Iterable

from recall.memory.episode import EpisodeTrajectory, TrajectoryStep

CHARS_PER_TOKEN = 4

FAILURE_IMPORTANCE = 100
BOUNDARY_IMPORTANCE = 50
TOOL_IMPORTANCE = 20
LONG_DURATION_IMPORTANCE = 15
LONG_DURATION_MS = 5000
OUTPUT_IMPORTANCE = 10
SUBSTANTIAL_OUTPUT_CHARS = 100


def estimate_tokens(text: str | None) -> int:
    """Estimate the token cost of a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_action_tokens(action: TrajectoryStep) -> int:
    return (
        estimate_tokens(action.action)
        + estimate_tokens(action.tool)
        + estimate_tokens(action.input)
        + estimate_tokens(action.output)
    )


def estimate_actions_tokens(actions: Iterable[TrajectoryStep]) -> int:
    return sum(estimate_action_tokens(a) for a in actions)


def estimate_observations_tokens(observations: Iterable[str]) -> int:
    return sum(estimate_tokens(o) for o in observations)


def calculate_trajectory_tokens(trajectory: EpisodeTrajectory) -> int:
    """Sum the estimated tokens of every textual field in a trajectory.

    Covers actions, observations, decisions (including their options) and
    pivots. The rolling window fields are not part of this count.
    """
    tokens = estimate_actions_tokens(trajectory.actions)
    tokens += estimate_observations_tokens(trajectory.observations)

    for decision in trajectory.decisions:
        tokens += estimate_tokens(decision.context)
        tokens += estimate_tokens(decision.chosen)
        tokens += estimate_tokens(decision.reasoning)
        tokens += sum(estimate_tokens(option) for option in decision.options)

    for pivot in trajectory.pivots:
        tokens += estimate_tokens(pivot.from_approach)
        tokens += estimate_tokens(pivot.to_approach)
        tokens += estimate_tokens(pivot.reason)

    return tokens


def calculate_action_importance(action: TrajectoryStep, index: int, total: int) -> int:
    """Score how important an action is to keep. Higher is more important.

    index/total refer to the action's position in the set being scored.
    """
    score = 0

    if not action.success:
        score += FAILURE_IMPORTANCE

    if index == 0:
        score += BOUNDARY_IMPORTANCE
    if index == total - 1:
        score += BOUNDARY_IMPORTANCE

    if action.tool:
        score += TOOL_IMPORTANCE

    if action.duration > LONG_DURATION_MS:
        score += LONG_DURATION_IMPORTANCE

    if action.output and len(action.output) > SUBSTANTIAL_OUTPUT_CHARS:
        score += OUTPUT_IMPORTANCE

    return score
