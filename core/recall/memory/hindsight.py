"""Hindsight - Reflection notes generated from a finished episode's trajectory.

Reads the recorded actions, decisions and pivots of an episode and fills in
the reflection an agent rarely writes for itself:
- what_worked / what_failed: derived from detected trajectory patterns
- key_insights: lessons from pivots, tool statistics and duration
- would_do_differently: one actionable suggestion string
- confidence: 0-0.95, how much evidence the analysis rests on

Usage:
    analysis = generate_hindsight(episode)
    episode = apply_hindsight(episode)  # merged, user-written notes win

analyze_episode_patterns() aggregates the same patterns over many episodes.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from pydantic import BaseModel, Field

from recall.memory.episode import Episode, EpisodeReflection, Pivot, PivotTrigger, TrajectoryStep

logger = logging.getLogger(__name__)

REPEATED_FAILURE_THRESHOLD = 3
CONSECUTIVE_FAILURE_WARNING = 5
HIGH_ERROR_RATE = 0.4
CLEAN_ERROR_RATE = 0.2
QUICK_RESOLUTION_MS = 60_000
PROLONGED_DURATION_MS = 300_000

EFFECTIVE_PIVOT_SUCCESS_RATE = 0.6
TOOL_MIN_USES = 3
TOOL_MASTERY_RATE = 0.8
TOOL_STRUGGLE_RATE = 0.3
TOOL_INSIGHT_MIN_USES = 5
TOOL_INSIGHT_RATE = 0.5
DECISION_WINDOW = timedelta(minutes=1)
GOOD_DECISION_RATE = 0.6
POOR_DECISION_RATE = 0.4
MIN_DECISIONS_FOR_PATTERN = 2

MAX_REFLECTION_ITEMS = 5
MAX_SUGGESTIONS = 3
MAX_COMMON_PATTERNS = 5
ACTION_EVIDENCE_CHARS = 50

BASE_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95


class PatternType(str, Enum):
    """Trajectory patterns recognised by hindsight analysis."""

    REPEATED_FAILURE = "repeated_failure"
    RECOVERY_SUCCESS = "recovery_success"
    PIVOT_EFFECTIVE = "pivot_effective"
    PIVOT_INEFFECTIVE = "pivot_ineffective"
    TOOL_MASTERY = "tool_mastery"
    TOOL_STRUGGLE = "tool_struggle"
    QUICK_RESOLUTION = "quick_resolution"
    PROLONGED_ATTEMPT = "prolonged_attempt"
    ERROR_CASCADE = "error_cascade"
    DECISION_QUALITY = "decision_quality"


class PatternSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DetectedPattern(BaseModel):
    """A pattern found in one episode, with the evidence behind it."""

    type: PatternType
    description: str
    evidence: list[str] = Field(default_factory=list)
    severity: PatternSeverity = PatternSeverity.INFO

    @property
    def key(self) -> str:
        return f"{self.type.value}: {self.description}"


class HindsightAnalysis(BaseModel):
    """Generated reflection for an episode."""

    what_worked: list[str] = Field(default_factory=list)
    what_failed: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    would_do_differently: str = ""
    confidence: float = 0.0
    patterns: list[DetectedPattern] = Field(default_factory=list)

    def has_pattern(self, pattern_type: PatternType) -> bool:
        return any(p.type == pattern_type for p in self.patterns)


class PatternAnalysis(BaseModel):
    """Patterns that recur across many episodes."""

    common_success_patterns: list[str] = Field(default_factory=list)
    common_failure_patterns: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


@dataclass
class ToolUsage:
    success: int = 0
    failure: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failure

    @property
    def success_rate(self) -> float:
        return self.success / self.total if self.total else 0.0


@dataclass
class TrajectoryMetrics:
    """Counts and rates over an episode's actions."""

    total_actions: int = 0
    successful_actions: int = 0
    failed_actions: int = 0
    total_duration: int = 0  # ms, summed over actions
    max_consecutive_failures: int = 0
    recovery_count: int = 0
    tool_usage: dict[str, ToolUsage] = field(default_factory=dict)

    @property
    def error_rate(self) -> float:
        return self.failed_actions / self.total_actions if self.total_actions else 0.0

    @property
    def avg_action_duration(self) -> float:
        return self.total_duration / self.total_actions if self.total_actions else 0.0


@dataclass
class PivotAnalysis:
    effective: list[Pivot] = field(default_factory=list)
    ineffective: list[Pivot] = field(default_factory=list)
    error_triggered: int = 0
    discovery_triggered: int = 0


# ---------------------------------------------------------------------------
# Trajectory analysis
# ---------------------------------------------------------------------------


def analyze_trajectory(episode: Episode) -> TrajectoryMetrics:
    """Success/failure counts, failure streaks and per-tool usage."""
    metrics = TrajectoryMetrics()
    streak = 0

    for action in episode.get_all_actions():
        metrics.total_actions += 1
        metrics.total_duration += action.duration

        if action.success:
            metrics.successful_actions += 1
            if streak > 0:
                metrics.recovery_count += 1
            streak = 0
        else:
            metrics.failed_actions += 1
            streak += 1
            metrics.max_consecutive_failures = max(metrics.max_consecutive_failures, streak)

        if action.tool:
            usage = metrics.tool_usage.setdefault(action.tool, ToolUsage())
            if action.success:
                usage.success += 1
            else:
                usage.failure += 1

    return metrics


def analyze_pivots(episode: Episode) -> PivotAnalysis:
    """Split pivots into effective and ineffective ones.

    A pivot is effective when the actions from its timestamp on mostly
    succeeded, or when the episode as a whole succeeded.
    """
    analysis = PivotAnalysis()
    actions = episode.get_all_actions()

    for pivot in episode.trajectory.pivots:
        if pivot.trigger == PivotTrigger.ERROR:
            analysis.error_triggered += 1
        elif pivot.trigger == PivotTrigger.DISCOVERY:
            analysis.discovery_triggered += 1

        after = [a for a in actions if a.timestamp >= pivot.timestamp]
        if after:
            success_rate = sum(1 for a in after if a.success) / len(after)
            if success_rate > EFFECTIVE_PIVOT_SUCCESS_RATE or episode.is_success():
                analysis.effective.append(pivot)
            else:
                analysis.ineffective.append(pivot)
        elif episode.is_success():
            analysis.effective.append(pivot)

    return analysis


def _failure_streak_evidence(actions: tuple[TrajectoryStep, ...]) -> list[str]:
    evidence = []
    start = 0
    count = 0

    for index, action in enumerate(actions):
        if not action.success:
            if count == 0:
                start = index
            count += 1
            continue
        if count >= REPEATED_FAILURE_THRESHOLD:
            names = ", ".join(a.action[:ACTION_EVIDENCE_CHARS] for a in actions[start : start + count])
            evidence.append(f"Actions {start + 1}-{start + count}: {names}")
        count = 0

    if count >= REPEATED_FAILURE_THRESHOLD:
        evidence.append(f"Final {count} actions were failures")

    return evidence


def _decision_quality(episode: Episode) -> DetectedPattern | None:
    decisions = episode.trajectory.decisions
    actions = episode.get_all_actions()
    good = 0
    poor = 0

    for decision in decisions:
        following = [
            a
            for a in actions
            if decision.timestamp < a.timestamp < decision.timestamp + DECISION_WINDOW
        ]
        if not following:
            continue
        success_rate = sum(1 for a in following if a.success) / len(following)
        if success_rate > GOOD_DECISION_RATE:
            good += 1
        elif success_rate < POOR_DECISION_RATE:
            poor += 1

    if good > poor and good >= MIN_DECISIONS_FOR_PATTERN:
        return DetectedPattern(
            type=PatternType.DECISION_QUALITY,
            description="Most strategic decisions led to successful outcomes",
            evidence=[f"{good} of {len(decisions)} decisions followed by success"],
        )
    if poor > good and poor >= MIN_DECISIONS_FOR_PATTERN:
        return DetectedPattern(
            type=PatternType.DECISION_QUALITY,
            description="Several strategic decisions led to poor outcomes",
            evidence=[f"{poor} of {len(decisions)} decisions followed by failures"],
            severity=PatternSeverity.WARNING,
        )
    return None


def detect_patterns(
    episode: Episode,
    metrics: TrajectoryMetrics,
    pivots: PivotAnalysis,
) -> list[DetectedPattern]:
    patterns: list[DetectedPattern] = []

    if metrics.max_consecutive_failures >= REPEATED_FAILURE_THRESHOLD:
        patterns.append(
            DetectedPattern(
                type=PatternType.REPEATED_FAILURE,
                description=f"{metrics.max_consecutive_failures} consecutive failures detected",
                evidence=_failure_streak_evidence(episode.get_all_actions()),
                severity=(
                    PatternSeverity.CRITICAL
                    if metrics.max_consecutive_failures >= CONSECUTIVE_FAILURE_WARNING
                    else PatternSeverity.WARNING
                ),
            )
        )

    if metrics.recovery_count > 0 and episode.is_success():
        patterns.append(
            DetectedPattern(
                type=PatternType.RECOVERY_SUCCESS,
                description=f"Recovered from {metrics.recovery_count} failure sequence(s)",
                evidence=[f"Total recoveries: {metrics.recovery_count}"],
            )
        )

    if metrics.error_rate > HIGH_ERROR_RATE:
        patterns.append(
            DetectedPattern(
                type=PatternType.ERROR_CASCADE,
                description=f"High error rate: {round(metrics.error_rate * 100)}%",
                evidence=[f"{metrics.failed_actions} of {metrics.total_actions} actions failed"],
                severity=PatternSeverity.WARNING,
            )
        )

    for pivot in pivots.effective:
        patterns.append(
            DetectedPattern(
                type=PatternType.PIVOT_EFFECTIVE,
                description=(
                    f'Strategy change from "{pivot.from_approach}" to "{pivot.to_approach}" '
                    "was effective"
                ),
                evidence=[pivot.reason],
            )
        )
    for pivot in pivots.ineffective:
        patterns.append(
            DetectedPattern(
                type=PatternType.PIVOT_INEFFECTIVE,
                description=f'Strategy change to "{pivot.to_approach}" did not improve outcomes',
                evidence=[pivot.reason],
                severity=PatternSeverity.WARNING,
            )
        )

    for tool, usage in metrics.tool_usage.items():
        if usage.total < TOOL_MIN_USES:
            continue
        if usage.success_rate >= TOOL_MASTERY_RATE:
            patterns.append(
                DetectedPattern(
                    type=PatternType.TOOL_MASTERY,
                    description=f"Strong proficiency with {tool}",
                    evidence=[f"{usage.success}/{usage.total} successful uses"],
                )
            )
        elif usage.success_rate <= TOOL_STRUGGLE_RATE:
            patterns.append(
                DetectedPattern(
                    type=PatternType.TOOL_STRUGGLE,
                    description=f"Repeated issues with {tool}",
                    evidence=[f"{usage.failure}/{usage.total} failed uses"],
                    severity=PatternSeverity.WARNING,
                )
            )

    if metrics.total_duration < QUICK_RESOLUTION_MS and episode.is_success():
        patterns.append(
            DetectedPattern(
                type=PatternType.QUICK_RESOLUTION,
                description=f"Completed quickly ({round(metrics.total_duration / 1000)}s)",
                evidence=["Efficient execution path"],
            )
        )
    elif metrics.total_duration > PROLONGED_DURATION_MS:
        minutes = round(metrics.total_duration / 60_000)
        patterns.append(
            DetectedPattern(
                type=PatternType.PROLONGED_ATTEMPT,
                description=f"Extended duration ({minutes} minutes)",
                evidence=[f"{metrics.total_actions} actions over {minutes} minutes"],
                severity=PatternSeverity.WARNING if episode.is_failed() else PatternSeverity.INFO,
            )
        )

    if episode.trajectory.decisions:
        decision_pattern = _decision_quality(episode)
        if decision_pattern is not None:
            patterns.append(decision_pattern)

    return patterns


# ---------------------------------------------------------------------------
# Reflection extraction
# ---------------------------------------------------------------------------


def _of_type(patterns: list[DetectedPattern], pattern_type: PatternType) -> list[DetectedPattern]:
    return [p for p in patterns if p.type == pattern_type]


def _decision_severity(patterns: list[DetectedPattern]) -> PatternSeverity | None:
    found = _of_type(patterns, PatternType.DECISION_QUALITY)
    return found[0].severity if found else None


def _struggling_tools(metrics: TrajectoryMetrics) -> list[str]:
    return [
        tool
        for tool, usage in metrics.tool_usage.items()
        if usage.total >= TOOL_MIN_USES and usage.success_rate <= TOOL_STRUGGLE_RATE
    ]


def extract_what_worked(
    episode: Episode,
    metrics: TrajectoryMetrics,
    pivots: PivotAnalysis,
    patterns: list[DetectedPattern],
) -> list[str]:
    worked = []

    if _of_type(patterns, PatternType.QUICK_RESOLUTION):
        worked.append("Efficient execution with minimal backtracking")
    worked.extend(p.description for p in _of_type(patterns, PatternType.TOOL_MASTERY))
    worked.extend(
        f'Changing approach from "{p.from_approach}" to "{p.to_approach}"' for p in pivots.effective
    )
    if _of_type(patterns, PatternType.RECOVERY_SUCCESS):
        worked.append("Successfully recovered from errors and continued")
    if _decision_severity(patterns) == PatternSeverity.INFO:
        worked.append("Strategic decisions led to successful outcomes")
    if episode.is_success() and metrics.error_rate < CLEAN_ERROR_RATE:
        worked.append("Clean execution with minimal errors")
    if pivots.discovery_triggered > 0 and episode.is_success():
        worked.append("Learning from discoveries during execution")

    return worked[:MAX_REFLECTION_ITEMS]


def extract_what_failed(episode: Episode, patterns: list[DetectedPattern]) -> list[str]:
    failed = []

    repeated = _of_type(patterns, PatternType.REPEATED_FAILURE)
    if repeated:
        failed.append(repeated[0].description)
    failed.extend(p.description for p in _of_type(patterns, PatternType.TOOL_STRUGGLE))
    failed.extend(p.description for p in _of_type(patterns, PatternType.PIVOT_INEFFECTIVE))
    if _of_type(patterns, PatternType.ERROR_CASCADE):
        failed.append("High error rate throughout execution")
    if _decision_severity(patterns) == PatternSeverity.WARNING:
        failed.append("Strategic decisions that led to poor outcomes")
    if episode.is_failed() and _of_type(patterns, PatternType.PROLONGED_ATTEMPT):
        failed.append("Extended effort without achieving goal")

    return failed[:MAX_REFLECTION_ITEMS]


def extract_key_insights(
    episode: Episode,
    metrics: TrajectoryMetrics,
    pivots: PivotAnalysis,
    patterns: list[DetectedPattern],
) -> list[str]:
    insights = []

    if pivots.error_triggered > 0:
        insights.append(
            f"Errors prompted {pivots.error_triggered} strategy change(s); "
            "consider detecting these patterns earlier"
        )

    for tool, usage in metrics.tool_usage.items():
        if usage.total >= TOOL_INSIGHT_MIN_USES and usage.success_rate < TOOL_INSIGHT_RATE:
            insights.append(
                f"{tool} had {round(usage.success_rate * 100)}% success rate; "
                "may need different approach or parameters"
            )

    if metrics.total_duration > PROLONGED_DURATION_MS:
        if episode.is_success():
            insights.append(
                "Task completed but took longer than expected; look for optimization opportunities"
            )
        else:
            insights.append("Extended duration without success suggests fundamental approach issue")

    if metrics.recovery_count > 2:
        insights.append(
            f"Multiple recovery cycles ({metrics.recovery_count}); "
            "consider more defensive approach upfront"
        )

    decision = _of_type(patterns, PatternType.DECISION_QUALITY)
    if decision:
        insights.append(decision[0].description)

    insights.extend(
        f'"{p.to_approach}" was more effective than "{p.from_approach}" for this type of task'
        for p in pivots.effective[:2]
    )

    return insights[:MAX_REFLECTION_ITEMS]


def suggest_would_do_differently(
    episode: Episode,
    metrics: TrajectoryMetrics,
    pivots: PivotAnalysis,
    patterns: list[DetectedPattern],
) -> str:
    suggestions = []

    if metrics.error_rate > HIGH_ERROR_RATE:
        suggestions.append("Start with a simpler, incremental approach to catch errors early")

    struggling = _struggling_tools(metrics)
    if struggling:
        suggestions.append(f"Reconsider use of {', '.join(struggling)} or verify correct parameters")

    if len(pivots.effective) + len(pivots.ineffective) > 2:
        suggestions.append("Plan strategy more thoroughly before starting execution")

    if episode.is_failed() and _of_type(patterns, PatternType.PROLONGED_ATTEMPT):
        suggestions.append("Set a time limit and reassess approach if not making progress")

    if metrics.max_consecutive_failures >= CONSECUTIVE_FAILURE_WARNING:
        suggestions.append("Stop after 3 consecutive failures to reassess rather than continuing")

    if pivots.effective and not episode.is_success():
        suggestions.append(f'Try the "{pivots.effective[0].to_approach}" approach earlier')

    if not suggestions:
        if episode.is_success():
            return "Approach was effective; could optimize for speed by reducing exploratory steps"
        return "Consider breaking the task into smaller, verifiable sub-tasks"

    return ". ".join(suggestions[:MAX_SUGGESTIONS])


def calculate_confidence(
    episode: Episode,
    metrics: TrajectoryMetrics,
    patterns: list[DetectedPattern],
) -> float:
    """Evidence-based confidence, never above MAX_CONFIDENCE."""
    confidence = BASE_CONFIDENCE

    if metrics.total_actions >= 10:
        confidence += 0.1
    elif metrics.total_actions >= 5:
        confidence += 0.05

    if len(patterns) >= 5:
        confidence += 0.15
    elif len(patterns) >= 3:
        confidence += 0.1

    if episode.trajectory.decisions:
        confidence += 0.1
    if episode.trajectory.pivots:
        confidence += 0.05

    if episode.is_success() or episode.is_failed():
        confidence += 0.1

    return round(min(confidence, MAX_CONFIDENCE), 2)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def generate_hindsight(episode: Episode) -> HindsightAnalysis:
    """Analyse an episode's trajectory and produce reflection notes."""
    metrics = analyze_trajectory(episode)
    pivots = analyze_pivots(episode)
    patterns = detect_patterns(episode, metrics, pivots)

    return HindsightAnalysis(
        what_worked=extract_what_worked(episode, metrics, pivots, patterns),
        what_failed=extract_what_failed(episode, patterns),
        key_insights=extract_key_insights(episode, metrics, pivots, patterns),
        would_do_differently=suggest_would_do_differently(episode, metrics, pivots, patterns),
        confidence=calculate_confidence(episode, metrics, patterns),
        patterns=patterns,
    )


def merge_notes(existing: tuple[str, ...], generated: list[str]) -> tuple[str, ...]:
    """Append generated notes not already present (case-insensitive)."""
    seen = {item.lower() for item in existing}
    merged = list(existing)
    for item in generated:
        if item.lower() not in seen:
            seen.add(item.lower())
            merged.append(item)
    return tuple(merged)


def to_reflection(analysis: HindsightAnalysis, base: EpisodeReflection | None = None) -> EpisodeReflection:
    """Merge an analysis into a reflection. Notes already in base win."""
    base = base or EpisodeReflection()
    return EpisodeReflection(
        what_worked=merge_notes(base.what_worked, analysis.what_worked),
        what_failed=merge_notes(base.what_failed, analysis.what_failed),
        key_insights=merge_notes(base.key_insights, analysis.key_insights),
        would_do_differently=base.would_do_differently or analysis.would_do_differently,
        user_rating=base.user_rating,
        user_feedback=base.user_feedback,
    )


def apply_hindsight(episode: Episode) -> Episode:
    """Return a copy whose reflection is completed with generated notes."""
    analysis = generate_hindsight(episode)
    logger.debug(
        f"Hindsight for episode {episode.id}: {len(analysis.patterns)} patterns, "
        f"confidence {analysis.confidence}"
    )
    return episode.with_reflection(to_reflection(analysis, episode.reflection))


def _recommendations(success_patterns: list[str], failure_patterns: list[str]) -> list[str]:
    recommendations = []

    for key in success_patterns[:2]:
        if key.startswith(PatternType.TOOL_MASTERY.value):
            recommendations.append("Continue using tools that show high success rates")
        elif key.startswith(PatternType.PIVOT_EFFECTIVE.value):
            recommendations.append("Be willing to change approach when initial strategy isn't working")
        elif key.startswith(PatternType.QUICK_RESOLUTION.value):
            recommendations.append("Build on efficient execution patterns from past successes")

    for key in failure_patterns[:2]:
        if key.startswith(PatternType.REPEATED_FAILURE.value):
            recommendations.append("Stop after 3 consecutive failures and reassess approach")
        elif key.startswith(PatternType.TOOL_STRUGGLE.value):
            recommendations.append(
                "Verify tool parameters and consider alternatives for struggling tools"
            )
        elif key.startswith(PatternType.ERROR_CASCADE.value):
            recommendations.append("Take a defensive approach to catch errors early")

    return recommendations


def analyze_episode_patterns(episodes: list[Episode]) -> PatternAnalysis:
    """Most frequent success and failure patterns over a set of episodes.

    Informational patterns and patterns of successful episodes count towards
    success; warnings and patterns of failed episodes count towards failure.
    A pattern can count towards both.
    """
    success_counts: Counter[str] = Counter()
    failure_counts: Counter[str] = Counter()

    for episode in episodes:
        for pattern in generate_hindsight(episode).patterns:
            if pattern.severity == PatternSeverity.INFO or episode.is_success():
                success_counts[pattern.key] += 1
            if pattern.severity != PatternSeverity.INFO or episode.is_failed():
                failure_counts[pattern.key] += 1

    success_patterns = [key for key, _ in success_counts.most_common(MAX_COMMON_PATTERNS)]
    failure_patterns = [key for key, _ in failure_counts.most_common(MAX_COMMON_PATTERNS)]

    return PatternAnalysis(
        common_success_patterns=success_patterns,
        common_failure_patterns=failure_patterns,
        recommendations=_recommendations(success_patterns, failure_patterns),
    )
