"""Episodic Memory Module - Learning from past task attempts.

This module records what an agent did on a task and retrieves it when a
similar task comes along:

- Episode / EpisodeBuilder: Immutable record of one task attempt
- EpisodeRecorder: Session-based capture while a task runs
- EpisodicMemoryStore: Persistent storage with vector indexing
- EpisodeRetriever: Similarity search with recency and quality boosts
- EpisodeCompactor: Token-aware compaction of old trajectories
- generate_hindsight / apply_hindsight: Reflection notes derived from a trajectory
- EpisodicMemoryService: One facade over all of the above
- VectorBackend: Pluggable backend (ChromaDB default, in-memory for tests)

Stored record:
    {
        id, task_id, folder_id, type, outcome,
        task_description, result, learnings,
        quality_score, user_rating, duration, error_count, tool_call_count,
        tags, created_at, updated_at,
        vector: list[float],
        payload: str  # full Episode as JSON
    }
"""

from recall.memory.backend import (
    ChromaDBBackend,
    InMemoryBackend,
    VectorBackend,
    VectorRow,
    VectorTable,
)
from recall.memory.compaction import EpisodeCompactor
from recall.memory.config import CompactionConfig, MemoryConfig, RetrievalConfig
from recall.memory.episode import (
    CompressedSummary,
    CompressionStatistics,
    Episode,
    EpisodeBuilder,
    EpisodeOutcome,
    EpisodeReflection,
    EpisodeSearchOptions,
    EpisodeSearchResult,
    EpisodeStatistics,
    EpisodeType,
    SimilarExperiences,
    TrajectoryStep,
)
from recall.memory.errors import (
    EpisodeBuildError,
    EpisodeStoreError,
    EpisodicMemoryError,
    RecordingSessionError,
)
from recall.memory.hindsight import (
    DetectedPattern,
    HindsightAnalysis,
    PatternAnalysis,
    analyze_episode_patterns,
    apply_hindsight,
    generate_hindsight,
)
from recall.memory.recorder import EpisodeRecorder
from recall.memory.registry import StoreRegistry, configure_default_registry, get_episode_store
from recall.memory.retriever import EpisodeRetriever
from recall.memory.service import (
    ContextInjection,
    EpisodicMemoryService,
    LearningOutcome,
    PatternCandidate,
)
from recall.memory.store import EpisodicMemoryStore

__all__ = [
    "Episode",
    "EpisodeBuilder",
    "EpisodeType",
    "EpisodeOutcome",
    "EpisodeReflection",
    "TrajectoryStep",
    "CompressedSummary",
    "EpisodeSearchOptions",
    "EpisodeSearchResult",
    "SimilarExperiences",
    "EpisodeStatistics",
    "CompressionStatistics",
    "EpisodeCompactor",
    "EpisodeRecorder",
    "EpisodeRetriever",
    "EpisodicMemoryStore",
    "EpisodicMemoryService",
    "ContextInjection",
    "LearningOutcome",
    "PatternCandidate",
    "HindsightAnalysis",
    "DetectedPattern",
    "PatternAnalysis",
    "generate_hindsight",
    "apply_hindsight",
    "analyze_episode_patterns",
    "StoreRegistry",
    "configure_default_registry",
    "get_episode_store",
    "MemoryConfig",
    "CompactionConfig",
    "RetrievalConfig",
    "EpisodicMemoryError",
    "EpisodeBuildError",
    "EpisodeStoreError",
    "RecordingSessionError",
    "VectorBackend",
    "VectorTable",
    "VectorRow",
    "ChromaDBBackend",
    "InMemoryBackend",
]
