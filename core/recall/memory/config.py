"""Configuration for episodic memory.

Three dataclasses cover the tunable parts of the subsystem:
- CompactionConfig: when episodes are compacted and how hard
- RetrievalConfig: search defaults and score fusion weights
- MemoryConfig: storage location, table name and the two above
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

GLOBAL_FOLDER_KEY = "global"


@dataclass
class CompactionConfig:
    """Options for a compaction pass."""

    older_than_days: float = 30
    token_threshold: int = 8000
    target_tokens: int = 2000
    limit: int = 1000
    rolling_window_actions: int = 5
    rolling_window_observations: int = 5
    min_actions_to_keep: int = 3

    # Token budget reserved per guaranteed action when the rolling window
    # alone already exceeds target_tokens.
    min_tokens_per_kept_action: int = 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "older_than_days": self.older_than_days,
            "token_threshold": self.token_threshold,
            "target_tokens": self.target_tokens,
            "limit": self.limit,
            "rolling_window_actions": self.rolling_window_actions,
            "rolling_window_observations": self.rolling_window_observations,
            "min_actions_to_keep": self.min_actions_to_keep,
            "min_tokens_per_kept_action": self.min_tokens_per_kept_action,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompactionConfig":
        defaults = cls()
        return cls(
            older_than_days=data.get("older_than_days", defaults.older_than_days),
            token_threshold=data.get("token_threshold", defaults.token_threshold),
            target_tokens=data.get("target_tokens", defaults.target_tokens),
            limit=data.get("limit", defaults.limit),
            rolling_window_actions=data.get(
                "rolling_window_actions", defaults.rolling_window_actions
            ),
            rolling_window_observations=data.get(
                "rolling_window_observations", defaults.rolling_window_observations
            ),
            min_actions_to_keep=data.get("min_actions_to_keep", defaults.min_actions_to_keep),
            min_tokens_per_kept_action=data.get(
                "min_tokens_per_kept_action", defaults.min_tokens_per_kept_action
            ),
        )


@dataclass
class RetrievalConfig:
    """Configuration for episode retrieval."""

    limit: int = 5
    min_score: float = 0.4
    prefer_recent: bool = True

    over_fetch_factor: int = 3
    recency_window_days: float = 30
    recency_weight: float = 0.1
    quality_weight: float = 0.1

    success_limit: int = 3
    failure_limit: int = 2
    max_insights: int = 5


@dataclass
class MemoryConfig:
    """Top-level configuration for an episodic memory deployment.

    Storage layout:
        {data_dir}/
          {folder_id}/     # one vector database per folder
          global/          # episodes recorded without a folder
    """

    data_dir: Path = field(default_factory=lambda: Path.cwd() / "data" / "episodes")
    table_name: str = "episodes"
    backend: str = "chroma"  # "chroma" | "memory"
    scan_limit: int = 10000

    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    def folder_path(self, folder_id: str | None = None) -> Path:
        """Directory holding the database for a folder."""
        key = folder_id or GLOBAL_FOLDER_KEY
        if "/" in key or "\\" in key or key in (".", ".."):
            raise ValueError(f"Invalid folder id: {folder_id!r}")
        return Path(self.data_dir) / key

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Build a config from RECALL_* environment variables."""
        config = cls()
        data_dir = os.environ.get("RECALL_DATA_DIR")
        if data_dir:
            config.data_dir = Path(data_dir).expanduser()
        backend = os.environ.get("RECALL_BACKEND")
        if backend:
            if backend not in ("chroma", "memory"):
                raise ValueError(f"Unknown RECALL_BACKEND: {backend!r}")
            config.backend = backend
        return config
