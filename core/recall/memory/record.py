"""Persisted representation of an Episode.

Filterable fields are stored as explicit scalar columns; the full Episode is
stored alongside as an opaque JSON payload for exact round-trip.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from recall.memory.backend import VectorRow
from recall.memory.episode import Episode


def to_epoch_ms(value: Any) -> int:
    return int(value.timestamp() * 1000)


class EpisodeRecord(BaseModel):
    """One row of the episodes table."""

    id: str
    task_id: str
    folder_id: str = ""
    type: str
    outcome: str
    task_description: str = ""
    result: str = ""
    learnings: str = ""
    quality_score: float = 0.0
    user_rating: int | None = None
    duration: int = 0
    error_count: int = 0
    tool_call_count: int = 0
    tags: str = "[]"  # JSON array
    created_at: int = 0  # epoch ms
    updated_at: int = 0  # epoch ms

    vector: list[float] = Field(default_factory=list)
    payload: str = ""

    distance: float | None = None

    @classmethod
    def from_episode(cls, episode: Episode, vector: list[float]) -> "EpisodeRecord":
        learnings = "; ".join(
            [
                *(f"✓ {w}" for w in episode.reflection.what_worked),
                *(f"✗ {f}" for f in episode.reflection.what_failed),
                *(f"💡 {i}" for i in episode.reflection.key_insights),
            ]
        )
        return cls(
            id=episode.id,
            task_id=episode.task_id,
            folder_id=episode.folder_id,
            type=episode.type.value,
            outcome=episode.outcome.outcome.value,
            task_description=episode.context.task_description,
            result=episode.outcome.result,
            learnings=learnings,
            quality_score=episode.get_quality_score(),
            user_rating=episode.reflection.user_rating,
            duration=episode.outcome.duration,
            error_count=episode.outcome.error_count,
            tool_call_count=episode.outcome.tool_call_count,
            tags=json.dumps(episode.tags),
            created_at=to_epoch_ms(episode.created_at),
            updated_at=to_epoch_ms(episode.updated_at),
            vector=list(vector),
            payload=serialize_episode(episode),
        )

    @classmethod
    def from_row(cls, row: VectorRow) -> "EpisodeRecord":
        return cls(
            **{**row.metadata, "id": row.id},
            vector=row.vector,
            payload=row.document,
            distance=row.distance,
        )

    def scalar_columns(self) -> dict[str, Any]:
        return self.model_dump(exclude={"vector", "payload", "distance"})

    def to_row(self) -> VectorRow:
        return VectorRow(
            id=self.id,
            vector=self.vector,
            metadata=self.scalar_columns(),
            document=self.payload,
        )

    def to_episode(self) -> Episode:
        """Deserialize the payload.

        Raises:
            json.JSONDecodeError, pydantic.ValidationError on corrupt payloads.
        """
        return deserialize_episode(self.payload)


def serialize_episode(episode: Episode) -> str:
    return json.dumps(episode.to_props())


def deserialize_episode(payload: str) -> Episode:
    return Episode.from_props(json.loads(payload))
