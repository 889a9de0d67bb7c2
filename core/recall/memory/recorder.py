"""EpisodeRecorder - Captures episodes while a task runs.

A recording session wraps an EpisodeBuilder. Callers feed it actions,
observations, decisions and pivots as the task progresses, then complete the
session to build the episode and store it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from recall.memory.episode import (
    Episode,
    EpisodeBuilder,
    EpisodeOutcome,
    EpisodeReflection,
    EpisodeType,
    PivotTrigger,
    utc_now,
)
from recall.memory.errors import RecordingSessionError
from recall.memory.hindsight import apply_hindsight, generate_hindsight, to_reflection
from recall.memory.store import EpisodicMemoryStore

logger = logging.getLogger(__name__)


@dataclass
class RecordingSession:
    """An in-progress episode recording."""

    id: str
    task_id: str
    folder_id: str
    builder: EpisodeBuilder
    is_active: bool = True
    started_at: datetime = field(default_factory=utc_now)


class EpisodeRecorder:
    """Records task executions as episodes.

    Usage:
        recorder = EpisodeRecorder(store)
        session_id = recorder.start_recording("task_1", "folder_1")
        recorder.set_context(session_id, task_description="Implement caching")
        recorder.record_action(session_id, "Read config", tool="read_file")
        episode = await recorder.complete_recording(
            session_id, EpisodeOutcome.SUCCESS, "Cache added", reflection
        )
    """

    def __init__(self, store: EpisodicMemoryStore) -> None:
        self._store = store
        self._sessions: dict[str, RecordingSession] = {}

    def _active_session(self, session_id: str) -> RecordingSession:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            raise RecordingSessionError(session_id)
        return session

    def start_recording(
        self,
        task_id: str,
        folder_id: str = "",
        episode_type: EpisodeType | str = EpisodeType.TASK_EXECUTION,
    ) -> str:
        """Open a session and return its id."""
        session_id = uuid4().hex
        self._sessions[session_id] = RecordingSession(
            id=session_id,
            task_id=task_id,
            folder_id=folder_id,
            builder=EpisodeBuilder(task_id, folder_id, EpisodeType(episode_type)),
        )
        logger.debug(f"Started recording session {session_id} for task {task_id}")
        return session_id

    def set_context(
        self,
        session_id: str,
        task_description: str,
        project_path: str = "",
        initial_state: str = "",
        agent_provider: str | None = None,
    ) -> None:
        self._active_session(session_id).builder.set_context(
            task_description=task_description,
            project_path=project_path,
            initial_state=initial_state,
            agent_provider=agent_provider,
            session_id=session_id,
        )

    def record_action(
        self,
        session_id: str,
        action: str,
        tool: str | None = None,
        input: str | None = None,
        output: str | None = None,
        duration: int = 0,
        success: bool = True,
    ) -> None:
        self._active_session(session_id).builder.add_action(
            action=action,
            tool=tool,
            input=input,
            output=output,
            duration=duration,
            success=success,
        )

    def record_observation(self, session_id: str, observation: str) -> None:
        self._active_session(session_id).builder.add_observation(observation)

    def record_decision(
        self,
        session_id: str,
        context: str,
        options: list[str],
        chosen: str,
        reasoning: str = "",
    ) -> None:
        self._active_session(session_id).builder.add_decision(
            context=context, options=options, chosen=chosen, reasoning=reasoning
        )

    def record_pivot(
        self,
        session_id: str,
        from_approach: str,
        to_approach: str,
        reason: str = "",
        trigger: PivotTrigger | str = PivotTrigger.DISCOVERY,
    ) -> None:
        self._active_session(session_id).builder.add_pivot(
            from_approach=from_approach,
            to_approach=to_approach,
            reason=reason,
            trigger=trigger,
        )

    async def complete_recording(
        self,
        session_id: str,
        outcome: EpisodeOutcome | str,
        result: str,
        reflection: EpisodeReflection | None = None,
        tags: list[str] | None = None,
        hindsight: bool = False,
    ) -> Episode:
        """Build the episode, store it and close the session.

        With hindsight set, generated reflection notes are merged into the
        given reflection before the episode is stored.

        The session stays active if building or storing fails.
        """
        session = self._active_session(session_id)

        episode = session.builder.build(outcome, result, reflection, tags)
        if hindsight:
            episode = apply_hindsight(episode)
        await self._store.store(episode)

        session.is_active = False
        logger.info(
            f"Recorded episode {episode.id} for task {session.task_id} "
            f"({episode.outcome.outcome.value})"
        )
        return episode

    def cancel_recording(self, session_id: str) -> None:
        """Drop a session without storing anything. Unknown ids are ignored."""
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.is_active = False

    def get_session(self, session_id: str) -> RecordingSession | None:
        return self._sessions.get(session_id)

    def get_active_sessions(self) -> list[RecordingSession]:
        return [s for s in self._sessions.values() if s.is_active]

    def is_session_active(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.is_active

    def analyze_for_reflection(
        self,
        session_id: str,
        outcome: EpisodeOutcome | str = EpisodeOutcome.PARTIAL,
    ) -> EpisodeReflection:
        """Reflection notes generated from the trajectory recorded so far.

        Unknown sessions yield an empty reflection.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return EpisodeReflection()

        analysis = generate_hindsight(session.builder.preview(outcome))
        return to_reflection(analysis)

    def cleanup_inactive_sessions(self, older_than: timedelta = timedelta(hours=24)) -> int:
        """Forget completed sessions started before now - older_than.

        Returns:
            Number of sessions removed.
        """
        cutoff = utc_now() - older_than
        stale = [
            sid
            for sid, session in self._sessions.items()
            if not session.is_active and session.started_at < cutoff
        ]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    async def record_quick_episode(
        self,
        task_id: str,
        task_description: str,
        outcome: EpisodeOutcome | str,
        result: str,
        reflection: EpisodeReflection | None = None,
        folder_id: str = "",
        episode_type: EpisodeType | str = EpisodeType.TASK_EXECUTION,
        tags: list[str] | None = None,
        agent_provider: str | None = None,
    ) -> Episode:
        """Record and store an episode in one call, without trajectory detail."""
        session_id = self.start_recording(task_id, folder_id, episode_type)
        self.set_context(
            session_id,
            task_description=task_description,
            agent_provider=agent_provider,
        )
        return await self.complete_recording(session_id, outcome, result, reflection, tags)
