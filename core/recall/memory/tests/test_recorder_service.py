"""Tests for EpisodeRecorder and EpisodicMemoryService."""

from datetime import timedelta

import pytest

from recall.memory.episode import (
    EpisodeOutcome,
    EpisodeReflection,
    EpisodeType,
    PivotTrigger,
)
from recall.memory.errors import EpisodeBuildError, RecordingSessionError
from recall.memory.recorder import EpisodeRecorder
from recall.memory.service import EpisodicMemoryService


class TestEpisodeRecorder:
    @pytest.mark.asyncio
    async def test_record_full_session(self, store):
        recorder = EpisodeRecorder(store)

        session_id = recorder.start_recording("task_1", "folder_1", EpisodeType.ERROR_RECOVERY)
        recorder.set_context(session_id, task_description="Fix build", agent_provider="local")
        recorder.record_action(session_id, "Run build", tool="make", output="error", success=False)
        recorder.record_action(session_id, "Pin dependency", tool="edit_file")
        recorder.record_observation(session_id, "Dependency bumped a major version")
        recorder.record_decision(session_id, "Fix how", ["pin", "upgrade"], "pin", "Smallest change")
        recorder.record_pivot(session_id, "upgrade", "pin", "API changed", PivotTrigger.ERROR)

        episode = await recorder.complete_recording(
            session_id,
            EpisodeOutcome.SUCCESS,
            "Build green",
            EpisodeReflection(what_worked=["Pinning"]),
            tags=["build"],
        )

        assert episode.type == EpisodeType.ERROR_RECOVERY
        assert episode.context.session_id == session_id
        assert episode.outcome.error_count == 1
        assert episode.outcome.tool_call_count == 2
        assert len(episode.trajectory.decisions) == 1
        assert episode.trajectory.pivots[0].trigger == PivotTrigger.ERROR
        assert await store.get(episode.id) == episode
        assert not recorder.is_session_active(session_id)
        assert recorder.get_session(session_id) is not None

    @pytest.mark.asyncio
    async def test_inactive_session_rejects_calls(self, store):
        recorder = EpisodeRecorder(store)
        session_id = recorder.start_recording("task_1")
        recorder.set_context(session_id, task_description="x")
        await recorder.complete_recording(session_id, EpisodeOutcome.SUCCESS, "done")

        with pytest.raises(RecordingSessionError):
            recorder.record_action(session_id, "late")
        with pytest.raises(RecordingSessionError):
            await recorder.complete_recording(session_id, EpisodeOutcome.SUCCESS, "again")

    def test_unknown_session(self, store):
        recorder = EpisodeRecorder(store)

        with pytest.raises(RecordingSessionError) as exc_info:
            recorder.record_observation("missing", "x")

        assert exc_info.value.session_id == "missing"
        assert "not found or inactive" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_complete_without_context_keeps_session(self, store):
        recorder = EpisodeRecorder(store)
        session_id = recorder.start_recording("task_1")

        with pytest.raises(EpisodeBuildError):
            await recorder.complete_recording(session_id, EpisodeOutcome.SUCCESS, "done")

        assert recorder.is_session_active(session_id)
        assert await store.count() == 0

    def test_cancel_and_active_sessions(self, store):
        recorder = EpisodeRecorder(store)
        first = recorder.start_recording("task_1")
        second = recorder.start_recording("task_2")

        recorder.cancel_recording(first)
        recorder.cancel_recording("missing")

        assert [s.id for s in recorder.get_active_sessions()] == [second]
        assert recorder.get_session(first) is None
        with pytest.raises(RecordingSessionError):
            recorder.record_observation(first, "x")

    @pytest.mark.asyncio
    async def test_cleanup_inactive_sessions(self, store):
        recorder = EpisodeRecorder(store)
        done = recorder.start_recording("task_1")
        recorder.set_context(done, task_description="x")
        await recorder.complete_recording(done, EpisodeOutcome.SUCCESS, "ok")
        active = recorder.start_recording("task_2")

        assert recorder.cleanup_inactive_sessions() == 0
        assert recorder.cleanup_inactive_sessions(older_than=timedelta(0)) == 1
        assert recorder.get_session(done) is None
        assert recorder.is_session_active(active)

    @pytest.mark.asyncio
    async def test_record_quick_episode(self, store):
        recorder = EpisodeRecorder(store)

        episode = await recorder.record_quick_episode(
            task_id="task_9",
            task_description="Rename module",
            outcome=EpisodeOutcome.PARTIAL,
            result="Half done",
            folder_id="folder_1",
            tags=["quick"],
        )

        assert episode.outcome.outcome == EpisodeOutcome.PARTIAL
        assert episode.context.task_description == "Rename module"
        assert episode.tags == ("quick",)
        assert await store.get(episode.id) == episode
        assert recorder.get_active_sessions() == []


class TestEpisodicMemoryService:
    @pytest.mark.asyncio
    async def test_context_without_experience(self, store):
        service = EpisodicMemoryService(store)

        context = await service.get_context_for_task("Implement caching")

        assert not context.has_relevant_experience
        assert context.context_text == ""
        assert await service.generate_context_prompt("Implement caching") == ""

    @pytest.mark.asyncio
    async def test_context_for_task(self, store, make_episode):
        service = EpisodicMemoryService(store)
        await service.store_episode(
            make_episode(
                task_description="Implement caching layer",
                what_worked=["LRU cache", "TTL per key"],
                key_insights=["Measure hit rate"],
            )
        )
        await service.store_episode(
            make_episode(
                task_description="Implement caching layer",
                outcome=EpisodeOutcome.FAILURE,
                what_failed=["Caching mutable objects"],
            )
        )

        context = await service.get_context_for_task("implement caching layer")

        assert context.has_relevant_experience
        assert context.success_approaches == ["LRU cache; TTL per key"]
        assert context.warnings == ["Caching mutable objects"]
        assert context.insights == ["Measure hit rate"]
        assert "## Relevant Past Successes" in context.context_text
        assert "⚠️ Similar task failed previously:" in context.context_text
        assert "- 💡 Measure hit rate" in context.context_text

        prompt = await service.generate_context_prompt("implement caching layer")
        assert prompt.startswith("Based on past experience:")
        assert "  - LRU cache; TTL per key" in prompt
        assert "  - Caching mutable objects" in prompt

        short = await service.generate_context_prompt("implement caching layer", max_length=40)
        assert len(short) == 40
        assert short.endswith("...")

    @pytest.mark.asyncio
    async def test_extract_learnings(self, store, make_episode):
        service = EpisodicMemoryService(store)
        await service.store_episode(
            make_episode(
                task_description="Deploy service",
                what_worked=["Blue green"],
                key_insights=["Check health endpoint"],
            )
        )
        await service.store_episode(
            make_episode(
                task_description="Deploy service",
                what_worked=["Blue green"],
                key_insights=["Check health endpoint"],
            )
        )
        await service.store_episode(
            make_episode(
                task_description="Deploy service",
                outcome=EpisodeOutcome.FAILURE,
                what_failed=["Deploy on Friday"],
            )
        )

        learnings = await service.extract_learnings("deploy service")

        assert learnings.patterns == ["Check health endpoint"]
        assert learnings.recommendations == ["Blue green"]
        assert learnings.avoidances == ["Deploy on Friday"]

    @pytest.mark.asyncio
    async def test_feedback_tags_and_delete(self, store, make_episode):
        service = EpisodicMemoryService(store)
        episode = make_episode(tags=["a"])
        await service.store_episode(episode)

        rated = await service.add_feedback(episode.id, 5, "Spot on")
        tagged = await service.add_tags(episode.id, ["a", "b"])

        assert rated.reflection.user_rating == 5
        assert tagged.tags == ("a", "b")
        stored = await service.get_episode(episode.id)
        assert stored.reflection.user_feedback == "Spot on"
        assert stored.tags == ("a", "b")

        assert await service.add_feedback("missing", 3) is None
        assert await service.add_tags("missing", ["x"]) is None

        await service.delete_episode(episode.id)
        assert await service.get_episode(episode.id) is None

    @pytest.mark.asyncio
    async def test_pass_throughs(self, store, make_episode):
        service = EpisodicMemoryService(store)
        old = make_episode(task_id="task_x", actions=50, output_chars=1200, age_days=40)
        await service.store_episode(old)

        assert [e.id for e in await service.get_episodes_for_task("task_x")] == [old.id]
        assert [e.id for e in await service.get_recent_episodes()] == [old.id]
        assert (await service.get_statistics()).total_episodes == 1
        assert await service.compress_old_episodes() == 1
        assert (await service.get_compression_stats()).compressed_episodes == 1
        assert len(await service.search("Implement caching")) == 1
        assert (await service.find_similar_experiences("Implement caching")).has_experience

    @pytest.mark.asyncio
    async def test_memory_stats(self, store, make_episode):
        service = EpisodicMemoryService(store)
        for _ in range(2):
            await service.store_episode(make_episode(key_insights=["Write tests first"]))
        await service.store_episode(
            make_episode(outcome=EpisodeOutcome.FAILURE, what_failed=["Skipped review"])
        )

        stats = await service.get_memory_stats()

        assert stats.total_episodes == 3
        assert stats.success_rate == pytest.approx(66.7)
        assert stats.top_insights == ["Write tests first"]
        assert stats.common_failures == ["Skipped review"]
