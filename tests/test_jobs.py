"""
Tests for the render job manager.
"""

import asyncio
import os

import pytest

from dayreel.services.errors import ValidationError
from dayreel.services.jobs import RenderJobManager
from dayreel.services.scheduler import JobState, RenderStatus
from dayreel.services.timeline import RenderSettings

from tests.conftest import RecordingSink


SETTINGS = RenderSettings(aspect_ratio="1:1", duration_per_slide=0.5, show_date_overlay=False)


class SinkFactory:
    """Builds recording sinks and remembers their workspaces."""

    def __init__(self, **sink_kwargs):
        self.sink_kwargs = sink_kwargs
        self.sinks: list[RecordingSink] = []
        self.work_dirs: list[str] = []

    def __call__(self, mode, work_dir, width, height, settings=None):
        self.work_dirs.append(work_dir)
        sink = RecordingSink(width, height, **self.sink_kwargs)
        self.sinks.append(sink)
        return sink


@pytest.fixture
def sink_factory():
    return SinkFactory()


@pytest.fixture
def manager(image_source, artifact_store, test_settings, sink_factory):
    return RenderJobManager(
        image_source=image_source,
        artifact_store=artifact_store,
        settings=test_settings,
        sink_factory=sink_factory,
    )


class TestStartRender:
    """Tests for RenderJobManager.start_render."""

    async def test_render_completes(self, manager, make_entries, sink_factory):
        job_id = manager.start_render(make_entries(["dark.png", "light.png"]), SETTINGS)

        result = await manager.wait(job_id)

        assert result.status == RenderStatus.COMPLETED
        assert result.frames_rendered == 30
        assert manager.get(job_id).state == JobState.COMPLETED
        assert sink_factory.sinks[0].finished

    async def test_total_frames_known_at_submission(self, manager, make_entries):
        job_id = manager.start_render(make_entries(["dark.png", "light.png", "mid.png"]), SETTINGS)
        assert manager.get(job_id).total_frames == 45
        await manager.wait(job_id)

    async def test_invalid_request_rejected_synchronously(self, manager, make_entries):
        """Validation errors surface before any job exists."""
        with pytest.raises(ValidationError):
            manager.start_render(make_entries(["dark.png"]), RenderSettings(duration_per_slide=0))
        with pytest.raises(ValidationError):
            manager.start_render([], SETTINGS)
        assert manager.list_jobs() == []

    async def test_unknown_mode_rejected(self, manager, make_entries):
        with pytest.raises(ValueError):
            manager.start_render(make_entries(["dark.png"]), SETTINGS, mode="gif")

    async def test_workspace_removed(self, manager, make_entries, sink_factory, test_settings):
        """Each job's temp directory is gone once the job ends."""
        job_id = manager.start_render(make_entries(["dark.png"]), SETTINGS)
        await manager.wait(job_id)

        work_dir = sink_factory.work_dirs[0]
        assert os.path.basename(work_dir).startswith(f"job_{job_id}_")
        assert not os.path.exists(work_dir)
        assert os.listdir(test_settings.temp_directory) == []

    async def test_workspace_removed_after_cancel(self, manager, make_entries, sink_factory, test_settings):
        """Cancelled jobs leave no temp files behind."""
        job_id = manager.start_render(make_entries(["dark.png", "light.png", "mid.png"]), SETTINGS)
        manager.cancel(job_id)

        result = await manager.wait(job_id)

        assert result.status == RenderStatus.CANCELLED
        assert os.listdir(test_settings.temp_directory) == []

    async def test_workspace_removed_after_failure(
        self, image_source, artifact_store, test_settings, make_entries
    ):
        factory = SinkFactory(fail_on_finish=OSError("disk full"))
        manager = RenderJobManager(
            image_source=image_source,
            artifact_store=artifact_store,
            settings=test_settings,
            sink_factory=factory,
        )
        job_id = manager.start_render(make_entries(["dark.png"]), SETTINGS)

        result = await manager.wait(job_id)

        assert result.status == RenderStatus.FAILED
        assert os.listdir(test_settings.temp_directory) == []

    async def test_independent_jobs(self, manager, make_entries, sink_factory):
        """Concurrent jobs each get their own sink and workspace."""
        first = manager.start_render(make_entries(["dark.png"]), SETTINGS)
        second = manager.start_render(make_entries(["light.png"]), SETTINGS)

        results = await asyncio.gather(manager.wait(first), manager.wait(second))

        assert all(r.status == RenderStatus.COMPLETED for r in results)
        assert len(set(sink_factory.work_dirs)) == 2
        assert sink_factory.sinks[0] is not sink_factory.sinks[1]


class TestJobRegistry:
    """Tests for cancel, get, list_jobs and subscribe."""

    async def test_get_unknown(self, manager):
        assert manager.get("missing") is None

    async def test_cancel_unknown(self, manager):
        assert manager.cancel("missing") is False

    async def test_cancel_finished_job(self, manager, make_entries):
        job_id = manager.start_render(make_entries(["dark.png"]), SETTINGS)
        await manager.wait(job_id)
        assert manager.cancel(job_id) is False
        assert manager.get(job_id).result.status == RenderStatus.COMPLETED

    async def test_list_jobs_filter(self, manager, make_entries):
        done = manager.start_render(make_entries(["dark.png"]), SETTINGS)
        await manager.wait(done)
        cancelled = manager.start_render(make_entries(["light.png"]), SETTINGS)
        manager.cancel(cancelled)
        await manager.wait(cancelled)

        assert {job.job_id for job in manager.list_jobs()} == {done, cancelled}
        assert [job.job_id for job in manager.list_jobs(JobState.COMPLETED)] == [done]
        assert [job.job_id for job in manager.list_jobs(JobState.CANCELLED)] == [cancelled]

    async def test_list_jobs_newest_first_with_limit(self, manager, make_entries):
        first = manager.start_render(make_entries(["dark.png"]), SETTINGS)
        second = manager.start_render(make_entries(["light.png"]), SETTINGS)
        await asyncio.gather(manager.wait(first), manager.wait(second))

        assert [job.job_id for job in manager.list_jobs()] == [second, first]
        assert [job.job_id for job in manager.list_jobs(limit=1)] == [second]

    async def test_finished_jobs_evicted_beyond_retention(
        self, image_source, artifact_store, test_settings, make_entries
    ):
        """Only the most recent finished jobs stay in the registry."""
        manager = RenderJobManager(
            image_source=image_source,
            artifact_store=artifact_store,
            settings=test_settings.model_copy(update={"job_retention_limit": 2}),
            sink_factory=SinkFactory(),
        )
        job_ids = []
        for ref in ["dark.png", "light.png", "mid.png"]:
            job_id = manager.start_render(make_entries([ref]), SETTINGS)
            await manager.wait(job_id)
            job_ids.append(job_id)

        assert manager.get(job_ids[0]) is None
        assert [job.job_id for job in manager.list_jobs()] == [job_ids[2], job_ids[1]]
        assert manager._tasks == {}

    def test_default_image_source_uses_image_root(self, artifact_store, test_settings, tmp_path):
        settings = test_settings.model_copy(update={"image_root": str(tmp_path)})
        manager = RenderJobManager(artifact_store=artifact_store, settings=settings)
        assert manager.scheduler.image_source.root == os.path.realpath(tmp_path)

    async def test_subscribe_receives_progress_and_terminal_state(self, manager, make_entries):
        job_id = manager.start_render(make_entries(["dark.png", "light.png"]), SETTINGS)
        seen = []
        manager.subscribe(job_id, lambda job: seen.append((job.state, job.progress_percent)))

        await manager.wait(job_id)

        assert len(seen) > 3
        assert seen[-1] == (JobState.COMPLETED, 100.0)

    async def test_unsubscribe(self, manager, make_entries):
        job_id = manager.start_render(make_entries(["dark.png", "light.png"]), SETTINGS)
        seen = []
        unsubscribe = manager.subscribe(job_id, lambda job: seen.append(job.progress_percent))
        unsubscribe()

        await manager.wait(job_id)

        assert seen == []

    async def test_subscribe_unknown_job(self, manager):
        with pytest.raises(KeyError):
            manager.subscribe("missing", lambda job: None)

    async def test_shutdown_cancels_active_jobs(self, manager, make_entries):
        job_id = manager.start_render(make_entries(["dark.png", "light.png", "mid.png"]), SETTINGS)
        await manager.shutdown()
        assert manager.get(job_id).state == JobState.CANCELLED


class TestWebhooks:
    """Tests for webhook delivery from the job manager."""

    @pytest.fixture
    def webhooks(self, mocker):
        service = mocker.MagicMock()
        service.should_send_progress.return_value = False
        service.build_payload.side_effect = lambda event, **kwargs: event
        return service

    async def test_lifecycle_events(self, image_source, artifact_store, test_settings, make_entries, webhooks):
        manager = RenderJobManager(
            image_source=image_source,
            artifact_store=artifact_store,
            settings=test_settings,
            webhook_service=webhooks,
            sink_factory=SinkFactory(),
        )
        job_id = manager.start_render(
            make_entries(["dark.png"]), SETTINGS, callback_url="https://example.com/hook"
        )
        await manager.wait(job_id)

        events = [c.args[1] for c in webhooks.send_fire_and_forget.call_args_list]
        assert events == ["render.started", "render.completed"]
        webhooks.clear_job_tracking.assert_called_once_with(job_id)

    async def test_progress_events_throttled(self, image_source, artifact_store, test_settings, make_entries, webhooks):
        webhooks.should_send_progress.side_effect = [True] + [False] * 100
        manager = RenderJobManager(
            image_source=image_source,
            artifact_store=artifact_store,
            settings=test_settings,
            webhook_service=webhooks,
            sink_factory=SinkFactory(),
        )
        job_id = manager.start_render(
            make_entries(["dark.png", "light.png"]), SETTINGS, callback_url="https://example.com/hook"
        )
        await manager.wait(job_id)

        events = [c.args[1] for c in webhooks.send_fire_and_forget.call_args_list]
        assert events.count("render.progress") == 1
        assert events[-1] == "render.completed"

    async def test_no_webhooks_without_callback(self, manager, make_entries, mocker):
        send = mocker.patch("dayreel.services.jobs.get_webhook_service")
        job_id = manager.start_render(make_entries(["dark.png"]), SETTINGS)
        await manager.wait(job_id)
        send.assert_not_called()
