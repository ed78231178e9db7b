"""
Render Job Manager - in-memory registry of render jobs.

Each job gets:
- its own temp workspace (removed on every exit path)
- its own sink instance
- an optional per-job log file
- optional webhook delivery to a callback URL

Concurrency is bounded by a semaphore sized from max_concurrent_jobs.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from dayreel.config import Settings, get_settings
from dayreel.services.anchor_resolver import AnchorPolicy
from dayreel.services.artifact_store import ArtifactStore, create_artifact_store
from dayreel.services.errors import RenderError
from dayreel.services.image_source import ImageSource, LocalImageSource
from dayreel.services.scheduler import (
    JobState,
    RenderJob,
    RenderResult,
    RenderScheduler,
    RenderStatus,
)
from dayreel.services.sinks import SinkMode, create_sink
from dayreel.services.timeline import RenderSettings, Timeline, TimelineEntry
from dayreel.services.webhook_service import WebhookService, get_webhook_service
from dayreel.services.workspace import job_workspace

logger = logging.getLogger(__name__)

Subscriber = Callable[[RenderJob], None]

SERVICE_LOGGER = "dayreel.services"


class RenderJobManager:
    """
    Starts, tracks and cancels render jobs.

    start_render() validates synchronously so invalid requests fail before
    any task exists; everything after that is reported through the job's
    RenderResult.
    """

    def __init__(
        self,
        image_source: Optional[ImageSource] = None,
        artifact_store: Optional[ArtifactStore] = None,
        settings: Optional[Settings] = None,
        webhook_service: Optional[WebhookService] = None,
        sink_factory: Callable = create_sink,
    ):
        self.settings = settings or get_settings()
        self.scheduler = RenderScheduler(
            image_source=image_source or LocalImageSource(root=self.settings.image_root),
            artifact_store=artifact_store or create_artifact_store(self.settings),
            settings=self.settings,
            policy=AnchorPolicy(top_bias=self.settings.face_anchor_top_bias),
        )
        self.webhooks = webhook_service
        self.sink_factory = sink_factory
        self._jobs: dict[str, RenderJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    @property
    def semaphore(self) -> asyncio.Semaphore:
        """Created lazily so it binds to the running event loop."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_jobs)
        return self._semaphore

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def start_render(
        self,
        entries: list[TimelineEntry],
        render_settings: RenderSettings,
        mode: SinkMode = "batch",
        callback_url: Optional[str] = None,
    ) -> str:
        """
        Validate and schedule a render.

        Must be called from a running event loop.

        Raises:
            ValidationError: If the timeline or settings are invalid
            ValueError: If mode is not a known sink mode
        """
        timeline = Timeline.validate(entries, render_settings)
        if mode not in ("batch", "realtime"):
            raise ValueError(f"Unknown sink mode: {mode}")

        job = RenderJob(
            timeline=timeline,
            settings=render_settings,
            total_frames=len(timeline) * render_settings.frames_per_slide,
        )
        self._jobs[job.job_id] = job
        self._tasks[job.job_id] = asyncio.create_task(
            self._run_job(job, mode, callback_url)
        )
        logger.info(
            f"[{job.job_id}] Render accepted: {len(timeline)} entries, "
            f"{render_settings.aspect_ratio}, mode={mode}"
        )
        return job.job_id

    def get(self, job_id: str) -> Optional[RenderJob]:
        return self._jobs.get(job_id)

    def list_jobs(self, state: Optional[JobState] = None, limit: Optional[int] = None) -> list[RenderJob]:
        """Known jobs, newest first, optionally filtered by state."""
        jobs = [job for job in reversed(self._jobs.values()) if state is None or job.state == state]
        return jobs[:limit] if limit is not None else jobs

    def cancel(self, job_id: str) -> bool:
        """
        Request cancellation.

        Returns:
            False if the job is unknown or already terminal
        """
        job = self._jobs.get(job_id)
        if job is None or job.state.is_terminal:
            return False
        job.cancel()
        logger.info(f"[{job_id}] Cancellation requested")
        return True

    async def wait(self, job_id: str) -> RenderResult:
        """
        Wait for a job to finish.

        Raises:
            KeyError: If the job is unknown
        """
        job = self._jobs[job_id]
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return job.result

    def subscribe(self, job_id: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register a progress subscriber and return an unsubscribe callable.

        Subscribers are invoked synchronously on every progress report and
        once more with the terminal state.
        """
        if job_id not in self._jobs:
            raise KeyError(job_id)
        callbacks = self._subscribers.setdefault(job_id, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def shutdown(self) -> None:
        """Cancel every active job and wait for them to settle."""
        for job in self._jobs.values():
            job.cancel()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _notify(self, job: RenderJob) -> None:
        for callback in list(self._subscribers.get(job.job_id, [])):
            try:
                callback(job)
            except Exception as e:
                logger.warning(f"[{job.job_id}] Subscriber failed: {e}")

    def _progress_handler(
        self,
        job: RenderJob,
        callback_url: Optional[str],
    ) -> Callable[[float, str], None]:
        def on_progress(percent: float, label: str) -> None:
            self._notify(job)
            if callback_url and self.webhooks and self.webhooks.should_send_progress(job.job_id):
                self._send_webhook("render.progress", job, callback_url)

        return on_progress

    def _send_webhook(self, event: str, job: RenderJob, callback_url: Optional[str]) -> None:
        if not callback_url or self.webhooks is None:
            return
        payload = self.webhooks.build_payload(
            event=event,
            job_id=job.job_id,
            status=job.state.value,
            progress_percent=job.progress_percent,
            current_step=job.current_step,
            frames_rendered=job.frames_rendered,
            total_frames=job.total_frames,
            error=job.result.reason if job.result and job.result.status == RenderStatus.FAILED else None,
            output=_result_output(job.result),
        )
        self.webhooks.send_fire_and_forget(callback_url, payload)

    async def _run_job(
        self,
        job: RenderJob,
        mode: SinkMode,
        callback_url: Optional[str],
    ) -> RenderResult:
        if callback_url and self.webhooks is None:
            self.webhooks = get_webhook_service()

        log_handler = self._setup_job_logging(job.job_id) if self.settings.job_log_files else None
        try:
            async with self.semaphore:
                width, height = job.settings.dimensions
                with job_workspace(self.settings.temp_directory, job.job_id) as work_dir:
                    sink = self.sink_factory(mode, work_dir, width, height, settings=self.settings)
                    self._send_webhook("render.started", job, callback_url)
                    result = await self.scheduler.run(
                        job,
                        sink,
                        progress=self._progress_handler(job, callback_url),
                    )
        except OSError as e:
            # Workspace or encoder setup failed before the scheduler ran
            logger.exception(f"[{job.job_id}] Render setup failed: {e}")
            job.state = JobState.FAILED
            job.current_step = "Failed"
            job.result = result = RenderResult(
                job_id=job.job_id,
                status=RenderStatus.FAILED,
                reason=RenderError.default_message,
                error_category=RenderError.category,
            )
        finally:
            self._cleanup_job_logging(log_handler)

        self._notify(job)
        self._send_webhook(f"render.{result.status.value}", job, callback_url)
        if self.webhooks is not None:
            self.webhooks.clear_job_tracking(job.job_id)
        self._subscribers.pop(job.job_id, None)
        self._tasks.pop(job.job_id, None)
        self._evict_finished()
        return result

    def _evict_finished(self) -> None:
        """Drop the oldest finished jobs beyond job_retention_limit."""
        finished = [job_id for job_id, job in self._jobs.items() if job.state.is_terminal]
        excess = len(finished) - max(0, self.settings.job_retention_limit)
        for job_id in finished[:max(0, excess)]:
            del self._jobs[job_id]
        if excess > 0:
            logger.debug(f"Evicted {excess} finished job(s) from the registry")

    # ------------------------------------------------------------------
    # Per-job log file
    # ------------------------------------------------------------------

    def _setup_job_logging(self, job_id: str) -> Optional[logging.FileHandler]:
        """
        Attach a job-specific file handler to the service loggers.

        Returns:
            The handler (to be removed later) or None if setup fails
        """
        try:
            logs_dir = Path(self.settings.job_log_directory)
            logs_dir.mkdir(parents=True, exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_filename = logs_dir / f"render_{job_id}_{timestamp}.log"

            file_handler = logging.FileHandler(log_filename, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            logging.getLogger(SERVICE_LOGGER).addHandler(file_handler)

            logger.info(f"Job logging initialized: {log_filename}")
            return file_handler

        except OSError as e:
            logger.warning(f"Failed to setup job logging: {e}")
            return None

    def _cleanup_job_logging(self, file_handler: Optional[logging.FileHandler]) -> None:
        if file_handler is None:
            return
        logging.getLogger(SERVICE_LOGGER).removeHandler(file_handler)
        file_handler.close()


def _result_output(result: Optional[RenderResult]) -> Optional[dict]:
    if result is None or result.artifact is None:
        return None
    return {
        "uri": result.artifact.uri,
        "size_bytes": result.artifact.size_bytes,
        "content_type": result.artifact.content_type,
        "duration_seconds": result.artifact.duration_seconds,
        "frames_rendered": result.frames_rendered,
        "decode_failures": list(result.decode_failures),
    }


# Global singleton instance
_job_manager: Optional[RenderJobManager] = None


def get_job_manager() -> RenderJobManager:
    """Get or create the global job manager instance."""
    global _job_manager
    if _job_manager is None:
        _job_manager = RenderJobManager()
    return _job_manager


def reset_job_manager(manager: Optional[RenderJobManager] = None) -> None:
    """Replace the global job manager (used at startup/shutdown and in tests)."""
    global _job_manager
    _job_manager = manager
