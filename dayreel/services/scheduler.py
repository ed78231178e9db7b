"""
Render Scheduler - walks a timeline slide by slide and frame by frame.

State machine:
    idle -> loading -> rendering -> finalizing -> completed
                    \\-> cancelled | failed (from any active state)

Progress ranges:
- 5-20%: image loading
- 20-99%: frame rendering
- 99%: finalizing (encoder + storage)
- 100%: completed
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Optional

from dayreel.config import OverlayStyle, Settings, get_settings
from dayreel.services.anchor_resolver import AnchorPolicy
from dayreel.services.artifact_store import ArtifactHandle, ArtifactStore
from dayreel.services.compositor import FrameCompositor
from dayreel.services.errors import DecodeError, RenderCancelled, RenderError
from dayreel.services.image_source import DecodedImage, ImageSource
from dayreel.services.memory_monitor import force_gc, log_memory_usage
from dayreel.services.sinks.base import EncodingSink
from dayreel.services.timeline import RenderSettings, Timeline

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

LOADING_START_PERCENT = 5.0
RENDERING_START_PERCENT = 20.0
FINALIZING_PERCENT = 99.0


class JobState(str, Enum):
    """Lifecycle state of a render job."""

    IDLE = "idle"
    LOADING = "loading"
    RENDERING = "rendering"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.CANCELLED, JobState.FAILED)


class RenderStatus(str, Enum):
    """Terminal outcome of a render."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class RenderResult:
    """Final result of a render job. Produced exactly once per job."""

    job_id: str
    status: RenderStatus
    artifact: Optional[ArtifactHandle] = None
    reason: Optional[str] = None
    error_category: Optional[str] = None
    decode_failures: tuple[str, ...] = ()
    frames_rendered: int = 0
    processing_time_seconds: float = 0


@dataclass
class RenderJob:
    """
    One render invocation: a validated timeline plus its settings.

    Only the scheduler mutates state/progress; callers may only request
    cancellation.
    """

    timeline: Timeline
    settings: RenderSettings
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: JobState = JobState.IDLE
    progress_percent: float = 0.0
    current_step: str = "Queued"
    frames_rendered: int = 0
    total_frames: int = 0
    decode_failures: list[str] = field(default_factory=list)
    result: Optional[RenderResult] = None
    _cancel_requested: bool = field(default=False, repr=False)

    def cancel(self) -> None:
        """Request cooperative cancellation; honored at the next frame or slide boundary."""
        if not self.state.is_terminal:
            self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested


@dataclass(frozen=True)
class FramePlan:
    """What one output frame shows."""

    slide_index: int
    frame_index: int  # Within the slide
    global_index: int
    blend: Optional[float] = None  # Next slide's opacity during a crossfade


def plan_frames(
    slide_count: int,
    frames_per_slide: int,
    transition_frames: int = 0,
) -> Iterator[FramePlan]:
    """
    Enumerate every output frame in playback order.

    The crossfade occupies the trailing transition_frames of each slide that
    has a successor, so it never changes the total frame count. The k-th
    window frame blends at (k + 1) / (transition_frames + 1), strictly
    between 0 and 1.
    """
    window_start = frames_per_slide - transition_frames
    for slide in range(slide_count):
        has_next = slide + 1 < slide_count
        for f in range(frames_per_slide):
            blend = None
            if has_next and transition_frames > 0 and f >= window_start:
                k = f - window_start
                blend = (k + 1) / (transition_frames + 1)
            yield FramePlan(
                slide_index=slide,
                frame_index=f,
                global_index=slide * frames_per_slide + f,
                blend=blend,
            )


class FramePacer:
    """
    Suspends until the next frame tick.

    Ticks are scheduled from a fixed start time, so a slow frame is made up
    by shorter waits later instead of drifting.
    """

    def __init__(
        self,
        frame_rate: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.interval = 1.0 / frame_rate
        self._clock = clock
        self._sleep = sleep
        self._next_tick: Optional[float] = None

    async def tick(self) -> None:
        now = self._clock()
        if self._next_tick is None:
            self._next_tick = now
        self._next_tick += self.interval
        await self._sleep(max(0.0, self._next_tick - now))


class RenderScheduler:
    """
    Drives one job through loading, rendering and finalizing.

    The same scheduler serves both sinks; the sink decides whether frames are
    paced and how many images may be decoded at once.
    """

    def __init__(
        self,
        image_source: ImageSource,
        artifact_store: ArtifactStore,
        settings: Optional[Settings] = None,
        policy: Optional[AnchorPolicy] = None,
        overlay_style: Optional[OverlayStyle] = None,
    ):
        self.settings = settings or get_settings()
        self.image_source = image_source
        self.artifact_store = artifact_store
        self.policy = policy or AnchorPolicy(top_bias=self.settings.face_anchor_top_bias)
        self.overlay_style = overlay_style or self.settings.get_overlay_style()

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _report(
        self,
        job: RenderJob,
        progress: Optional[ProgressCallback],
        percent: float,
        label: str,
    ) -> None:
        job.progress_percent = round(min(100.0, max(0.0, percent)), 2)
        job.current_step = label
        if progress is None:
            return
        try:
            progress(job.progress_percent, label)
        except Exception as e:
            # Progress is fire-and-forget; a broken subscriber must not fail the render
            logger.warning(f"[{job.job_id}] Progress callback failed: {e}")

    def _enter(self, job: RenderJob, state: JobState) -> None:
        logger.info(f"[{job.job_id}] {job.state.value} -> {state.value}")
        job.state = state

    @staticmethod
    def _check_cancelled(job: RenderJob, where: str) -> None:
        if job.cancel_requested:
            raise RenderCancelled(f"Cancelled {where}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _decode(self, entry_index: int, job: RenderJob) -> Optional[DecodedImage]:
        entry = job.timeline.entry_at(entry_index)
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(
                None,
                lambda: self.image_source.decode(entry.image_ref, entry.face_region),
            )
        except DecodeError as e:
            logger.warning(f"[{job.job_id}] Failed to load image for {entry.day_key}: {e}")
            return None

    async def _load_images(
        self,
        job: RenderJob,
        workers: int,
        progress: Optional[ProgressCallback],
    ) -> dict[int, Optional[DecodedImage]]:
        total = len(job.timeline)
        images: dict[int, Optional[DecodedImage]] = {}
        loaded = 0
        semaphore = asyncio.Semaphore(max(1, workers))

        async def load(index: int) -> None:
            nonlocal loaded
            async with semaphore:
                self._check_cancelled(job, f"while loading entry {index}")
                images[index] = await self._decode(index, job)
                loaded += 1
                self._report(
                    job,
                    progress,
                    LOADING_START_PERCENT + (loaded / total) * (RENDERING_START_PERCENT - LOADING_START_PERCENT),
                    f"Loaded image {loaded}/{total}",
                )

        if workers <= 1:
            for index in range(total):
                await load(index)
        else:
            tasks = [asyncio.create_task(load(index)) for index in range(total)]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        job.decode_failures = [
            job.timeline.entry_at(index).day_key
            for index in range(total)
            if images.get(index) is None
        ]
        if job.decode_failures:
            logger.warning(
                f"[{job.job_id}] {len(job.decode_failures)} image(s) failed to load, "
                f"rendering placeholders: {job.decode_failures}"
            )
        return images

    async def _render_frames(
        self,
        job: RenderJob,
        sink: EncodingSink,
        images: dict[int, Optional[DecodedImage]],
        compositor: FrameCompositor,
        progress: Optional[ProgressCallback],
    ) -> None:
        settings = job.settings
        timeline = job.timeline
        frames_per_slide = settings.frames_per_slide
        job.total_frames = len(timeline) * frames_per_slide
        yield_interval = max(1, self.settings.progress_yield_interval)
        pacer = FramePacer(settings.frame_rate) if sink.paced else None
        render_span = FINALIZING_PERCENT - RENDERING_START_PERCENT

        logger.info(
            f"[{job.job_id}] Rendering {len(timeline)} slides x {frames_per_slide} frames "
            f"({job.total_frames} total, transition window {settings.transition_frames})"
        )

        for plan in plan_frames(len(timeline), frames_per_slide, settings.transition_frames):
            self._check_cancelled(job, f"at frame {plan.global_index}/{job.total_frames}")

            index = plan.slide_index
            next_entry = timeline.neighbor_after(index) if plan.blend is not None else None
            frame = compositor.compose(
                timeline.entry_at(index),
                images.get(index),
                next_entry=next_entry,
                next_image=images.get(index + 1) if next_entry is not None else None,
                blend_factor=plan.blend,
            )
            await sink.accept(frame)
            job.frames_rendered += 1

            if plan.frame_index == frames_per_slide - 1:
                # Slide done; its decoded image is no longer needed
                images.pop(index, None)

            if plan.global_index % yield_interval == 0:
                self._report(
                    job,
                    progress,
                    RENDERING_START_PERCENT + (plan.global_index / job.total_frames) * render_span,
                    "Rendering...",
                )
                await asyncio.sleep(0)

            if pacer is not None:
                await pacer.tick()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        job: RenderJob,
        sink: EncodingSink,
        progress: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        """
        Render a job into a sink and persist the artifact.

        Never raises for render errors: every outcome is returned as a
        RenderResult and also stored on job.result.
        """
        if job.result is not None:
            return job.result

        start_time = time.time()
        images: dict[int, Optional[DecodedImage]] = {}
        compositor = FrameCompositor(job.settings, self.policy, self.overlay_style)
        status = RenderStatus.FAILED
        artifact: Optional[ArtifactHandle] = None
        reason: Optional[str] = None
        category: Optional[str] = None

        try:
            Timeline.validate(job.timeline.entries, job.settings)

            self._enter(job, JobState.LOADING)
            self._report(job, progress, LOADING_START_PERCENT, "Loading images...")
            images = await self._load_images(job, sink.load_workers, progress)
            log_memory_usage("after_loading", job.job_id)

            self._check_cancelled(job, "before rendering")
            self._enter(job, JobState.RENDERING)
            self._report(job, progress, RENDERING_START_PERCENT, "Rendering frames...")
            await self._render_frames(job, sink, images, compositor, progress)

            self._check_cancelled(job, "before finalizing")
            self._enter(job, JobState.FINALIZING)
            self._report(job, progress, FINALIZING_PERCENT, "Finalizing...")
            encoded = await sink.finish()
            artifact = await self.artifact_store.persist(encoded, job.job_id)

            status = RenderStatus.COMPLETED
            self._enter(job, JobState.COMPLETED)
            self._report(job, progress, 100.0, "Completed")

        except RenderCancelled as e:
            logger.info(f"[{job.job_id}] {e}")
            await sink.abort()
            status = RenderStatus.CANCELLED
            reason = e.describe()
            category = e.category
            self._enter(job, JobState.CANCELLED)
            job.current_step = "Cancelled"

        except RenderError as e:
            logger.error(f"[{job.job_id}] Render failed ({e.category}): {e}")
            await sink.abort()
            reason = e.describe()
            category = e.category
            self._enter(job, JobState.FAILED)
            job.current_step = "Failed"

        except Exception as e:
            logger.exception(f"[{job.job_id}] Unexpected render error: {e}")
            await sink.abort()
            reason = RenderError.default_message
            category = RenderError.category
            self._enter(job, JobState.FAILED)
            job.current_step = "Failed"

        finally:
            images.clear()
            compositor.release()
            force_gc("after_release", job.job_id)

        job.result = RenderResult(
            job_id=job.job_id,
            status=status,
            artifact=artifact,
            reason=reason,
            error_category=category,
            decode_failures=tuple(job.decode_failures),
            frames_rendered=job.frames_rendered,
            processing_time_seconds=round(time.time() - start_time, 3),
        )
        logger.info(
            f"[{job.job_id}] Render {status.value}: {job.frames_rendered} frames "
            f"in {job.result.processing_time_seconds:.1f}s"
        )
        return job.result
