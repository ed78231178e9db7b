"""
Process memory checkpoints for render jobs.

A job holds every decoded photo of its timeline until the slide that uses
it has been rendered, so the scheduler records RSS once loading finishes and
again after the buffers are dropped:

    log_memory_usage("after_loading", job.job_id)
    force_gc("after_release", job.job_id)
"""

import gc
import logging
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Above this resident size a warning is logged with the checkpoint
HIGH_MEMORY_MB = 6000


@dataclass(frozen=True)
class MemorySnapshot:
    rss_mb: float = 0.0
    vms_mb: float = 0.0

    @property
    def available(self) -> bool:
        return self.rss_mb > 0


def take_snapshot() -> MemorySnapshot:
    """Resident and virtual size of this process; zeros if psutil cannot read them."""
    try:
        info = psutil.Process().memory_info()
    except psutil.Error as e:
        logger.debug(f"Memory measurement failed: {e}")
        return MemorySnapshot()
    return MemorySnapshot(rss_mb=info.rss / MB, vms_mb=info.vms / MB)


def _tag(job_id: Optional[str]) -> str:
    return f"[{job_id}] " if job_id else ""


def log_memory_usage(stage: str, job_id: Optional[str] = None) -> MemorySnapshot:
    snapshot = take_snapshot()
    tag = _tag(job_id)
    if not snapshot.available:
        logger.debug(f"{tag}Memory [{stage}]: measurement unavailable")
        return snapshot

    logger.info(f"{tag}Memory [{stage}]: RSS={snapshot.rss_mb:.1f}MB, VMS={snapshot.vms_mb:.1f}MB")
    if snapshot.rss_mb > HIGH_MEMORY_MB:
        logger.warning(f"{tag}Memory [{stage}]: RSS above {HIGH_MEMORY_MB}MB, consider fewer concurrent jobs")
    return snapshot


def force_gc(stage: str, job_id: Optional[str] = None) -> MemorySnapshot:
    """Run a full collection and log how much resident memory it gave back."""
    before = take_snapshot()
    collected = gc.collect()
    after = take_snapshot()

    tag = _tag(job_id)
    if before.available:
        logger.info(
            f"{tag}GC [{stage}]: {collected} objects collected, "
            f"RSS {before.rss_mb:.1f}MB -> {after.rss_mb:.1f}MB"
        )
    else:
        logger.debug(f"{tag}GC [{stage}]: {collected} objects collected")
    return after
