"""
FFmpeg command builders and runner shared by both encoding sinks.
"""

import asyncio
import logging
import shutil
import subprocess

from dayreel.config import Settings
from dayreel.services.errors import EncodeError

logger = logging.getLogger(__name__)


def verify_ffmpeg(ffmpeg_path: str = "ffmpeg") -> bool:
    """Check whether the ffmpeg binary is available."""
    if shutil.which(ffmpeg_path):
        logger.info("FFmpeg available")
        return True
    logger.warning(f"FFmpeg not found ({ffmpeg_path}) - rendering will fail")
    return False


def build_concat_command(
    settings: Settings,
    manifest_path: str,
    output_path: str,
    width: int,
    height: int,
    total_frames: int,
) -> list[str]:
    """
    Command that turns a concat manifest of stills into an H.264 MP4.

    The fps filter resamples the still timestamps onto the output frame grid
    (a still starting at t covers frames from round(t * fps) on), so slide
    boundaries match the frames the scheduler produced. The repeated last
    manifest line would otherwise add a tail, so the output is capped at
    total_frames. The scale filter pins the output size even if a still was
    written at a different resolution.
    """
    filters = ",".join([
        f"fps={settings.frame_rate}:round=near",
        f"scale={width}:{height}:flags=lanczos",
        f"format={settings.pixel_format}",
    ])
    return [
        settings.ffmpeg_path,
        "-y",
        "-loglevel", "error",
        "-f", "concat",
        "-safe", "0",
        "-i", manifest_path,
        "-vf", filters,
        "-frames:v", str(total_frames),
        "-c:v", settings.video_codec,
        "-preset", settings.ffmpeg_preset,
        "-crf", str(settings.ffmpeg_crf),
        "-pix_fmt", settings.pixel_format,
        "-r", str(settings.frame_rate),
        "-movflags", "+faststart",
        output_path,
    ]


def build_stream_command(settings: Settings, width: int, height: int) -> list[str]:
    """
    Command that reads raw BGR frames on stdin and writes fragmented MP4 to stdout.

    Fragmented MP4 is required because stdout is not seekable.
    """
    return [
        settings.ffmpeg_path,
        "-y",
        "-loglevel", "error",
        "-f", "rawvideo",
        "-pix_fmt", "bgr24",
        "-s", f"{width}x{height}",
        "-r", str(settings.frame_rate),
        "-i", "-",
        "-an",
        "-c:v", settings.video_codec,
        "-preset", settings.ffmpeg_preset,
        "-b:v", settings.realtime_bitrate,
        "-pix_fmt", settings.pixel_format,
        "-movflags", "frag_keyframe+empty_moov",
        "-f", "mp4",
        "-",
    ]


async def run_ffmpeg(cmd: list[str]) -> None:
    """Run an ffmpeg command to completion, raising EncodeError on failure."""
    logger.debug(f"Running: {' '.join(cmd[:10])}...")

    loop = asyncio.get_event_loop()
    try:
        result = await loop.run_in_executor(
            None,
            lambda: subprocess.run(cmd, capture_output=True)
        )
    except OSError as e:
        raise EncodeError(f"Failed to start ffmpeg: {e}") from e

    if result.returncode != 0:
        error_msg = result.stderr.decode(errors="replace")[-1000:] if result.stderr else "Unknown error"
        logger.error(f"FFmpeg failed (exit {result.returncode}): {error_msg}")
        raise EncodeError(f"FFmpeg failed: {error_msg}")
