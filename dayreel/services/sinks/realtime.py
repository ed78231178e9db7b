"""
Real-time sink - streams raw frames into a running ffmpeg process and collects
the encoded MP4 from its stdout.
"""

import asyncio
import logging
from typing import Optional

import numpy as np

from dayreel.config import Settings, get_settings
from dayreel.services.errors import EncodeError
from dayreel.services.ffmpeg import build_stream_command
from dayreel.services.sinks.base import Artifact, EncodingSink

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_STDERR_TAIL = 4000


class RealtimeSink(EncodingSink):
    """
    Live encode channel fed at the output frame rate.

    Frames pass through a bounded queue; when ffmpeg falls behind the queue
    fills and accept() waits, which keeps delivery in order.
    """

    def __init__(
        self,
        width: int,
        height: int,
        frame_rate: int,
        settings: Optional[Settings] = None,
        paced: Optional[bool] = None,
    ):
        super().__init__(width, height, frame_rate)
        self.settings = settings or get_settings()
        self.paced = self.settings.realtime_pacing if paced is None else paced
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.settings.realtime_queue_frames)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._output = bytearray()
        self._stderr = b""
        self._write_error: Optional[BaseException] = None

    async def _start(self) -> None:
        cmd = build_stream_command(self.settings, self.width, self.height)
        logger.debug(f"Starting encoder: {' '.join(cmd[:10])}...")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EncodeError(f"Failed to start ffmpeg: {e}") from e

        self._writer_task = asyncio.create_task(self._write_frames())
        self._reader_task = asyncio.create_task(self._read_output())
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def _write_frames(self) -> None:
        stdin = self._process.stdin
        while True:
            frame = await self._queue.get()
            if frame is None:
                break
            if self._write_error is not None:
                continue  # Drain so producers never block on a dead channel
            try:
                stdin.write(frame.tobytes())
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                self._write_error = e
                logger.error(f"Encoder input closed: {e}")

        if self._write_error is None:
            stdin.close()
            try:
                await stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _read_output(self) -> None:
        while True:
            chunk = await self._process.stdout.read(_READ_CHUNK)
            if not chunk:
                break
            self._output.extend(chunk)

    async def _read_stderr(self) -> None:
        while True:
            chunk = await self._process.stderr.read(_READ_CHUNK)
            if not chunk:
                break
            self._stderr = (self._stderr + chunk)[-_STDERR_TAIL:]

    def _raise_if_broken(self) -> None:
        if self._write_error is not None:
            raise EncodeError(f"Encode channel failed: {self._write_error}")

    async def _accept(self, frame: np.ndarray) -> None:
        if self._process is None:
            await self._start()
        self._raise_if_broken()
        await self._queue.put(frame)

    async def _finish(self) -> Artifact:
        if self._process is None:
            raise EncodeError("No frames were delivered to the encoder")

        await self._queue.put(None)
        await self._writer_task
        await asyncio.gather(self._reader_task, self._stderr_task)
        returncode = await self._process.wait()

        if returncode != 0 or self._write_error is not None:
            error_msg = self._stderr.decode(errors="replace")[-1000:] or "Unknown error"
            logger.error(f"Real-time encoder failed (exit {returncode}): {error_msg}")
            self._output = bytearray()
            raise EncodeError(f"FFmpeg failed: {error_msg}")

        data = bytes(self._output)
        self._output = bytearray()
        return Artifact(
            content_type="video/mp4",
            data=data,
            frame_count=self.frames_accepted,
            duration_seconds=self.frames_accepted / self.frame_rate,
        )

    async def _abort(self) -> None:
        self._output = bytearray()
        if self._process is None:
            return

        for task in (self._writer_task, self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()

        if self._process.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
        await self._process.wait()

        # Reap cancelled helpers
        await asyncio.gather(
            self._writer_task, self._reader_task, self._stderr_task,
            return_exceptions=True,
        )
