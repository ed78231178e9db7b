"""
Tests for the encoding sinks and the concat manifest.

The ffmpeg binary is never invoked: the batch encoder call and the real-time
subprocess are both patched.
"""

import asyncio
import os

import pytest

from dayreel.services import ffmpeg
from dayreel.services.errors import ConfigurationError, EncodeError, SinkClosedError
from dayreel.services.sinks import BatchSink, RealtimeSink, create_sink
from dayreel.services.sinks.batch import MANIFEST_FILENAME, OUTPUT_FILENAME
from dayreel.services.sinks.manifest import ConcatManifest

from tests.conftest import solid_image


def touch(path) -> str:
    with open(path, "wb") as f:
        f.write(b"x")
    return str(path)


class TestConcatManifest:
    """Tests for ConcatManifest."""

    def test_text_format(self, tmp_path):
        """Each still gets a duration; the last still is listed once more."""
        manifest = ConcatManifest(frame_rate=30)
        first = touch(tmp_path / "frame_0000.jpg")
        second = touch(tmp_path / "frame_0001.jpg")
        manifest.add(first, frames=60)
        manifest.add(second, frames=15)

        assert manifest.to_text().splitlines() == [
            f"file '{first}'",
            "duration 2.000000",
            f"file '{second}'",
            "duration 0.500000",
            f"file '{second}'",
        ]
        assert manifest.total_frames == 75
        assert manifest.duration_seconds == pytest.approx(2.5)

    def test_quotes_escaped(self, tmp_path):
        """Single quotes in paths use the demuxer's escape form."""
        manifest = ConcatManifest(frame_rate=30)
        manifest.add(str(tmp_path / "it's.jpg"))
        assert "it'\\''s.jpg" in manifest.to_text()

    def test_durations_land_on_frame_boundaries(self, tmp_path):
        """Cumulative start times stay on the 30 fps grid for one-frame stills."""
        manifest = ConcatManifest(frame_rate=30)
        for index in range(100):
            manifest.add(touch(tmp_path / f"frame_{index:04d}.jpg"))

        durations = [
            float(line.split()[1]) for line in manifest.to_text().splitlines() if line.startswith("duration")
        ]

        start = 0.0
        for frame, duration in enumerate(durations, start=1):
            start += duration
            assert start == pytest.approx(frame / 30, abs=1e-6)

    def test_extend_last(self):
        manifest = ConcatManifest(frame_rate=30)
        manifest.add("/a.jpg")
        manifest.extend_last(29)
        assert manifest.entries[0].frames == 30

    def test_extend_empty_manifest(self):
        with pytest.raises(ValueError):
            ConcatManifest(frame_rate=30).extend_last()

    def test_validate_ok(self, tmp_path):
        manifest = ConcatManifest(frame_rate=30)
        manifest.add(touch(tmp_path / "a.jpg"))
        manifest.validate(1920, 1080, "yuv420p")

    def test_validate_empty(self):
        with pytest.raises(ConfigurationError, match="empty"):
            ConcatManifest(frame_rate=30).validate(1920, 1080, "yuv420p")

    @pytest.mark.parametrize("width,height", [(1921, 1080), (1920, 1079), (0, 1080)])
    def test_validate_odd_dimensions(self, tmp_path, width, height):
        """yuv420p needs even dimensions."""
        manifest = ConcatManifest(frame_rate=30)
        manifest.add(touch(tmp_path / "a.jpg"))
        with pytest.raises(ConfigurationError, match="even"):
            manifest.validate(width, height, "yuv420p")

    def test_validate_zero_duration(self, tmp_path):
        manifest = ConcatManifest(frame_rate=30)
        manifest.add(touch(tmp_path / "a.jpg"), frames=0)
        with pytest.raises(ConfigurationError, match="zero duration"):
            manifest.validate(1920, 1080, "yuv420p")

    def test_validate_missing_still(self, tmp_path):
        """Every still must be on disk before the encoder runs."""
        manifest = ConcatManifest(frame_rate=30)
        manifest.add(str(tmp_path / "never_written.jpg"))
        with pytest.raises(ConfigurationError, match="missing"):
            manifest.validate(1920, 1080, "yuv420p")

    def test_validate_pixel_format(self, tmp_path):
        manifest = ConcatManifest(frame_rate=30)
        manifest.add(touch(tmp_path / "a.jpg"))
        with pytest.raises(ConfigurationError, match="pixel format"):
            manifest.validate(1920, 1080, "rgb24")


@pytest.fixture
def fake_encoder(mocker):
    """Patch the batch encoder call; the fake writes the output file."""

    async def fake_run(cmd):
        with open(cmd[-1], "wb") as f:
            f.write(b"\x00\x00\x00\x18ftypmp42")

    return mocker.patch("dayreel.services.sinks.batch.run_ffmpeg", side_effect=fake_run)


class TestBatchSink:
    """Tests for BatchSink."""

    async def test_identical_frames_coalesced(self, tmp_path, test_settings, fake_encoder):
        """A static slide becomes one still held for the whole slide."""
        sink = BatchSink(str(tmp_path), 64, 48, 30, settings=test_settings)
        dark = solid_image(64, 48, (0, 0, 0))
        light = solid_image(64, 48, (240, 240, 240))

        for _ in range(60):
            await sink.accept(dark)
        for _ in range(30):
            await sink.accept(light.copy())

        artifact = await sink.finish()

        assert [e.frames for e in sink.manifest.entries] == [60, 30]
        assert sorted(os.listdir(tmp_path)) == sorted(
            ["frame_0000.jpg", "frame_0001.jpg", MANIFEST_FILENAME, OUTPUT_FILENAME]
        )
        assert artifact.path == os.path.join(str(tmp_path), OUTPUT_FILENAME)
        assert artifact.frame_count == 90
        assert artifact.duration_seconds == pytest.approx(3.0)
        assert artifact.content_type == "video/mp4"

        with open(tmp_path / MANIFEST_FILENAME) as f:
            lines = f.read().splitlines()
        assert lines[1] == "duration 2.000000"
        assert lines[3] == "duration 1.000000"
        assert lines[4] == lines[2]

    async def test_changing_frames_each_get_a_still(self, tmp_path, test_settings, fake_encoder):
        """Crossfade frames differ from each other and are written individually."""
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        for value in range(0, 150, 10):
            await sink.accept(solid_image(32, 32, (value, value, value)))
        await sink.finish()
        assert len(sink.manifest.entries) == 15
        assert all(e.frames == 1 for e in sink.manifest.entries)

    async def test_encoder_invoked_with_manifest(self, tmp_path, test_settings, fake_encoder):
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        await sink.accept(solid_image(32, 32))
        await sink.finish()

        cmd = fake_encoder.call_args.args[0]
        assert cmd[cmd.index("-f") + 1] == "concat"
        assert cmd[cmd.index("-i") + 1] == os.path.join(str(tmp_path), MANIFEST_FILENAME)
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[cmd.index("-r") + 1] == "30"

    async def test_encoder_output_capped_at_frame_count(self, tmp_path, test_settings, fake_encoder):
        """The repeated last manifest line must not add frames to the video."""
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        for _ in range(30):
            await sink.accept(solid_image(32, 32, (0, 0, 0)))
        for _ in range(15):
            await sink.accept(solid_image(32, 32, (200, 200, 200)))
        await sink.finish()

        cmd = fake_encoder.call_args.args[0]
        assert cmd[cmd.index("-frames:v") + 1] == "45"
        assert cmd[cmd.index("-vf") + 1].startswith("fps=30:round=near,")

    async def test_odd_dimensions_rejected_before_encoding(self, tmp_path, test_settings, fake_encoder):
        sink = BatchSink(str(tmp_path), 33, 32, 30, settings=test_settings)
        await sink.accept(solid_image(33, 32))
        with pytest.raises(ConfigurationError):
            await sink.finish()
        fake_encoder.assert_not_called()

    async def test_finish_without_frames(self, tmp_path, test_settings, fake_encoder):
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        with pytest.raises(ConfigurationError, match="empty"):
            await sink.finish()

    async def test_accept_after_finish_rejected(self, tmp_path, test_settings, fake_encoder):
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        await sink.accept(solid_image(32, 32))
        await sink.finish()
        with pytest.raises(SinkClosedError):
            await sink.accept(solid_image(32, 32))
        with pytest.raises(SinkClosedError):
            await sink.finish()

    async def test_wrong_frame_size_rejected(self, tmp_path, test_settings):
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        with pytest.raises(EncodeError, match="size mismatch"):
            await sink.accept(solid_image(16, 16))

    async def test_abort_removes_files(self, tmp_path, test_settings):
        """Abort leaves nothing behind and closes the sink."""
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        await sink.accept(solid_image(32, 32, (0, 0, 0)))
        await sink.accept(solid_image(32, 32, (50, 50, 50)))
        assert len(os.listdir(tmp_path)) == 2

        await sink.abort()
        await sink.abort()

        assert os.listdir(tmp_path) == []
        with pytest.raises(SinkClosedError):
            await sink.accept(solid_image(32, 32))

    async def test_encoder_failure_propagates(self, tmp_path, test_settings, mocker):
        mocker.patch(
            "dayreel.services.sinks.batch.run_ffmpeg",
            side_effect=EncodeError("FFmpeg failed: bad input"),
        )
        sink = BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings)
        await sink.accept(solid_image(32, 32))
        with pytest.raises(EncodeError):
            await sink.finish()

    def test_parallel_decode_allowed(self, tmp_path, test_settings):
        assert BatchSink(str(tmp_path), 32, 32, 30, settings=test_settings).load_workers == 2


class FakeStdin:
    def __init__(self, fail_after: int = -1):
        self.buffer = bytearray()
        self.writes = 0
        self.closed = False
        self.fail_after = fail_after

    def write(self, data):
        if self.fail_after >= 0 and self.writes >= self.fail_after:
            raise BrokenPipeError("encoder exited")
        self.writes += 1
        self.buffer.extend(data)

    async def drain(self):
        await asyncio.sleep(0)

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class FakeProcess:
    """Stands in for an ffmpeg subprocess."""

    def __init__(self, output: bytes = b"fragmented-mp4", returncode: int = 0, stderr: bytes = b"", fail_after: int = -1):
        self.stdin = FakeStdin(fail_after)
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_data(output)
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        if stderr:
            self.stderr.feed_data(stderr)
        self.stderr.feed_eof()
        self._exit_code = returncode
        self.returncode = None
        self.killed = False

    async def wait(self):
        self.returncode = self._exit_code
        return self.returncode

    def kill(self):
        self.killed = True
        self._exit_code = -9


class TestRealtimeSink:
    """Tests for RealtimeSink with a fake encoder process."""

    @pytest.fixture
    def spawn(self, mocker):
        def _spawn(process):
            async def fake_exec(*cmd, **kwargs):
                return process

            return mocker.patch("asyncio.create_subprocess_exec", side_effect=fake_exec)

        return _spawn

    async def test_frames_streamed_in_order(self, test_settings, spawn):
        """Raw BGR frames reach the encoder in order; stdout becomes the artifact."""
        process = FakeProcess(output=b"mp4-bytes")
        spawn(process)
        sink = RealtimeSink(8, 4, 30, settings=test_settings, paced=False)

        for value in (10, 20, 30):
            await sink.accept(solid_image(8, 4, (value, value, value)))
        artifact = await sink.finish()

        assert artifact.data == b"mp4-bytes"
        assert artifact.frame_count == 3
        assert artifact.duration_seconds == pytest.approx(0.1)
        assert len(process.stdin.buffer) == 3 * 8 * 4 * 3
        assert process.stdin.buffer[0] == 10
        assert process.stdin.buffer[-1] == 30
        assert process.stdin.closed

    async def test_process_started_lazily_with_stream_command(self, test_settings, spawn):
        exec_mock = spawn(FakeProcess())
        sink = RealtimeSink(8, 4, 30, settings=test_settings)
        exec_mock.assert_not_called()

        await sink.accept(solid_image(8, 4))
        await sink.finish()

        cmd = exec_mock.call_args.args
        assert cmd[cmd.index("-f") + 1] == "rawvideo"
        assert cmd[cmd.index("-s") + 1] == "8x4"
        assert "frag_keyframe+empty_moov" in cmd

    async def test_nonzero_exit_raises(self, test_settings, spawn):
        spawn(FakeProcess(returncode=1, stderr=b"Invalid argument"))
        sink = RealtimeSink(8, 4, 30, settings=test_settings)
        await sink.accept(solid_image(8, 4))
        with pytest.raises(EncodeError, match="Invalid argument"):
            await sink.finish()

    async def test_broken_pipe_fails_channel(self, test_settings, spawn):
        """A dead encoder surfaces as an EncodeError, never a hang."""
        spawn(FakeProcess(fail_after=1))
        sink = RealtimeSink(8, 4, 30, settings=test_settings)
        with pytest.raises(EncodeError):
            for _ in range(10):
                await sink.accept(solid_image(8, 4))
                await asyncio.sleep(0)
            await sink.finish()

    async def test_finish_without_frames(self, test_settings):
        sink = RealtimeSink(8, 4, 30, settings=test_settings)
        with pytest.raises(EncodeError, match="No frames"):
            await sink.finish()

    async def test_abort_kills_encoder(self, test_settings, spawn):
        process = FakeProcess()
        spawn(process)
        sink = RealtimeSink(8, 4, 30, settings=test_settings)
        await sink.accept(solid_image(8, 4))

        await sink.abort()

        assert process.killed
        with pytest.raises(SinkClosedError):
            await sink.accept(solid_image(8, 4))

    def test_paced_by_default(self, test_settings):
        """Real-time delivery follows the configured pacing flag."""
        assert RealtimeSink(8, 4, 30, settings=test_settings).paced is True
        assert RealtimeSink(8, 4, 30, settings=test_settings, paced=False).paced is False


class TestCreateSink:
    """Tests for create_sink."""

    def test_modes(self, tmp_path, test_settings):
        assert isinstance(create_sink("batch", str(tmp_path), 32, 32, settings=test_settings), BatchSink)
        assert isinstance(create_sink("realtime", str(tmp_path), 32, 32, settings=test_settings), RealtimeSink)

    def test_unknown_mode(self, tmp_path, test_settings):
        with pytest.raises(ValueError, match="Unknown sink mode"):
            create_sink("gif", str(tmp_path), 32, 32, settings=test_settings)


class TestRunFfmpeg:
    """Tests for the shared ffmpeg runner."""

    async def test_nonzero_exit(self, mocker):
        completed = mocker.MagicMock(returncode=1, stderr=b"Unknown encoder 'libx264'")
        mocker.patch("dayreel.services.ffmpeg.subprocess.run", return_value=completed)
        with pytest.raises(EncodeError, match="Unknown encoder"):
            await ffmpeg.run_ffmpeg(["ffmpeg", "-version"])

    async def test_missing_binary(self, mocker):
        mocker.patch("dayreel.services.ffmpeg.subprocess.run", side_effect=FileNotFoundError("ffmpeg"))
        with pytest.raises(EncodeError, match="Failed to start"):
            await ffmpeg.run_ffmpeg(["ffmpeg", "-version"])

    def test_verify_ffmpeg(self, mocker):
        mocker.patch("dayreel.services.ffmpeg.shutil.which", return_value=None)
        assert ffmpeg.verify_ffmpeg("ffmpeg") is False
