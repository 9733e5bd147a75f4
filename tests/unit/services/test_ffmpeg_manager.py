"""
Unit tests for FFmpeg Manager Service.

Command building is checked without a binary. The encoder stream tests that
need ffmpeg are skipped when it is not installed.
"""

import asyncio
import shutil
import wave
from unittest.mock import MagicMock

import pytest

from autorecord.services.capture.errors import EncodeError
from autorecord.services.capture.options import CaptureOptions
from autorecord.services.ffmpeg_manager.manager import FFmpegHandler, FFmpegManagerService

requires_ffmpeg = pytest.mark.skipif(shutil.which("ffmpeg") is None, reason="ffmpeg not installed")


# ============================================================================
# Command Building
# ============================================================================


@pytest.mark.unit
class TestEncoderCommand:
    """Test the ffmpeg argument list for each output option."""

    @pytest.fixture
    def handler(self):
        return FFmpegHandler(None, "ffmpeg")

    def test_raw_input_flags_come_before_input(self, handler):
        cmd = handler.build_encoder_command("/tmp/out.mp3", CaptureOptions())

        input_index = cmd.index("-i")
        assert cmd[input_index + 1] == "-"
        assert cmd[cmd.index("-f") + 1] == "s16le"
        assert cmd.index("-f") < input_index
        assert cmd.index("-ar") < input_index
        assert cmd[cmd.index("-ar") + 1] == "48000"

    def test_mp3_uses_lame_with_bitrate(self, handler):
        cmd = handler.build_encoder_command("/tmp/out.mp3", CaptureOptions(bitrate=128))

        assert cmd[cmd.index("-codec:a") + 1] == "libmp3lame"
        assert cmd[cmd.index("-b:a") + 1] == "128k"
        assert cmd[-3:] == ["mp3", "-y", "/tmp/out.mp3"]

    def test_wav_uses_pcm_without_bitrate(self, handler):
        cmd = handler.build_encoder_command("/tmp/out.wav", CaptureOptions(format="wav"))

        assert cmd[cmd.index("-codec:a") + 1] == "pcm_s16le"
        assert "-b:a" not in cmd
        assert cmd[-3:] == ["wav", "-y", "/tmp/out.wav"]

    def test_tempo_adds_atempo_filter(self, handler):
        cmd = handler.build_encoder_command("/tmp/out.mp3", CaptureOptions(tempo=1.5))

        assert cmd[cmd.index("-filter:a") + 1] == "atempo=1.5"

    def test_unit_tempo_is_omitted(self, handler):
        cmd = handler.build_encoder_command("/tmp/out.mp3", CaptureOptions(tempo=1.0))

        assert "-filter:a" not in cmd

    def test_mono_output(self, handler):
        cmd = handler.build_encoder_command("/tmp/out.wav", CaptureOptions(format="wav", channels=1))

        assert [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-ac"] == ["1", "1"]


# ============================================================================
# Encoder Stream
# ============================================================================


@pytest.mark.unit
class TestEncoderStream:
    """Test FFmpegEncoderStream lifecycle and failures."""

    @pytest.mark.asyncio
    async def test_missing_binary_raises_encode_error(self, tmp_path):
        handler = FFmpegHandler(None, str(tmp_path / "no-such-ffmpeg"))
        stream = handler.create_encoder_stream(str(tmp_path / "out.wav"), CaptureOptions(format="wav"))

        with pytest.raises(EncodeError):
            await stream.start()

    @pytest.mark.asyncio
    async def test_finish_without_start_raises(self, tmp_path):
        handler = FFmpegHandler(None, "ffmpeg")
        stream = handler.create_encoder_stream(str(tmp_path / "out.wav"), CaptureOptions(format="wav"))

        with pytest.raises(EncodeError):
            await stream.finish()

    def test_push_before_start_is_ignored(self, tmp_path):
        handler = FFmpegHandler(None, "ffmpeg")
        stream = handler.create_encoder_stream(str(tmp_path / "out.wav"), CaptureOptions(format="wav"))

        stream.push(bytes(3840))

        assert stream.get_stream_status() == {
            "running": False,
            "pid": None,
            "returncode": None,
            "bytes_processed": 0,
        }

    @requires_ffmpeg
    @pytest.mark.asyncio
    async def test_encodes_pcm_to_wav(self, tmp_path):
        output = tmp_path / "nested" / "out.wav"
        options = CaptureOptions(format="wav")
        stream = FFmpegHandler(None, shutil.which("ffmpeg")).create_encoder_stream(
            str(output), options
        )

        await stream.start()
        # One second of silence in 20ms frames
        for _ in range(50):
            stream.push(bytes(options.frame_size))

        first, second = await asyncio.gather(stream.finish(), stream.finish())

        assert first == second == str(output)
        with wave.open(str(output), "rb") as wav:
            assert wav.getframerate() == 48000
            assert wav.getnchannels() == 2
            assert wav.getnframes() == 48000

    @requires_ffmpeg
    @pytest.mark.asyncio
    async def test_abort_kills_process(self, tmp_path):
        stream = FFmpegHandler(None, shutil.which("ffmpeg")).create_encoder_stream(
            str(tmp_path / "out.wav"), CaptureOptions(format="wav")
        )
        await stream.start()

        stream.abort()

        assert stream.get_stream_status()["running"] is False
        assert stream.subprocess.poll() is not None


# ============================================================================
# Service
# ============================================================================


@pytest.mark.unit
class TestFFmpegManagerService:
    """Test the service wrapper and its validation on start."""

    @pytest.mark.asyncio
    async def test_invalid_path_is_reported(self, tmp_path, mock_logging_service):
        service = FFmpegManagerService(context=None, ffmpeg_path=str(tmp_path / "missing"))
        await service.on_start(MagicMock(logging_service=mock_logging_service))

        assert service.is_valid is False
        mock_logging_service.warning.assert_awaited()

    def test_defaults_to_ffmpeg_on_path(self):
        service = FFmpegManagerService(context=None)

        assert service.get_ffmpeg_path() == "ffmpeg"
        assert service.handler.ffmpeg_path == "ffmpeg"
