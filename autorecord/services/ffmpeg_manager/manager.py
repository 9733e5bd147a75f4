import asyncio
import os
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autorecord.context import Context

from autorecord.services.capture.errors import EncodeError
from autorecord.services.capture.options import CaptureConstants, CaptureOptions
from autorecord.services.manager import BaseFFmpegServiceManager

# -------------------------------------------------------------- #
# FFmpeg Handler
# -------------------------------------------------------------- #

# Keep only the tail of ffmpeg's stderr in error messages
STDERR_TAIL_CHARS = 2000


class FFmpegHandler:
    def __init__(self, ffmpeg_service_manager: BaseFFmpegServiceManager | None, ffmpeg_path: str):
        self.ffmpeg_service_manager = ffmpeg_service_manager
        self.ffmpeg_path = ffmpeg_path

    # -------------------------------------------------------------- #
    # FFmpeg Management Methods
    # -------------------------------------------------------------- #

    async def validate_ffmpeg(self) -> bool:
        """Validate that FFmpeg is installed and accessible."""
        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: subprocess.run(
                        [self.ffmpeg_path, "-version"],
                        capture_output=True,
                        timeout=5,
                        text=True,
                    ),
                ),
                timeout=6.0,  # Slightly longer than subprocess timeout
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired, asyncio.TimeoutError):
            return False

    def build_encoder_command(self, output_path: str, options: CaptureOptions) -> list[str]:
        """
        Build the ffmpeg command that reads raw PCM from stdin and writes a container file.

        Format options MUST come BEFORE -i for raw input.
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostats",
            "-loglevel",
            "error",
            "-f",
            "s16le",  # Input format: signed 16-bit little-endian PCM
            "-ar",
            str(options.sample_rate),
            "-ac",
            str(options.channels),
            "-i",
            "-",  # Read from stdin
        ]

        # Tempo is an encoder filter, not a separate pipeline stage
        if options.tempo is not None and options.tempo != 1.0:
            cmd += ["-filter:a", f"atempo={options.tempo:g}"]

        if options.format == "mp3":
            cmd += ["-codec:a", "libmp3lame", "-b:a", f"{options.bitrate}k"]
        else:
            cmd += ["-codec:a", "pcm_s16le"]

        cmd += ["-ac", str(options.channels), "-f", options.format, "-y", output_path]
        return cmd

    def create_encoder_stream(
        self, output_path: str, options: CaptureOptions
    ) -> "FFmpegEncoderStream":
        """Create a new FFmpeg stream that encodes PCM pushed to it into output_path."""
        return FFmpegEncoderStream(self, output_path=output_path, options=options)


# -------------------------------------------------------------- #
# FFmpeg Encoder Stream
# -------------------------------------------------------------- #


class FFmpegEncoderStream:
    """
    One ffmpeg process fed through stdin.

    ``finish()`` closes stdin and waits for ffmpeg to drain; it resolves to the
    output path or raises EncodeError. Calling it again returns the same outcome.
    """

    def __init__(
        self,
        ffmpeg_handler: FFmpegHandler,
        output_path: str,
        options: CaptureOptions,
    ):
        self.ffmpeg_handler = ffmpeg_handler
        self.output_path = output_path
        self.options = options

        self.subprocess: subprocess.Popen | None = None
        self._is_running = False
        self._bytes_processed = 0
        self._write_error: Exception | None = None
        self._finish_future: asyncio.Future | None = None

    # -------------------------------------------------------------- #
    # Streaming Methods
    # -------------------------------------------------------------- #

    async def start(self) -> None:
        """
        Start the ffmpeg process.

        Raises:
            EncodeError: If the process could not be spawned
        """
        if self.subprocess is not None:
            return

        cmd = self.ffmpeg_handler.build_encoder_command(self.output_path, self.options)

        loop = asyncio.get_running_loop()
        parent = os.path.dirname(os.path.abspath(self.output_path))
        await loop.run_in_executor(None, lambda: os.makedirs(parent, exist_ok=True))

        try:
            self.subprocess = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                bufsize=0,  # Unbuffered
            )
        except OSError as e:
            raise EncodeError(f"Failed to start ffmpeg ({self.ffmpeg_handler.ffmpeg_path}): {e}")

        self._is_running = True

    def push(self, data: bytes) -> None:
        """
        Push PCM to the ffmpeg input stream.

        Write failures are remembered and reported by ``finish()``.
        """
        if not (self.subprocess and self._is_running and self.subprocess.stdin):
            return
        try:
            self.subprocess.stdin.write(data)
            self._bytes_processed += len(data)
        except (BrokenPipeError, OSError, ValueError) as e:
            self._is_running = False
            self._write_error = e

    async def finish(self, timeout: float = CaptureConstants.ENCODER_DRAIN_TIMEOUT_SECONDS) -> str:
        """Close the input and wait for ffmpeg to write the finished file."""
        if self._finish_future is None:
            self._finish_future = asyncio.ensure_future(self._finish(timeout))
        return await asyncio.shield(self._finish_future)

    async def _finish(self, timeout: float) -> str:
        if self.subprocess is None:
            raise EncodeError("Encoder was never started")

        process = self.subprocess
        self._is_running = False
        loop = asyncio.get_running_loop()

        # communicate() closes stdin, which is ffmpeg's end-of-input
        try:
            _, stderr_data = await loop.run_in_executor(
                None, lambda: process.communicate(timeout=timeout)
            )
        except subprocess.TimeoutExpired:
            process.kill()
            await loop.run_in_executor(None, process.communicate)
            raise EncodeError(f"ffmpeg did not finish within {timeout}s for {self.output_path}")

        stderr_text = (stderr_data or b"").decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:]

        if process.returncode != 0:
            raise EncodeError(
                f"ffmpeg exited with code {process.returncode} for {self.output_path}: {stderr_text}"
            )
        if self._write_error is not None:
            raise EncodeError(f"Writing PCM to ffmpeg failed: {self._write_error}")
        if not await loop.run_in_executor(None, os.path.exists, self.output_path):
            raise EncodeError(f"ffmpeg reported success but {self.output_path} is missing")

        return self.output_path

    def abort(self) -> None:
        """Kill the process without waiting for output. Used when setup fails."""
        self._is_running = False
        if self.subprocess and self.subprocess.poll() is None:
            self.subprocess.kill()
            # Reap the process and release the pipes
            try:
                self.subprocess.communicate(timeout=5)
            except subprocess.TimeoutExpired:
                pass

    def get_stream_status(self) -> dict:
        """
        Get the current status of the FFmpeg stream.

        Returns:
            Dictionary with status information including bytes processed
        """
        if self.subprocess is None:
            return {
                "running": False,
                "pid": None,
                "returncode": None,
                "bytes_processed": self._bytes_processed,
            }

        returncode = self.subprocess.poll()
        return {
            "running": self._is_running and returncode is None,
            "pid": self.subprocess.pid,
            "returncode": returncode,
            "bytes_processed": self._bytes_processed,
        }


# -------------------------------------------------------------- #
# FFmpeg Manager Service
# -------------------------------------------------------------- #


class FFmpegManagerService(BaseFFmpegServiceManager):
    """Service for managing FFmpeg operations."""

    def __init__(self, context: "Context", ffmpeg_path: str | None = None):
        super().__init__(context)

        self.ffmpeg_path = ffmpeg_path or "ffmpeg"
        self.handler = FFmpegHandler(self, self.ffmpeg_path)
        self.is_valid = False

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)
        await self.services.logging_service.info("FFmpegManagerService initialized")

        # Validate FFmpeg installation
        self.is_valid = await self.handler.validate_ffmpeg()
        if self.is_valid:
            await self.services.logging_service.info(
                f"FFmpeg validated at path: {self.ffmpeg_path}"
            )
        else:
            await self.services.logging_service.warning(
                f"FFmpeg validation failed at path: {self.ffmpeg_path}"
            )
        return True

    async def on_close(self):
        return True

    # -------------------------------------------------------------- #
    # FFmpeg Methods
    # -------------------------------------------------------------- #

    def get_ffmpeg_path(self) -> str:
        return self.ffmpeg_path

    def create_encoder_stream(self, output_path: str, options: CaptureOptions) -> FFmpegEncoderStream:
        return self.handler.create_encoder_stream(output_path, options)
