import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime
from enum import Enum
from typing import Any

from autorecord.services.capture.decoder import DecoderFactory, FrameDecoder
from autorecord.services.capture.errors import (
    EncodeError,
    SetupError,
    StreamError,
    SubscriptionFailed,
)
from autorecord.services.capture.frame_clock import FrameClockRegulator
from autorecord.services.capture.options import CaptureOptions, CaptureResult, SpeakerKey
from autorecord.services.voice_transport.base import (
    EndBehavior,
    FrameSubscription,
    VoiceConnection,
)
from autorecord.utils import (
    format_file_timestamp,
    get_current_timestamp_utc,
    sanitize_filename_part,
)

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[str, CaptureOptions], Any]
FailureCallback = Callable[["CaptureSession", StreamError], None]


# -------------------------------------------------------------- #
# Artifact Naming
# -------------------------------------------------------------- #


def build_artifact_path(
    storage_root: str,
    key: SpeakerKey,
    started_at: datetime,
    token: str,
    file_format: str,
) -> str:
    """
    Build the output path of one capture.

    Layout: ``<root>/<guild>/<user>/<user>_<YYYYmmdd-HHMMSS>_<token>.<fmt>``.
    The token keeps names unique when one speaker is captured twice in a second.
    """
    guild_part = sanitize_filename_part(key.guild_id)
    user_part = sanitize_filename_part(key.user_id)
    filename = f"{user_part}_{format_file_timestamp(started_at)}_{sanitize_filename_part(token)}.{file_format}"
    return os.path.join(storage_root, guild_part, user_part, filename)


# -------------------------------------------------------------- #
# Capture Session
# -------------------------------------------------------------- #


class SessionState(str, Enum):
    STARTING = "starting"
    CAPTURING = "capturing"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    FAILED = "failed"


class CaptureSession:
    """
    One speaker's pipeline: subscription -> decoder -> regulator -> encoder.

    The session owns every stage and tears them down in dependency order.
    It does not touch the registry; its owner acquires and releases the
    speaker around ``start`` and ``stop``.
    """

    def __init__(
        self,
        key: SpeakerKey,
        channel_id: int,
        connection: VoiceConnection,
        options: CaptureOptions,
        output_path: str,
        token: str,
        encoder_factory: EncoderFactory,
        decoder_factory: DecoderFactory,
        on_failure: FailureCallback | None = None,
    ):
        self.key = key
        self.channel_id = channel_id
        self.connection = connection
        self.options = options
        self.output_path = output_path
        self.token = token
        self.created_at = get_current_timestamp_utc()

        self._encoder_factory = encoder_factory
        self._decoder_factory = decoder_factory
        self._on_failure = on_failure

        self.state = SessionState.STARTING
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.frames_written = 0
        self.stream_error: StreamError | None = None

        self.encoder: Any = None
        self.decoder: FrameDecoder | None = None
        self.regulator: FrameClockRegulator | None = None
        self.subscription: FrameSubscription | None = None

        self._setup_done = asyncio.Event()
        self._stop_future: asyncio.Future | None = None

    def __repr__(self) -> str:
        return f"CaptureSession(key={self.key}, channel={self.channel_id}, state={self.state.value})"

    @property
    def is_capturing(self) -> bool:
        return self.state == SessionState.CAPTURING

    def get_duration_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or get_current_timestamp_utc()
        return (end - self.started_at).total_seconds()

    # -------------------------------------------------------------- #
    # Setup
    # -------------------------------------------------------------- #

    async def start(self) -> None:
        """
        Build the pipeline and begin capturing.

        Returns once frames are flowing into the encoder; encoding runs
        concurrently from then on.

        Raises:
            SetupError: If any stage could not be created. Every stage built
                before the failure has been torn down.
        """
        if self.state != SessionState.STARTING or self._setup_done.is_set():
            raise SetupError(f"Session {self.key} was already started")

        options = self.options
        try:
            # Encoder first so the regulator has somewhere to write
            self.encoder = self._encoder_factory(self.output_path, options)
            await self.encoder.start()

            self.decoder = self._decoder_factory(
                options.sample_rate, options.channels, options.samples_per_frame
            )

            self.regulator = FrameClockRegulator(
                frame_size=options.frame_size,
                frame_interval_ms=options.frame_interval_ms,
                on_frame=self._on_regulated_frame,
                on_error=self._on_stream_error,
            )

            try:
                self.subscription = await self.connection.subscribe(
                    self.key.user_id,
                    self._on_frame,
                    self._on_stream_error,
                    end_behavior=EndBehavior.MANUAL,
                )
            except SubscriptionFailed:
                raise
            except Exception as e:
                raise SubscriptionFailed(f"Subscribing to user {self.key.user_id} failed: {e}") from e

            self.regulator.start()
            self.started_at = get_current_timestamp_utc()
            self.state = SessionState.CAPTURING

        except SetupError:
            self._rollback()
            raise
        except EncodeError as e:
            self._rollback()
            raise SetupError(f"Encoder failed to start for {self.key}: {e}") from e
        except asyncio.CancelledError:
            self._rollback()
            raise
        except Exception as e:
            self._rollback()
            raise SetupError(f"Unexpected setup failure for {self.key}: {e}") from e
        finally:
            self._setup_done.set()

    def _rollback(self) -> None:
        self.state = SessionState.FAILED

        if self.subscription is not None:
            self.subscription.unsubscribe()
        if self.regulator is not None:
            self.regulator.close()
        if self.decoder is not None:
            self.decoder.destroy()
        if self.encoder is not None:
            self.encoder.abort()

        # A killed encoder leaves a truncated file behind
        with suppress(FileNotFoundError):
            os.remove(self.output_path)

    # -------------------------------------------------------------- #
    # Frame Flow
    # -------------------------------------------------------------- #

    def _on_frame(self, frame: bytes) -> None:
        if self.state != SessionState.CAPTURING:
            return
        try:
            pcm = self.decoder.decode(frame)
        except StreamError as e:
            self._on_stream_error(e)
            return
        self.regulator.feed(pcm)

    def _on_regulated_frame(self, frame: bytes) -> None:
        self.encoder.push(frame)
        self.frames_written += 1

    def _on_stream_error(self, error: Exception) -> None:
        if self.state != SessionState.CAPTURING or self.stream_error is not None:
            return

        if isinstance(error, StreamError):
            self.stream_error = error
        else:
            self.stream_error = StreamError(str(error))
            self.stream_error.__cause__ = error

        logger.error(f"Stream failure for {self.key}: {self.stream_error}")
        if self._on_failure:
            self._on_failure(self, self.stream_error)

    # -------------------------------------------------------------- #
    # Teardown
    # -------------------------------------------------------------- #

    async def stop(self) -> CaptureResult | None:
        """
        Tear the pipeline down and wait for the encoder to finish the file.

        Safe to call while setup is still running: the stop waits for setup to
        complete first. A second call awaits the first.

        Returns:
            The capture result, or None if setup never succeeded

        Raises:
            EncodeError: If the encoder failed to produce the file
        """
        if self._stop_future is None:
            self._stop_future = asyncio.ensure_future(self._stop())
        return await asyncio.shield(self._stop_future)

    async def _stop(self) -> CaptureResult | None:
        await self._setup_done.wait()

        if self.state != SessionState.CAPTURING:
            # Setup failed and already rolled back
            return None

        self.state = SessionState.FINALIZING

        # Upstream first: no new input once the subscription is gone
        self.subscription.unsubscribe()
        self.decoder.destroy()
        # Flushes the buffered tail into the encoder
        self.regulator.close()

        try:
            output_path = await self.encoder.finish()
        except EncodeError:
            self.state = SessionState.FAILED
            self.finished_at = get_current_timestamp_utc()
            raise

        self.finished_at = get_current_timestamp_utc()
        self.state = SessionState.CLOSED

        return CaptureResult(
            key=self.key,
            channel_id=self.channel_id,
            output_path=output_path,
            started_at=self.started_at,
            finished_at=self.finished_at,
            frames_written=self.frames_written,
            duration_ms=int(self.frames_written * self.options.frame_interval_ms),
        )
