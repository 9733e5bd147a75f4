import asyncio
import os
from contextlib import suppress
from typing import TYPE_CHECKING

from autorecord.services.capture.decoder import DecoderFactory, PCMFrameDecoder
from autorecord.services.capture.errors import EncodeError, SetupError, StreamError
from autorecord.services.capture.options import (
    CaptureConstants,
    CaptureOptions,
    CaptureResult,
    SpeakerKey,
)
from autorecord.services.capture.registry import EntryState, SessionRegistry
from autorecord.services.capture.session import CaptureSession, build_artifact_path
from autorecord.services.manager import BaseCaptureServiceManager
from autorecord.services.voice_transport.base import VoiceConnection
from autorecord.utils import BotUtils, get_current_timestamp_utc

if TYPE_CHECKING:
    from autorecord.context import Context
    from autorecord.services.manager import ServicesManager


# -------------------------------------------------------------- #
# Capture Manager Service
# -------------------------------------------------------------- #


class CaptureManagerService(BaseCaptureServiceManager):
    """
    Runs one capture session per speaker.

    Every start goes through ``SessionRegistry.acquire`` and every path that
    ends a session (explicit stop, stream failure, max duration, shutdown)
    goes through one finalize task per speaker that always releases the
    registry entry, whether or not the encoder succeeded.
    """

    def __init__(
        self,
        context: "Context",
        storage_path: str,
        recording_channel_id: int | None = None,
        decoder_factory: DecoderFactory = PCMFrameDecoder,
        default_options: CaptureOptions | None = None,
        max_duration_seconds: float = CaptureConstants.MAX_CAPTURE_DURATION_SECONDS,
        monitor_interval_seconds: float = CaptureConstants.MONITOR_INTERVAL_SECONDS,
    ):
        super().__init__(context)

        self.storage_path = storage_path
        self.recording_channel_id = recording_channel_id
        self.decoder_factory = decoder_factory
        self.default_options = default_options or CaptureOptions()
        self.max_duration_seconds = max_duration_seconds
        self.monitor_interval_seconds = monitor_interval_seconds

        self.registry = SessionRegistry()
        self._finalize_tasks: dict[SpeakerKey, asyncio.Task] = {}
        self._background_tasks: set[asyncio.Task] = set()
        self._monitor_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: "ServicesManager") -> None:
        await super().on_start(services)

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, lambda: os.makedirs(self.storage_path, exist_ok=True))

        self._monitor_task = asyncio.create_task(self._monitor_sessions())
        await self.services.logging_service.info(
            f"CaptureManagerService started (storage: {self.storage_path})"
        )

    async def on_close(self) -> bool:
        """Stop every capture and wait for the encoders to drain."""
        if self._monitor_task:
            self._monitor_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None

        keys = [entry.key for entry in self.registry.entries()]
        if keys:
            await self.services.logging_service.info(f"Stopping {len(keys)} capture session(s)")
            await asyncio.gather(
                *(self.stop_capture(key.guild_id, key.user_id, wait=True) for key in keys),
                return_exceptions=True,
            )

        # Finalizations started elsewhere (stream failures, monitor) still need to finish
        pending = list(self._finalize_tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.services.logging_service.info("CaptureManagerService stopped")
        return True

    # -------------------------------------------------------------- #
    # Capture Methods
    # -------------------------------------------------------------- #

    def is_capturing(self, guild_id: int, user_id: int) -> bool:
        return SpeakerKey(guild_id, user_id) in self.registry

    def get_session(self, guild_id: int, user_id: int) -> CaptureSession | None:
        entry = self.registry.get(SpeakerKey(guild_id, user_id))
        return entry.session if entry else None

    def sessions_for_channel(self, guild_id: int, channel_id: int) -> list[CaptureSession]:
        sessions = []
        for key in self.registry.keys_for_channel(guild_id, channel_id):
            session = self.get_session(key.guild_id, key.user_id)
            if session is not None:
                sessions.append(session)
        return sessions

    async def start_capture(
        self,
        connection: VoiceConnection,
        guild_id: int,
        channel_id: int,
        user_id: int,
        options: CaptureOptions | None = None,
    ) -> CaptureSession | None:
        """
        Start capturing one speaker on an existing voice connection.

        If the speaker's previous capture is still finalizing, this waits for
        it to be released first so two captures of one speaker never overlap.

        Returns:
            The running session, or None if the service is shutting down

        Raises:
            AlreadyActive: If another capture owns the speaker
            SetupError: If the pipeline could not be built
        """
        if self.context and self.context.is_shutting_down():
            await self.services.logging_service.warning(
                f"Refusing to start capture for user {user_id} - shutdown in progress"
            )
            return None

        key = SpeakerKey(guild_id, user_id)
        options = options or self.default_options

        entry = self.registry.get(key)
        while entry is not None and entry.state == EntryState.FINALIZING:
            await self.registry.wait_released(key)
            entry = self.registry.get(key)

        # No awaits between acquire and attach
        token = self.registry.acquire(key, channel_id)
        output_path = build_artifact_path(
            self.storage_path, key, get_current_timestamp_utc(), token, options.format
        )
        session = CaptureSession(
            key=key,
            channel_id=channel_id,
            connection=connection,
            options=options,
            output_path=output_path,
            token=token,
            encoder_factory=self.services.ffmpeg_service_manager.create_encoder_stream,
            decoder_factory=self.decoder_factory,
            on_failure=self._on_session_failure,
        )
        self.registry.attach(key, token, session)

        try:
            await session.start()
        except SetupError as e:
            self.registry.release(key, token)
            await self.services.logging_service.error(
                f"Failed to start capture for user {user_id} in channel {channel_id}: {e}"
            )
            raise
        except asyncio.CancelledError:
            self.registry.release(key, token)
            raise

        if self.registry.mark_active(key, token):
            await self.services.logging_service.info(
                f"Started capture for user {user_id} in channel {channel_id} -> {output_path}"
            )
        else:
            await self.services.logging_service.info(
                f"Capture for user {user_id} was stopped while starting"
            )
        return session

    async def stop_capture(
        self, guild_id: int, user_id: int, wait: bool = True
    ) -> CaptureResult | None:
        """
        Stop capturing one speaker. Stopping a speaker with no capture is a no-op.

        Args:
            guild_id: Guild of the speaker
            user_id: The speaker
            wait: Wait for the encoder to finish. When False the finalization
                keeps running in the background and the registry entry stays
                FINALIZING until it completes.

        Returns:
            The capture result when waited for and successful, otherwise None
        """
        task = self._begin_finalize(SpeakerKey(guild_id, user_id))
        if task is None or not wait:
            return None
        return await asyncio.shield(task)

    async def stop_channel(self, guild_id: int, channel_id: int) -> list[CaptureResult]:
        """Stop every capture in a channel and wait for all of them to finalize."""
        tasks = []
        for key in self.registry.keys_for_channel(guild_id, channel_id):
            task = self._begin_finalize(key)
            if task is not None:
                tasks.append(task)

        if not tasks:
            return []

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        return [outcome for outcome in outcomes if isinstance(outcome, CaptureResult)]

    # -------------------------------------------------------------- #
    # Finalization
    # -------------------------------------------------------------- #

    def _begin_finalize(
        self, key: SpeakerKey, expected_session: CaptureSession | None = None
    ) -> asyncio.Task | None:
        existing = self._finalize_tasks.get(key)
        if existing is not None:
            return existing

        entry = self.registry.get(key)
        if entry is None or entry.session is None:
            return None
        if expected_session is not None and entry.session is not expected_session:
            return None

        self.registry.mark_finalizing(key, entry.token)
        task = asyncio.create_task(self._finalize(key, entry.token, entry.session))
        self._finalize_tasks[key] = task
        return task

    async def _finalize(
        self, key: SpeakerKey, token: str, session: CaptureSession
    ) -> CaptureResult | None:
        result = None
        try:
            result = await session.stop()
        except EncodeError as e:
            await self.services.logging_service.error(
                f"Encoding failed for user {key.user_id} in guild {key.guild_id}: {e}"
            )
        finally:
            self.registry.release(key, token)
            if self._finalize_tasks.get(key) is asyncio.current_task():
                del self._finalize_tasks[key]

        if result is None:
            return None

        await self.services.logging_service.info(
            f"Finished capture for user {key.user_id}: {result.output_path} "
            f"({result.frames_written} frames, {result.duration_ms / 1000:.1f}s)"
        )
        await self._deliver(result)
        return result

    def _on_session_failure(self, session: CaptureSession, error: StreamError) -> None:
        task = asyncio.get_running_loop().create_task(self._handle_session_failure(session, error))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _handle_session_failure(self, session: CaptureSession, error: StreamError) -> None:
        await self.services.logging_service.error(
            f"Capture for user {session.key.user_id} in channel {session.channel_id} "
            f"failed mid-stream, stopping: {error}"
        )
        self._begin_finalize(session.key, expected_session=session)

    # -------------------------------------------------------------- #
    # Delivery
    # -------------------------------------------------------------- #

    async def _deliver(self, result: CaptureResult) -> bool:
        """Post a finished artifact to the recording channel, if one is configured."""
        if self.recording_channel_id is None:
            return False

        if not self.context or not self.context.bot:
            await self.services.logging_service.warning(
                "Bot instance not available in context, cannot deliver recording"
            )
            return False

        loop = asyncio.get_running_loop()
        try:
            size = await loop.run_in_executor(None, os.path.getsize, result.output_path)
        except OSError as e:
            await self.services.logging_service.error(
                f"Recording {result.output_path} is not readable: {e}"
            )
            return False

        filename = os.path.basename(result.output_path)
        message = (
            f"🎙️ Recording of <@{result.key.user_id}> from <#{result.channel_id}>\n"
            f"Duration: {result.duration_ms / 1000:.1f}s"
        )

        if size > CaptureConstants.MAX_UPLOAD_BYTES:
            message += (
                f"\nFile `{filename}` is {size / (1024 * 1024):.1f} MB, too large to upload. "
                f"It was kept on disk."
            )
            return await BotUtils.send_to_channel(
                self.context.bot, self.recording_channel_id, message
            )

        return await BotUtils.send_to_channel(
            self.context.bot, self.recording_channel_id, message, file_path=result.output_path
        )

    # -------------------------------------------------------------- #
    # Background Monitor
    # -------------------------------------------------------------- #

    async def _monitor_sessions(self) -> None:
        """Periodically stop captures that ran longer than the maximum duration."""
        await self.services.logging_service.info(
            f"Started capture monitor task (interval: {self.monitor_interval_seconds}s)"
        )

        try:
            while True:
                await asyncio.sleep(self.monitor_interval_seconds)
                await self.check_max_duration()
        except asyncio.CancelledError:
            await self.services.logging_service.info("Capture monitor task cancelled")

    async def check_max_duration(self) -> list[SpeakerKey]:
        """Stop every capture past the maximum duration. Returns the stopped speakers."""
        stopped = []
        for entry in self.registry.entries():
            session = entry.session
            if entry.state != EntryState.ACTIVE or session is None:
                continue

            duration = session.get_duration_seconds()
            if duration < self.max_duration_seconds:
                continue

            await self.services.logging_service.info(
                f"Auto-stopping capture for user {entry.key.user_id} "
                f"due to maximum duration exceeded ({duration / 3600:.2f} hours)"
            )
            if self._begin_finalize(entry.key, expected_session=session) is not None:
                stopped.append(entry.key)
        return stopped
