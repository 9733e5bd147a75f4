import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Frame Clock Regulator
# -------------------------------------------------------------- #


class FrameClockRegulator:
    """
    Turns bursty PCM chunks into fixed-size frames emitted at a fixed cadence.

    Discord only sends packets while a user is speaking, so a raw stream has
    long holes in it. An encoder reading that stream either treats a hole as
    end-of-stream or collapses the silence and desynchronizes the timeline.
    The regulator emits exactly one frame per deadline: buffered audio when a
    full frame is available, otherwise a frame of silence.

    Deadlines are computed from a fixed origin (``origin + n * interval``), never
    from the time a callback actually ran, so processing delay does not
    accumulate into drift over long sessions. Deadlines missed while the event
    loop was busy are caught up on the next wake-up, one frame each.

    Frames are delivered synchronously to ``on_frame``.
    """

    def __init__(
        self,
        frame_size: int,
        frame_interval_ms: float,
        on_frame: Callable[[bytes], None],
        silence_frame: bytes | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_error: Callable[[Exception], None] | None = None,
    ):
        if frame_size <= 0:
            raise ValueError("frame_size must be positive")
        if frame_interval_ms <= 0:
            raise ValueError("frame_interval_ms must be positive")
        if silence_frame is not None and len(silence_frame) != frame_size:
            raise ValueError("silence_frame must be exactly frame_size bytes")

        self.frame_size = frame_size
        self.frame_interval_ms = frame_interval_ms
        self._interval_s = frame_interval_ms / 1000
        self._on_frame = on_frame
        self._on_error = on_error
        self._silence = silence_frame if silence_frame is not None else bytes(frame_size)
        self._clock = clock

        self._buffer = bytearray()
        self._origin: float | None = None
        self._deadlines_passed = 0
        self._task: asyncio.Task | None = None
        self._closed = False

        # Counters
        self.frames_emitted = 0
        self.silence_frames_emitted = 0

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def next_deadline(self) -> float | None:
        """Clock time of the next deadline, or None if the clock is not armed."""
        if self._origin is None:
            return None
        return self._origin + (self._deadlines_passed + 1) * self._interval_s

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    def arm(self, now: float | None = None) -> None:
        """Fix the deadline origin. The first deadline is one interval after ``now``."""
        if self._closed or self._origin is not None:
            return
        self._origin = self._clock() if now is None else now

    def start(self) -> None:
        """Arm the clock and schedule deadline emission on the running loop."""
        if self._closed or self._task is not None:
            return
        self.arm()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def close(self) -> None:
        """
        Stop deadline emission and flush what is left in the buffer.

        Complete frames are emitted as-is; a trailing partial frame is
        zero-padded to ``frame_size`` and emitted once. Safe to call twice.
        """
        if self._closed:
            return
        self._closed = True

        if self._task is not None:
            self._task.cancel()
            self._task = None

        self._drain_complete_frames()

        if self._buffer:
            remaining = len(self._buffer)
            frame = bytes(self._buffer) + bytes(self.frame_size - remaining)
            self._buffer.clear()
            self._emit(frame)
            logger.debug(f"Flushed padded final frame (original: {remaining}, padded: {len(frame)})")

    # -------------------------------------------------------------- #
    # Input
    # -------------------------------------------------------------- #

    def feed(self, chunk: bytes) -> None:
        """Append decoded PCM to the buffer. Output only happens at deadlines."""
        if self._closed:
            return
        self._buffer.extend(chunk)

    # -------------------------------------------------------------- #
    # Deadline Emission
    # -------------------------------------------------------------- #

    def emit_due(self, now: float | None = None) -> int:
        """
        Run every deadline that is due at ``now``.

        Returns:
            Number of deadlines processed
        """
        if self._closed or self._origin is None:
            return 0

        now = self._clock() if now is None else now
        processed = 0
        while not self._closed and self.next_deadline <= now:
            self._emit_deadline_frame()
            self._deadlines_passed += 1
            processed += 1
        return processed

    def _emit_deadline_frame(self) -> None:
        if len(self._buffer) >= self.frame_size:
            frame = bytes(self._buffer[: self.frame_size])
            del self._buffer[: self.frame_size]
            self._emit(frame)
        else:
            self.silence_frames_emitted += 1
            self._emit(self._silence)

        # Never let a backlog build up behind the clock
        self._drain_complete_frames()

    def _drain_complete_frames(self) -> None:
        while len(self._buffer) >= self.frame_size:
            frame = bytes(self._buffer[: self.frame_size])
            del self._buffer[: self.frame_size]
            self._emit(frame)

    def _emit(self, frame: bytes) -> None:
        self.frames_emitted += 1
        self._on_frame(frame)

    async def _run(self) -> None:
        try:
            while not self._closed:
                delay = max(0.0, self.next_deadline - self._clock())
                await asyncio.sleep(delay)
                self.emit_due()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Frame clock stopped after emission failure: {e}", exc_info=True)
            if self._on_error:
                self._on_error(e)
