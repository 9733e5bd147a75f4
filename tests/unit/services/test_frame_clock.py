"""
Unit tests for the Frame Clock Regulator.

Tests the following critical functionality:
1. Exactly one frame per elapsed deadline for a real-time stream
2. Silence insertion when no audio is buffered
3. Backlog draining and padded final flush on close
4. Deadline catch-up without drift under a jittery scheduler

Most tests drive the regulator with explicit clock values through
``arm`` and ``emit_due`` so they do not depend on event loop timing.
"""

import asyncio
import random

import pytest

from autorecord.services.capture.frame_clock import FrameClockRegulator

# -------------------------------------------------------------- #
# Test Constants
# -------------------------------------------------------------- #

FRAME_SIZE = 3840  # 20ms of 48 kHz stereo s16le
INTERVAL_MS = 20.0
INTERVAL_S = INTERVAL_MS / 1000


def make_regulator(**kwargs):
    frames: list[bytes] = []
    regulator = FrameClockRegulator(
        frame_size=FRAME_SIZE,
        frame_interval_ms=INTERVAL_MS,
        on_frame=frames.append,
        **kwargs,
    )
    return regulator, frames


def random_bytes(rng: random.Random, count: int) -> bytes:
    return bytes(rng.getrandbits(8) for _ in range(count))


def split_randomly(rng: random.Random, data: bytes) -> list[bytes]:
    """Cut data into 1..4 pieces of random length."""
    cuts = sorted(rng.sample(range(1, len(data)), rng.randint(0, 3)))
    bounds = [0, *cuts, len(data)]
    return [data[a:b] for a, b in zip(bounds, bounds[1:])]


# -------------------------------------------------------------- #
# Construction
# -------------------------------------------------------------- #


@pytest.mark.unit
def test_rejects_invalid_parameters():
    with pytest.raises(ValueError):
        FrameClockRegulator(frame_size=0, frame_interval_ms=20, on_frame=lambda f: None)
    with pytest.raises(ValueError):
        FrameClockRegulator(frame_size=3840, frame_interval_ms=0, on_frame=lambda f: None)
    with pytest.raises(ValueError):
        FrameClockRegulator(
            frame_size=3840, frame_interval_ms=20, on_frame=lambda f: None, silence_frame=b"\x00"
        )


@pytest.mark.unit
def test_nothing_emitted_before_arm():
    regulator, frames = make_regulator()
    regulator.feed(bytes(FRAME_SIZE))

    assert regulator.emit_due(now=100.0) == 0
    assert frames == []
    assert regulator.next_deadline is None


# -------------------------------------------------------------- #
# Cadence
# -------------------------------------------------------------- #


@pytest.mark.unit
def test_real_time_stream_emits_one_frame_per_deadline():
    """Audio arriving at real-time rate in random chunk sizes comes out unchanged, frame by frame."""
    rng = random.Random(7)
    deadlines = 50
    audio = random_bytes(rng, FRAME_SIZE * deadlines)

    regulator, frames = make_regulator()
    regulator.arm(now=0.0)

    for k in range(1, deadlines + 1):
        frame_audio = audio[(k - 1) * FRAME_SIZE : k * FRAME_SIZE]
        for piece in split_randomly(rng, frame_audio):
            regulator.feed(piece)
        assert regulator.emit_due(now=k * INTERVAL_S) == 1

    assert len(frames) == deadlines
    assert all(len(frame) == FRAME_SIZE for frame in frames)
    assert b"".join(frames) == audio
    assert regulator.silence_frames_emitted == 0


@pytest.mark.unit
def test_silence_only_stream():
    """One second with no audio at all still yields 50 frames of zeros."""
    regulator, frames = make_regulator()
    regulator.arm(now=0.0)

    regulator.emit_due(now=1.0 + 1e-9)

    assert len(frames) == 50
    assert all(frame == bytes(FRAME_SIZE) for frame in frames)
    assert regulator.silence_frames_emitted == 50


@pytest.mark.unit
def test_intermittent_speech_fills_gaps_with_silence():
    rng = random.Random(11)
    speech = random_bytes(rng, FRAME_SIZE)

    regulator, frames = make_regulator()
    regulator.arm(now=0.0)

    regulator.feed(speech)
    regulator.emit_due(now=1 * INTERVAL_S)
    # Three deadlines with nothing buffered
    regulator.emit_due(now=4 * INTERVAL_S)
    regulator.feed(speech)
    regulator.emit_due(now=5 * INTERVAL_S)

    assert frames == [speech, bytes(FRAME_SIZE), bytes(FRAME_SIZE), bytes(FRAME_SIZE), speech]


@pytest.mark.unit
def test_missed_deadlines_are_caught_up():
    regulator, frames = make_regulator()
    regulator.arm(now=0.0)

    # Loop was blocked for 100ms: five deadlines passed
    assert regulator.emit_due(now=0.1 + 1e-9) == 5
    assert len(frames) == 5
    # Calling again at the same instant does nothing
    assert regulator.emit_due(now=0.1 + 1e-9) == 0


@pytest.mark.unit
def test_no_drift_with_jittery_wakeups():
    """Late wake-ups never push later deadlines back."""
    rng = random.Random(3)
    regulator, frames = make_regulator()
    regulator.arm(now=0.0)

    deadlines = 1000
    for k in range(1, deadlines + 1):
        jitter = rng.uniform(0, INTERVAL_S * 0.9)
        regulator.emit_due(now=k * INTERVAL_S + jitter)

    assert len(frames) == deadlines
    assert regulator.next_deadline == pytest.approx((deadlines + 1) * INTERVAL_S)


@pytest.mark.unit
def test_backlog_is_drained_at_next_deadline():
    regulator, frames = make_regulator()
    regulator.arm(now=0.0)

    regulator.feed(bytes([1]) * (FRAME_SIZE * 3 + 100))
    regulator.emit_due(now=INTERVAL_S)

    assert len(frames) == 3
    assert regulator.buffered_bytes == 100

    # 100 bytes is not a full frame, so the next deadline is silence
    regulator.emit_due(now=2 * INTERVAL_S)
    assert frames[-1] == bytes(FRAME_SIZE)
    assert regulator.buffered_bytes == 100


# -------------------------------------------------------------- #
# Close
# -------------------------------------------------------------- #


@pytest.mark.unit
def test_close_pads_partial_frame_before_first_deadline():
    """3200 bytes then close: a single frame of those bytes followed by 640 zeros."""
    data = bytes(range(256)) * 12 + bytes(range(128))
    assert len(data) == 3200

    regulator, frames = make_regulator()
    regulator.arm(now=0.0)
    regulator.feed(data)
    regulator.close()

    assert len(frames) == 1
    assert frames[0] == data + bytes(640)


@pytest.mark.unit
def test_close_is_idempotent():
    regulator, frames = make_regulator()
    regulator.feed(bytes([5]) * (FRAME_SIZE + 10))

    regulator.close()
    regulator.close()

    assert len(frames) == 2
    assert frames[1] == bytes([5]) * 10 + bytes(FRAME_SIZE - 10)
    assert regulator.closed


@pytest.mark.unit
def test_feed_and_deadlines_after_close_are_ignored():
    regulator, frames = make_regulator()
    regulator.arm(now=0.0)
    regulator.close()

    regulator.feed(bytes(FRAME_SIZE))
    assert regulator.emit_due(now=10.0) == 0
    assert frames == []


# -------------------------------------------------------------- #
# Event Loop Driven
# -------------------------------------------------------------- #


@pytest.mark.unit
@pytest.mark.asyncio
async def test_started_regulator_emits_on_the_loop():
    regulator, frames = make_regulator()
    regulator.start()

    await asyncio.sleep(0.2)
    regulator.close()

    # Roughly ten deadlines; loose bounds for slow CI machines
    assert 5 <= len(frames) <= 15
    assert all(frame == bytes(FRAME_SIZE) for frame in frames)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_emission_failure_is_reported():
    errors = []

    def broken_sink(frame):
        raise RuntimeError("encoder pipe closed")

    regulator = FrameClockRegulator(
        frame_size=FRAME_SIZE,
        frame_interval_ms=INTERVAL_MS,
        on_frame=broken_sink,
        on_error=errors.append,
    )
    regulator.start()
    await asyncio.sleep(0.1)
    regulator.close()

    assert len(errors) == 1
    assert isinstance(errors[0], RuntimeError)
