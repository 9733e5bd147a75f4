"""
Unit tests for capture options and the PCM helpers behind them.
"""

import pytest

from autorecord.services.capture.options import CaptureConstants, CaptureOptions, SpeakerKey
from autorecord.services.capture.pcm import calculate_frame_interval_ms, calculate_frame_size

# -------------------------------------------------------------- #
# PCM Helpers
# -------------------------------------------------------------- #


def test_frame_size_constant():
    """Verify a Discord frame is exactly 3840 bytes (20ms at 48kHz stereo 16-bit)."""
    # 960 samples * 2 channels * 2 bytes = 3840 bytes
    assert calculate_frame_size(960, channels=2) == 3840
    assert calculate_frame_size(960, channels=1) == 1920


def test_frame_interval():
    assert calculate_frame_interval_ms(960, 48000) == 20.0
    assert calculate_frame_interval_ms(480, 48000) == 10.0

    with pytest.raises(ValueError):
        calculate_frame_interval_ms(960, 0)


# -------------------------------------------------------------- #
# Capture Options
# -------------------------------------------------------------- #


@pytest.mark.unit
def test_default_options_match_discord_audio():
    options = CaptureOptions()

    assert options.format == CaptureConstants.DEFAULT_FORMAT
    assert options.sample_rate == 48000
    assert options.channels == 2
    assert options.frame_size == 3840
    assert options.frame_interval_ms == 20.0


@pytest.mark.unit
def test_mono_halves_frame_size():
    assert CaptureOptions(channels=1).frame_size == 1920


@pytest.mark.unit
@pytest.mark.parametrize(
    "kwargs",
    [
        {"format": "ogg"},
        {"channels": 3},
        {"bitrate": 0},
        {"sample_rate": 0},
        {"tempo": 0.1},
        {"tempo": 200.0},
    ],
)
def test_invalid_options_are_rejected(kwargs):
    with pytest.raises(ValueError):
        CaptureOptions(**kwargs)


@pytest.mark.unit
def test_speaker_key_is_hashable_and_ordered():
    key = SpeakerKey(guild_id=1, user_id=2)

    assert key == (1, 2)
    assert {key: "x"}[SpeakerKey(1, 2)] == "x"
