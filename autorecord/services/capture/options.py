from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

from autorecord.services.capture.pcm import (
    calculate_frame_interval_ms,
    calculate_frame_size,
)

# -------------------------------------------------------------- #
# Configuration Constants
# -------------------------------------------------------------- #


class CaptureConstants:
    """Configuration constants for speaker capture."""

    # Discord audio format (from the Opus spec used by Discord voice)
    DISCORD_SAMPLE_RATE = 48000  # 48 kHz
    DISCORD_CHANNELS = 2  # Stereo
    DISCORD_BITS_PER_SAMPLE = 16  # 16-bit signed PCM
    SAMPLES_PER_FRAME = 960  # 20ms at 48 kHz

    # Encoder defaults
    DEFAULT_FORMAT = "mp3"
    SUPPORTED_FORMATS = ("mp3", "wav")
    DEFAULT_BITRATE_KBPS = 192

    # ffmpeg atempo accepts 0.5 - 100.0 per filter instance
    MIN_TEMPO = 0.5
    MAX_TEMPO = 100.0

    # Maximum capture duration before the monitor force-stops a session
    # 5 hours = 18000 seconds
    MAX_CAPTURE_DURATION_SECONDS = 18000
    MONITOR_INTERVAL_SECONDS = 10

    # Encoder drain budget on stop
    ENCODER_DRAIN_TIMEOUT_SECONDS = 120

    # Discord upload limit for non-boosted guilds
    MAX_UPLOAD_BYTES = 25 * 1024 * 1024


# -------------------------------------------------------------- #
# Data Types
# -------------------------------------------------------------- #


class SpeakerKey(NamedTuple):
    """Identity of one capture: a user inside a guild."""

    guild_id: int
    user_id: int


@dataclass(frozen=True)
class CaptureOptions:
    """Output parameters of one capture session."""

    format: str = CaptureConstants.DEFAULT_FORMAT
    bitrate: int = CaptureConstants.DEFAULT_BITRATE_KBPS
    sample_rate: int = CaptureConstants.DISCORD_SAMPLE_RATE
    channels: int = CaptureConstants.DISCORD_CHANNELS
    samples_per_frame: int = CaptureConstants.SAMPLES_PER_FRAME
    tempo: float | None = None

    def __post_init__(self):
        if self.format not in CaptureConstants.SUPPORTED_FORMATS:
            raise ValueError(f"Unsupported format: {self.format}")
        if self.channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if self.sample_rate <= 0 or self.samples_per_frame <= 0:
            raise ValueError("sample_rate and samples_per_frame must be positive")
        if self.bitrate <= 0:
            raise ValueError("bitrate must be positive")
        if self.tempo is not None and not (
            CaptureConstants.MIN_TEMPO <= self.tempo <= CaptureConstants.MAX_TEMPO
        ):
            raise ValueError(
                f"tempo must be between {CaptureConstants.MIN_TEMPO} and {CaptureConstants.MAX_TEMPO}"
            )

    @property
    def frame_size(self) -> int:
        """Bytes per regulated output frame."""
        return calculate_frame_size(
            self.samples_per_frame, self.channels, CaptureConstants.DISCORD_BITS_PER_SAMPLE
        )

    @property
    def frame_interval_ms(self) -> float:
        """Wall-clock period of one output frame."""
        return calculate_frame_interval_ms(self.samples_per_frame, self.sample_rate)


@dataclass
class CaptureResult:
    """Outcome of a capture that finished encoding."""

    key: SpeakerKey
    channel_id: int
    output_path: str
    started_at: datetime
    finished_at: datetime
    frames_written: int = 0
    duration_ms: int = 0
