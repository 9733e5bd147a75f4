from abc import ABC, abstractmethod
from array import array
from collections.abc import Callable

from discord import opus

from autorecord.services.capture.errors import DecoderFailed, DecoderInitFailed
from autorecord.services.capture.options import CaptureConstants
from autorecord.services.voice_transport.base import FrameEncoding

# -------------------------------------------------------------- #
# Frame Decoders
# -------------------------------------------------------------- #

# Bytes in one interleaved 16-bit stereo sample pair
_STEREO_SAMPLE_BYTES = 4


def downmix_stereo_to_mono(pcm: bytes) -> bytes:
    """Average interleaved 16-bit stereo samples into 16-bit mono."""
    samples = array("h")
    samples.frombytes(pcm)
    mono = array("h", ((samples[i] + samples[i + 1]) // 2 for i in range(0, len(samples), 2)))
    return mono.tobytes()


class FrameDecoder(ABC):
    """
    Converts one speaker's transport frames into raw s16le PCM.

    Constructed with the target ``(sample_rate, channels, samples_per_frame)``.
    Discord always delivers 48 kHz stereo, so other rates are rejected at
    construction time; mono output is produced by down-mixing.
    """

    def __init__(self, sample_rate: int, channels: int, samples_per_frame: int):
        if sample_rate != CaptureConstants.DISCORD_SAMPLE_RATE:
            raise DecoderInitFailed(
                f"Unsupported sample rate {sample_rate}; "
                f"voice audio is {CaptureConstants.DISCORD_SAMPLE_RATE} Hz"
            )
        if channels not in (1, 2):
            raise DecoderInitFailed(f"Unsupported channel count {channels}")

        self.sample_rate = sample_rate
        self.channels = channels
        self.samples_per_frame = samples_per_frame
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def decode(self, frame: bytes) -> bytes:
        """Decode one frame. Raises DecoderFailed on malformed input."""
        if self._destroyed:
            raise DecoderFailed("Decoder already destroyed")

        stereo = self._decode_stereo(frame)
        if len(stereo) % _STEREO_SAMPLE_BYTES != 0:
            raise DecoderFailed(f"Decoded frame is not sample aligned ({len(stereo)} bytes)")

        if self.channels == 1:
            return downmix_stereo_to_mono(stereo)
        return stereo

    def destroy(self) -> None:
        """Release decoder resources. Safe to call more than once."""
        self._destroyed = True

    @abstractmethod
    def _decode_stereo(self, frame: bytes) -> bytes:
        """Return 48 kHz interleaved stereo s16le PCM for one frame."""
        pass


class PCMFrameDecoder(FrameDecoder):
    """Pass-through for transports that already deliver decoded PCM (py-cord sinks)."""

    def _decode_stereo(self, frame: bytes) -> bytes:
        return frame


class OpusFrameDecoder(FrameDecoder):
    """Decodes raw Opus packets with libopus via ``discord.opus``."""

    def __init__(self, sample_rate: int, channels: int, samples_per_frame: int):
        super().__init__(sample_rate, channels, samples_per_frame)
        try:
            self._decoder = opus.Decoder()
        except opus.OpusNotLoaded as e:
            raise DecoderInitFailed("libopus is not loaded") from e
        except opus.OpusError as e:
            raise DecoderInitFailed(f"Failed to create Opus decoder: {e}") from e

    def _decode_stereo(self, frame: bytes) -> bytes:
        try:
            return self._decoder.decode(frame, fec=False)
        except opus.OpusError as e:
            raise DecoderFailed(f"Opus decode failed: {e}") from e

    def destroy(self) -> None:
        super().destroy()
        self._decoder = None


DecoderFactory = Callable[[int, int, int], FrameDecoder]

_DECODERS: dict[FrameEncoding, DecoderFactory] = {
    FrameEncoding.PCM: PCMFrameDecoder,
    FrameEncoding.OPUS: OpusFrameDecoder,
}


def decoder_factory_for(encoding: FrameEncoding) -> DecoderFactory:
    """Pick the decoder matching what a voice transport delivers."""
    try:
        return _DECODERS[encoding]
    except KeyError:
        raise ValueError(f"No decoder for frame encoding {encoding!r}") from None
