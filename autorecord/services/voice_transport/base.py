from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

# -------------------------------------------------------------- #
# Voice Transport Port
# -------------------------------------------------------------- #

FrameCallback = Callable[[bytes], None]
ErrorCallback = Callable[[Exception], None]


class TransportError(Exception):
    """Joining, leaving or querying a voice channel failed."""


class FrameEncoding(Enum):
    """What a transport hands to frame callbacks."""

    PCM = "pcm"  # 48 kHz stereo s16le, already decoded
    OPUS = "opus"  # raw Opus packets


class EndBehavior(Enum):
    """When a speaker subscription closes on its own."""

    MANUAL = "manual"  # only an explicit unsubscribe() ends the stream
    AFTER_SILENCE = "after_silence"


@dataclass(frozen=True)
class ChannelMember:
    """A participant currently connected to a voice channel."""

    user_id: int
    is_bot: bool = False
    display_name: str = ""


class FrameSubscription(ABC):
    """Push delivery of one speaker's frames. Callbacks run on the event loop."""

    def __init__(self, user_id: int):
        self.user_id = user_id

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether frames are still being delivered."""
        pass

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop delivery. Idempotent."""
        pass


class VoiceConnection(ABC):
    """A live connection to one voice channel, shared by every capture in it."""

    def __init__(self, guild_id: int, channel_id: int):
        self.guild_id = guild_id
        self.channel_id = channel_id

    @abstractmethod
    async def subscribe(
        self,
        user_id: int,
        on_frame: FrameCallback,
        on_error: ErrorCallback,
        end_behavior: EndBehavior = EndBehavior.MANUAL,
    ) -> FrameSubscription:
        """Subscribe to a speaker. Raises SubscriptionFailed."""
        pass

    @abstractmethod
    def members(self) -> list[ChannelMember]:
        """Members currently present in the channel."""
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Leave the channel and end every subscription. Idempotent."""
        pass


class VoiceTransport(ABC):
    """Creates voice connections."""

    frame_encoding = FrameEncoding.PCM

    @abstractmethod
    async def join(self, guild_id: int, channel_id: int) -> VoiceConnection:
        """Connect to a voice channel. Raises TransportError."""
        pass

    @abstractmethod
    def get_connection(self, guild_id: int) -> VoiceConnection | None:
        """Return the live connection for a guild, if any."""
        pass
