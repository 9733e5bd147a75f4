import asyncio
import logging
import threading

import discord

from autorecord.services.capture.errors import SubscriptionFailed
from autorecord.services.voice_transport.base import (
    ChannelMember,
    EndBehavior,
    ErrorCallback,
    FrameCallback,
    FrameEncoding,
    FrameSubscription,
    TransportError,
    VoiceConnection,
    VoiceTransport,
)

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #

VOICE_CONNECT_TIMEOUT_SECONDS = 10.0


# -------------------------------------------------------------- #
# Fan-out Sink
# -------------------------------------------------------------- #


class FanoutSink(discord.sinks.Sink):
    """
    Py-cord sink that routes each user's decoded PCM to their subscription.

    Py-cord calls ``write`` from its decoder thread, so delivery is handed to
    the event loop with ``call_soon_threadsafe``. Audio from users without a
    subscription is dropped.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self._loop = loop
        self._routes: dict[int, "PycordFrameSubscription"] = {}
        self._routes_lock = threading.Lock()

    def add_route(self, subscription: "PycordFrameSubscription") -> None:
        with self._routes_lock:
            if subscription.user_id in self._routes:
                raise SubscriptionFailed(f"User {subscription.user_id} is already subscribed")
            self._routes[subscription.user_id] = subscription

    def remove_route(self, subscription: "PycordFrameSubscription") -> None:
        with self._routes_lock:
            if self._routes.get(subscription.user_id) is subscription:
                del self._routes[subscription.user_id]

    def clear_routes(self) -> list["PycordFrameSubscription"]:
        with self._routes_lock:
            routes = list(self._routes.values())
            self._routes.clear()
        return routes

    def write(self, data, user):
        with self._routes_lock:
            subscription = self._routes.get(int(user))
        if subscription is None:
            return
        try:
            self._loop.call_soon_threadsafe(subscription.deliver, data)
        except RuntimeError:
            # Loop already closed during shutdown
            pass

    def cleanup(self):
        self.finished = True


# -------------------------------------------------------------- #
# Subscription
# -------------------------------------------------------------- #


class PycordFrameSubscription(FrameSubscription):
    def __init__(
        self,
        sink: FanoutSink,
        user_id: int,
        on_frame: FrameCallback,
        on_error: ErrorCallback,
    ):
        super().__init__(user_id)
        self._sink = sink
        self._on_frame = on_frame
        self._on_error = on_error
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, data: bytes) -> None:
        """Runs on the event loop."""
        if not self._active:
            return
        try:
            self._on_frame(data)
        except Exception as e:
            self._on_error(e)

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._sink.remove_route(self)


# -------------------------------------------------------------- #
# Connection
# -------------------------------------------------------------- #


class PycordVoiceConnection(VoiceConnection):
    """Wraps a py-cord VoiceClient; one FanoutSink serves every speaker."""

    def __init__(self, voice_client: discord.VoiceClient, guild_id: int, channel_id: int):
        super().__init__(guild_id, channel_id)
        self.voice_client = voice_client
        self._sink = FanoutSink(asyncio.get_running_loop())
        self._destroyed = False

    async def subscribe(
        self,
        user_id: int,
        on_frame: FrameCallback,
        on_error: ErrorCallback,
        end_behavior: EndBehavior = EndBehavior.MANUAL,
    ) -> FrameSubscription:
        if self._destroyed or not self.voice_client.is_connected():
            raise SubscriptionFailed(f"Voice connection to channel {self.channel_id} is closed")
        if end_behavior is not EndBehavior.MANUAL:
            raise SubscriptionFailed(f"Unsupported end behavior: {end_behavior.value}")

        subscription = PycordFrameSubscription(self._sink, user_id, on_frame, on_error)
        self._sink.add_route(subscription)

        try:
            self._ensure_recording()
        except discord.DiscordException as e:
            subscription.unsubscribe()
            raise SubscriptionFailed(f"Could not start voice receive: {e}") from e

        return subscription

    def members(self) -> list[ChannelMember]:
        channel = self.voice_client.channel
        if channel is None:
            return []
        return [
            ChannelMember(user_id=member.id, is_bot=member.bot, display_name=member.display_name)
            for member in channel.members
        ]

    def is_connected(self) -> bool:
        return not self._destroyed and self.voice_client.is_connected()

    async def destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True

        for subscription in self._sink.clear_routes():
            subscription.unsubscribe()

        try:
            if self.voice_client.recording:
                self.voice_client.stop_recording()
        except discord.DiscordException as e:
            logger.warning(f"Error stopping voice receive in channel {self.channel_id}: {e}")

        if self.voice_client.is_connected():
            await self.voice_client.disconnect(force=True)
        logger.info(f"Disconnected from voice channel {self.channel_id}")

    def _ensure_recording(self) -> None:
        if not self.voice_client.recording:
            self.voice_client.start_recording(
                self._sink, self._recording_finished_callback, sync_start=False
            )

    async def _recording_finished_callback(self, _sink: discord.sinks.Sink, *_args) -> None:
        logger.debug(f"Voice receive finished for channel {self.channel_id}")


# -------------------------------------------------------------- #
# Transport
# -------------------------------------------------------------- #


class PycordVoiceTransport(VoiceTransport):
    """Joins voice channels through the py-cord bot."""

    # Sinks receive audio after py-cord has decoded it
    frame_encoding = FrameEncoding.PCM

    def __init__(self, bot: discord.Bot):
        self.bot = bot
        self._connections: dict[int, PycordVoiceConnection] = {}

    async def join(self, guild_id: int, channel_id: int) -> VoiceConnection:
        # A bot can only sit in one voice channel per guild
        existing = self._connections.get(guild_id)
        if existing is not None and existing.is_connected():
            if existing.channel_id == channel_id:
                return existing
            raise TransportError(
                f"Already connected to channel {existing.channel_id} in guild {guild_id}"
            )

        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except discord.DiscordException as e:
                raise TransportError(f"Voice channel {channel_id} not found: {e}") from e

        if not isinstance(channel, discord.VoiceChannel) or channel.guild.id != guild_id:
            raise TransportError(f"Channel {channel_id} is not a voice channel of guild {guild_id}")

        try:
            voice_client = channel.guild.voice_client
            if voice_client and voice_client.is_connected():
                # Voice client left over from before this transport tracked it
                if voice_client.channel.id != channel_id:
                    await voice_client.move_to(channel)
            else:
                voice_client = await channel.connect(
                    timeout=VOICE_CONNECT_TIMEOUT_SECONDS, reconnect=True
                )
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to connect to voice channel {channel_id}: {e}") from e

        connection = PycordVoiceConnection(voice_client, guild_id, channel_id)
        self._connections[guild_id] = connection
        return connection

    def get_connection(self, guild_id: int) -> VoiceConnection | None:
        """Return the live connection for a guild, if any."""
        connection = self._connections.get(guild_id)
        if connection is not None and connection.is_connected():
            return connection
        return None
