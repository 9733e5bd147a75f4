import logging

import discord
from discord.ext import commands

from autorecord.context import Context
from autorecord.services.capture.errors import AlreadyActive, SetupError
from autorecord.services.membership.events import MembershipEvent
from autorecord.services.voice_transport.base import TransportError

logger = logging.getLogger(__name__)


# -------------------------------------------------------------- #
# Cog
# -------------------------------------------------------------- #


class Voice(commands.Cog):
    """Voice based commands."""

    def __init__(self, context: Context):
        self.context = context
        self.bot = context.bot
        self.services = context.services_manager

    # -------------------------------------------------------------- #
    # Utils
    # -------------------------------------------------------------- #

    def find_user_vc(self, ctx: discord.ApplicationContext) -> discord.VoiceChannel | None:
        """Find a voice channel the user is in.

        Args:
            ctx: Discord application context

        Returns:
            Voice channel if user is connected, None otherwise
        """
        return ctx.author.voice.channel if ctx.author.voice else None

    @property
    def transport(self):
        return self.services.membership_controller_service.transport

    # -------------------------------------------------------------- #
    # Listeners
    # -------------------------------------------------------------- #

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ):
        """Forward channel changes to the membership controller.

        Args:
            member: The member whose voice state has changed
            before: The previous voice state
            after: The new voice state
        """
        event = MembershipEvent(
            guild_id=member.guild.id,
            user_id=member.id,
            previous_channel_id=before.channel.id if before.channel else None,
            new_channel_id=after.channel.id if after.channel else None,
            is_bot=member.bot,
        )
        # Mute/deafen updates keep the same channel and are dropped by the controller
        self.services.membership_controller_service.handle_event(event)

    # -------------------------------------------------------------- #
    # Slash Commands
    # -------------------------------------------------------------- #

    @commands.slash_command(
        name="join", description="Join a voice channel and record everyone in it"
    )
    @discord.default_permissions(administrator=True)
    async def join(
        self,
        ctx: discord.ApplicationContext,
        channel: discord.VoiceChannel = discord.Option(
            discord.VoiceChannel,
            description="Voice channel to join (defaults to yours)",
            required=False,
            default=None,
        ),
    ) -> None:
        """Join a voice channel and start one capture per member present."""
        await ctx.defer(ephemeral=True)

        voice_channel = channel or self.find_user_vc(ctx)
        if not voice_channel:
            await ctx.followup.send(
                "❌ Join a voice channel or specify one using the `channel` option.",
                ephemeral=True,
            )
            return

        logger.info(
            f"Join command called by {ctx.author.id} for channel {voice_channel.id} in guild {ctx.guild_id}"
        )

        try:
            connection = await self.transport.join(ctx.guild_id, voice_channel.id)
        except TransportError as e:
            await ctx.followup.send(f"🚫 Could not join: {e}", ephemeral=True)
            return

        capture = self.services.capture_service_manager
        started = 0
        for member in connection.members():
            if member.is_bot:
                continue
            try:
                session = await capture.start_capture(
                    connection, ctx.guild_id, voice_channel.id, member.user_id
                )
            except AlreadyActive:
                continue
            except SetupError as e:
                logger.warning(f"Could not start capture for {member.user_id}: {e}")
                continue
            if session is not None:
                started += 1

        await ctx.followup.send(
            f"🔴 Recording in **{voice_channel.name}** ({started} new capture(s)).",
            ephemeral=True,
        )

    @commands.slash_command(name="leave", description="Stop recording and leave the voice channel")
    @discord.default_permissions(administrator=True)
    async def leave(self, ctx: discord.ApplicationContext) -> None:
        """Stop every capture in the bot's channel and disconnect."""
        await ctx.defer(ephemeral=True)

        connection = self.transport.get_connection(ctx.guild_id)
        if connection is None:
            await ctx.followup.send("❌ The bot is not in a voice channel.", ephemeral=True)
            return

        controller = self.services.membership_controller_service
        watch = controller.request_teardown(ctx.guild_id, connection.channel_id)
        if watch is not None:
            # The watch owns the connection and stops its captures itself
            await watch.closed.wait()
            await ctx.followup.send(
                "✅ Stopped the auto-recording and left the voice channel.", ephemeral=True
            )
            return

        results = await self.services.capture_service_manager.stop_channel(
            ctx.guild_id, connection.channel_id
        )
        try:
            await connection.destroy()
        except Exception as e:
            logger.error(f"Error disconnecting from voice: {e}")

        if results:
            message = f"✅ Stopped {len(results)} recording(s) and left the voice channel."
        else:
            message = "✅ Left the voice channel. There was no active recording."
        await ctx.followup.send(message, ephemeral=True)

    # -------------------------------------------------------------- #
    # Debug Functions
    # -------------------------------------------------------------- #

    @commands.slash_command(name="recordings", description="List active recordings in this server")
    async def recordings(self, ctx: discord.ApplicationContext) -> None:
        """List every capture running in this guild."""
        capture = self.services.capture_service_manager
        entries = [entry for entry in capture.registry.entries() if entry.key.guild_id == ctx.guild_id]
        if not entries:
            await ctx.respond("No active recordings.", ephemeral=True)
            return

        lines = []
        for entry in entries:
            duration = entry.session.get_duration_seconds() if entry.session else 0.0
            lines.append(
                f"<@{entry.key.user_id}> in <#{entry.channel_id}> - {entry.state.value} ({duration:.0f}s)"
            )

        watches = [
            watch
            for watch in self.services.membership_controller_service.active_watches()
            if watch.guild_id == ctx.guild_id
        ]
        if watches:
            lines.append("")
            lines.append("Auto-record watches:")
            for watch in watches:
                lines.append(f"<#{watch.channel_id}> (trigger <@{watch.trigger.user_id}>)")

        await ctx.respond("Active recordings:\n" + "\n".join(lines), ephemeral=True)


def setup(context: Context):
    voice = Voice(context)
    context.bot.add_cog(voice)

    # -------------------------------------------------------------- #
    # Add listeners
    # -------------------------------------------------------------- #

    context.bot.add_listener(voice.on_voice_state_update, "on_voice_state_update")
    return voice
