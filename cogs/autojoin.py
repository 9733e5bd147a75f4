import logging

import discord
from discord.ext import commands

from autorecord.context import Context
from autorecord.services.trigger_store.manager import (
    Trigger,
    TriggerExists,
    TriggerNotFound,
    TriggerStoreError,
)

logger = logging.getLogger(__name__)


class AutoJoin(commands.Cog):
    """Manage auto-join recording triggers."""

    autojoin = discord.SlashCommandGroup(
        "autojoin",
        "Manage auto-join recording triggers",
        default_member_permissions=discord.Permissions(administrator=True),
    )

    def __init__(self, context: Context):
        self.context = context
        self.bot = context.bot
        self.services = context.services_manager

    @autojoin.command(name="add", description="Start auto-record when a user joins a channel")
    async def add(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="Target user"),
        channel: discord.VoiceChannel = discord.Option(
            discord.VoiceChannel, description="Voice channel"
        ),
    ):
        await ctx.defer(ephemeral=True)

        store = self.services.trigger_store_service
        controller = self.services.membership_controller_service
        trigger = Trigger(guild_id=ctx.guild_id, user_id=user.id, channel_id=channel.id)

        try:
            existing = await store.find(trigger.guild_id, trigger.user_id, trigger.channel_id)
            if existing is None:
                await store.add(trigger)
        except TriggerExists:
            # Stored between the lookup and the write
            existing = trigger
        except TriggerStoreError as e:
            logger.error(f"Failed to add trigger {trigger}: {e}")
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return

        if existing is not None:
            # Adding a stored trigger again is how a disarmed one comes back
            if not controller.is_disarmed(existing):
                await ctx.followup.send("❌ This trigger already exists.", ephemeral=True)
                return
            controller.rearm(existing.guild_id, existing.user_id, existing.channel_id)
            await ctx.followup.send(
                f"🔁 Auto-record re-armed: when <@{user.id}> joins <#{channel.id}>", ephemeral=True
            )
            return

        controller.rearm(trigger.guild_id, trigger.user_id, trigger.channel_id)
        await ctx.followup.send(
            f"✅ Auto-record added: when <@{user.id}> joins <#{channel.id}>", ephemeral=True
        )

    @autojoin.command(name="remove", description="Remove auto-record triggers for a user")
    async def remove(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member = discord.Option(discord.Member, description="Target user"),
        channel: discord.VoiceChannel = discord.Option(
            discord.VoiceChannel,
            description="Only remove the trigger for this channel",
            required=False,
            default=None,
        ),
    ):
        await ctx.defer(ephemeral=True)

        try:
            removed = await self.services.trigger_store_service.remove(
                ctx.guild_id, user.id, channel.id if channel else None
            )
        except TriggerNotFound:
            await ctx.followup.send("❌ No triggers found for that user.", ephemeral=True)
            return
        except TriggerStoreError as e:
            logger.error(f"Failed to remove triggers for {user.id}: {e}")
            await ctx.followup.send(f"❌ {e}", ephemeral=True)
            return

        await ctx.followup.send(
            f"🗑️ Removed {removed} auto-record trigger(s) for <@{user.id}>", ephemeral=True
        )

    @autojoin.command(name="list", description="List auto-record triggers in this server")
    async def list_triggers(self, ctx: discord.ApplicationContext):
        try:
            triggers = await self.services.trigger_store_service.list_for_guild(ctx.guild_id)
        except TriggerStoreError as e:
            await ctx.respond(f"❌ {e}", ephemeral=True)
            return

        if not triggers:
            await ctx.respond("No auto-record triggers configured.", ephemeral=True)
            return

        controller = self.services.membership_controller_service
        lines = []
        for trigger in triggers:
            line = f"<@{trigger.user_id}> → <#{trigger.channel_id}>"
            if controller.is_disarmed(trigger):
                line += " (disarmed)"
            lines.append(line)

        embed = discord.Embed(
            title="Auto-record triggers",
            description="\n".join(lines),
            color=discord.Color.blue(),
        )
        await ctx.respond(embed=embed, ephemeral=True)


def setup(context: Context):
    autojoin = AutoJoin(context)
    context.bot.add_cog(autojoin)
    return autojoin
