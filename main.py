# Main File

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import discord
import dotenv

from autorecord.context import Context
from autorecord.services.constructor import construct_services_manager
from autorecord.services.voice_transport.pycord import PycordVoiceTransport
from autorecord.utils import parse_int_list_env

# Configure Python's built-in logging for startup and the sync leaves
# (before AsyncLoggingService is available)
logs_dir = Path("logs")
logs_dir.mkdir(parents=True, exist_ok=True)
timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
log_file = logs_dir / f"app_{timestamp}.log"

# Configure logging to output to both console and file
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file, mode="a", encoding="utf-8"),
    ],
    force=True,
)

dotenv.load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Discord Bot Setup
# -------------------------------------------------------------- #

# Comma separated guild IDs for instant command registration during development
# Leave empty for global commands (takes up to 1 hour to register)
DEBUG_GUILD_IDS = parse_int_list_env(os.getenv("DEBUG_GUILD_IDS"))

intents = discord.Intents.default()
intents.voice_states = True
intents.members = True  # Needed to tell bots from people in voice channels

# If DEBUG_GUILD_IDS is not empty, commands will register instantly in those guilds
bot = discord.Bot(intents=intents, debug_guilds=DEBUG_GUILD_IDS or None)


async def load_cogs(context: Context):
    """Load all cog extensions with context.

    Args:
        context: The application context instance
    """
    from cogs.autojoin import setup as setup_autojoin
    from cogs.voice import setup as setup_voice

    setup_voice(context)
    await context.services_manager.logging_service.info("✓ Loaded cogs.voice")

    setup_autojoin(context)
    await context.services_manager.logging_service.info("✓ Loaded cogs.autojoin")


# -------------------------------------------------------------- #
# Commands
# -------------------------------------------------------------- #


@bot.command(name="shutdown", description="Finish every recording and stop the bot")
async def shutdown(ctx: discord.ApplicationContext):
    """Stop the bot gracefully, waiting for all recordings to finish encoding."""

    # Only the application owner may stop the bot
    info = await bot.application_info()
    allowed = {info.owner.id}
    if info.team:
        allowed.update(member.id for member in info.team.members)
    if ctx.author.id not in allowed:
        await ctx.respond("❌ You do not have permission to use this command.", ephemeral=True)
        return

    await ctx.respond("⏳ Finishing recordings and shutting down...", ephemeral=True)

    try:
        logger = bot.context.services_manager.logging_service
        await logger.info(f"Shutdown initiated by user: {ctx.author.name} ({ctx.author.id})")

        # Perform graceful shutdown of all services
        await bot.context.services_manager.shutdown_all(timeout=60.0)
        await ctx.followup.send("✅ All services have been shut down. Bot stopping now...")
    except discord.DiscordException as e:
        logging.error(f"Error during shutdown command: {e}")

    # Finally, close the bot
    await bot.close()


# -------------------------------------------------------------- #
# Events
# -------------------------------------------------------------- #


@bot.event
async def on_ready():
    """Called when the bot is ready and connected to Discord."""
    logger = bot.context.services_manager.logging_service

    await logger.info(f"Logged in as {bot.user.name} (ID: {bot.user.id})")
    await logger.info(f"Connected to {len(bot.guilds)} guild(s):")
    for guild in bot.guilds:
        await logger.info(f"  ✓ {guild.name} (ID: {guild.id})")

    slash_commands = [
        cmd for cmd in bot.pending_application_commands if isinstance(cmd, discord.SlashCommand)
    ]
    await logger.info(f"Registered {len(slash_commands)} slash command(s)")

    if DEBUG_GUILD_IDS:
        await logger.info(f"Commands registered for guilds: {DEBUG_GUILD_IDS}")
    else:
        await logger.info("Commands registered GLOBALLY (can take up to 1 hour to appear)")


@bot.event
async def on_application_command_error(
    ctx: discord.ApplicationContext, error: discord.DiscordException
):
    """Handle errors in application commands."""
    logger = bot.context.services_manager.logging_service
    await logger.error(f"Error in command {ctx.command.name}: {error}")

    if isinstance(error, discord.CheckFailure):
        await ctx.respond("❌ You don't have permission to use this command.", ephemeral=True)
    else:
        await ctx.respond(f"❌ An error occurred: {str(error)}", ephemeral=True)


# -------------------------------------------------------------- #
# Run Bot
# -------------------------------------------------------------- #


async def main():
    """Main function to load cogs and start the bot."""
    print("=" * 40)
    print("Syncing services...")

    # Create context object
    context = Context()
    context.set_bot(bot)

    # Use the same log file that was created for built-in logging
    services_manager = construct_services_manager(
        context=context,
        transport=PycordVoiceTransport(bot),
        log_file=log_file.name,
    )
    context.set_services_manager(services_manager)
    await services_manager.initialize_all()

    # Now we can use the async logger
    logger = services_manager.logging_service
    await logger.info("[OK] Initialized all services.")

    # Store context on bot for access in commands
    bot.context = context

    # -------------------------------------------------------------- #
    # Start Discord Bot
    # -------------------------------------------------------------- #

    try:
        async with bot:
            await load_cogs(context)
            token = os.getenv("DISCORD_API_TOKEN")
            if not token:
                await logger.error("Error: DISCORD_API_TOKEN not found in environment variables")
                return
            await bot.start(token)
    finally:
        # Recordings still running when the bot stops are finished, not dropped
        if not context.is_shutting_down():
            await services_manager.shutdown_all(timeout=60.0)


if __name__ == "__main__":
    import asyncio

    asyncio.run(main())
