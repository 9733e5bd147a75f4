import logging
import re
import uuid
from datetime import datetime, timezone

import discord

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #

CAPTURE_TOKEN_LENGTH = 8  # suffix that keeps artifact names unique per session

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9_\-]", re.IGNORECASE)


# -------------------------------------------------------------- #
# Generators
# -------------------------------------------------------------- #


def generate_variable_char_uuid(length: int) -> str:
    """Generate a unique identifier of specified length."""
    if length <= 0 or length > 32:
        raise ValueError("Length must be between 1 and 32")
    return uuid.uuid4().hex[:length]


def generate_capture_token() -> str:
    """Generate the short identifier attached to a capture session."""
    return generate_variable_char_uuid(CAPTURE_TOKEN_LENGTH)


# -------------------------------------------------------------- #
# Util Functions
# -------------------------------------------------------------- #


def get_current_timestamp_utc() -> datetime:
    """Get the current UTC timestamp."""
    return datetime.now(timezone.utc)


def format_file_timestamp(moment: datetime) -> str:
    """Format a timestamp for use inside a filename (YYYYmmdd-HHMMSS)."""
    return moment.strftime("%Y%m%d-%H%M%S")


def sanitize_filename_part(value: str | int) -> str:
    """Lowercase a value and replace anything unsafe for a filename with '_'."""
    return _UNSAFE_FILENAME_CHARS.sub("_", str(value)).lower()


def parse_bool_env(value: str | None, default: bool) -> bool:
    """Interpret an environment variable as a boolean flag."""
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_int_list_env(value: str | None) -> list[int]:
    """Parse a comma separated list of integer IDs, skipping bad entries."""
    if not value:
        return []

    result = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            result.append(int(part))
        except ValueError:
            logger.warning(f"Ignoring non-numeric id in list: {part!r}")
    return result


# -------------------------------------------------------------- #
# Bot Utils
# -------------------------------------------------------------- #


class BotUtils:
    """Utility class for Discord bot operations."""

    @staticmethod
    async def send_to_channel(
        bot_instance: discord.Bot,
        channel_id: int,
        message: str,
        file_path: str | None = None,
    ) -> bool:
        """
        Send a message, optionally with an attached file, to a text channel.

        Args:
            bot_instance: Discord bot instance
            channel_id: Target text channel ID
            message: Message content to send
            file_path: Optional path of a file to attach

        Returns:
            True if message was sent successfully, False otherwise
        """
        try:
            channel = bot_instance.get_channel(channel_id)
            if channel is None:
                channel = await bot_instance.fetch_channel(channel_id)
            if not isinstance(channel, discord.abc.Messageable):
                logger.warning(f"Channel {channel_id} cannot receive messages")
                return False

            if file_path:
                await channel.send(content=message, file=discord.File(file_path))
            else:
                await channel.send(message)

            logger.info(f"Successfully sent message to channel {channel_id}")
            return True

        except discord.Forbidden:
            logger.warning(f"Missing permissions to post in channel {channel_id}")
            return False
        except discord.NotFound:
            logger.warning(f"Channel {channel_id} does not exist")
            return False
        except discord.HTTPException as e:
            logger.error(f"HTTP error sending to channel {channel_id}: {e}")
            return False
        except OSError as e:
            logger.error(f"Could not read attachment {file_path}: {e}")
            return False
