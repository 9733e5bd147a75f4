"""
Unit tests for shared helpers in autorecord.utils.
"""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import discord
import pytest

from autorecord.utils import (
    BotUtils,
    format_file_timestamp,
    generate_capture_token,
    generate_variable_char_uuid,
    parse_bool_env,
    parse_int_list_env,
    sanitize_filename_part,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "value, default, expected",
    [
        (None, True, True),
        ("", False, False),
        ("true", False, True),
        ("YES", False, True),
        ("1", False, True),
        ("false", True, False),
        ("off", True, False),
    ],
)
def test_parse_bool_env(value, default, expected):
    assert parse_bool_env(value, default) is expected


@pytest.mark.unit
def test_parse_int_list_env():
    assert parse_int_list_env(None) == []
    assert parse_int_list_env("1, 2,,3") == [1, 2, 3]
    assert parse_int_list_env("10,abc,20") == [10, 20]


@pytest.mark.unit
def test_sanitize_filename_part():
    assert sanitize_filename_part(12345) == "12345"
    assert sanitize_filename_part("Ab/../c d") == "ab____c_d"


@pytest.mark.unit
def test_format_file_timestamp():
    assert format_file_timestamp(datetime(2024, 12, 31, 23, 59, 1)) == "20241231-235901"


@pytest.mark.unit
def test_generated_ids():
    assert len(generate_capture_token()) == 8
    assert len(generate_variable_char_uuid(32)) == 32

    with pytest.raises(ValueError):
        generate_variable_char_uuid(0)


# -------------------------------------------------------------- #
# Bot Utils
# -------------------------------------------------------------- #


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_to_channel_fetches_uncached_channel(mock_discord_bot):
    channel = MagicMock(spec=discord.TextChannel)
    channel.send = AsyncMock()
    mock_discord_bot.fetch_channel = AsyncMock(return_value=channel)

    assert await BotUtils.send_to_channel(mock_discord_bot, 555, "hello") is True

    mock_discord_bot.fetch_channel.assert_awaited_once_with(555)
    channel.send.assert_awaited_once_with("hello")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_to_channel_rejects_voice_only_channel(mock_discord_bot):
    mock_discord_bot.get_channel = MagicMock(return_value=MagicMock(spec=discord.CategoryChannel))

    assert await BotUtils.send_to_channel(mock_discord_bot, 555, "hello") is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_to_channel_handles_missing_attachment(mock_discord_bot, tmp_path):
    channel = MagicMock(spec=discord.TextChannel)
    channel.send = AsyncMock()
    mock_discord_bot.get_channel = MagicMock(return_value=channel)

    sent = await BotUtils.send_to_channel(
        mock_discord_bot, 555, "hello", file_path=str(tmp_path / "missing.mp3")
    )

    assert sent is False
    channel.send.assert_not_awaited()
