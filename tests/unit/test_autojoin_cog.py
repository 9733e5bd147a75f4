"""
Unit tests for the auto-join cog.

The slash command callbacks run against the real trigger store and
membership controller from the ``services`` fixture.
"""

from unittest.mock import MagicMock

import pytest

from autorecord.services.trigger_store.manager import Trigger
from cogs.autojoin import AutoJoin

GUILD_ID = 111222333
CHANNEL_ID = 100
USER_ID = 42


@pytest.fixture
def autojoin_cog(services, mock_discord_bot):
    services.context.set_bot(mock_discord_bot)
    return AutoJoin(services.context)


def member(user_id=USER_ID):
    user = MagicMock()
    user.id = user_id
    return user


def voice_channel(channel_id=CHANNEL_ID):
    channel = MagicMock()
    channel.id = channel_id
    return channel


def last_reply(ctx):
    return ctx.followup.send.await_args.args[0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_stores_trigger(services, autojoin_cog, mock_discord_context):
    await AutoJoin.add.callback(autojoin_cog, mock_discord_context, member(), voice_channel())

    assert await services.trigger_store_service.list() == [Trigger(GUILD_ID, USER_ID, CHANNEL_ID)]
    assert "Auto-record added" in last_reply(mock_discord_context)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_existing_armed_trigger_is_rejected(
    services, autojoin_cog, mock_discord_context
):
    await services.trigger_store_service.add(Trigger(GUILD_ID, USER_ID, CHANNEL_ID))

    await AutoJoin.add.callback(autojoin_cog, mock_discord_context, member(), voice_channel())

    assert "already exists" in last_reply(mock_discord_context)
    assert len(await services.trigger_store_service.list()) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_rearms_disarmed_trigger(services, autojoin_cog, mock_discord_context):
    trigger = Trigger(GUILD_ID, USER_ID, CHANNEL_ID)
    controller = services.membership_controller_service
    await services.trigger_store_service.add(trigger)
    controller._disarmed.add(trigger)

    await AutoJoin.add.callback(autojoin_cog, mock_discord_context, member(), voice_channel())

    assert not controller.is_disarmed(trigger)
    assert "re-armed" in last_reply(mock_discord_context)
    assert await services.trigger_store_service.list() == [trigger]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_unknown_trigger(autojoin_cog, mock_discord_context):
    await AutoJoin.remove.callback(autojoin_cog, mock_discord_context, member(), None)

    assert "No triggers found" in last_reply(mock_discord_context)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_deletes_trigger(services, autojoin_cog, mock_discord_context):
    await services.trigger_store_service.add(Trigger(GUILD_ID, USER_ID, CHANNEL_ID))

    await AutoJoin.remove.callback(
        autojoin_cog, mock_discord_context, member(), voice_channel()
    )

    assert await services.trigger_store_service.list() == []
    assert "Removed 1" in last_reply(mock_discord_context)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_marks_disarmed_triggers(services, autojoin_cog, mock_discord_context):
    armed = Trigger(GUILD_ID, USER_ID, CHANNEL_ID)
    disarmed = Trigger(GUILD_ID, 43, CHANNEL_ID)
    await services.trigger_store_service.add(armed)
    await services.trigger_store_service.add(disarmed)
    services.membership_controller_service._disarmed.add(disarmed)

    await AutoJoin.list_triggers.callback(autojoin_cog, mock_discord_context)

    embed = mock_discord_context.respond.await_args.kwargs["embed"]
    assert f"<@{USER_ID}> → <#{CHANNEL_ID}>\n" in embed.description + "\n"
    assert "<@43> → <#100> (disarmed)" in embed.description
