from __future__ import annotations

import asyncio
import json
import os
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

import aiofiles

if TYPE_CHECKING:
    from autorecord.context import Context

from autorecord.services.manager import BaseTriggerStoreServiceManager

# -------------------------------------------------------------- #
# Trigger Types
# -------------------------------------------------------------- #


class TriggerStoreError(Exception):
    """Base class for trigger store failures."""


class TriggerExists(TriggerStoreError):
    """An identical trigger is already stored."""


class TriggerNotFound(TriggerStoreError):
    """No stored trigger matched the removal request."""


@dataclass(frozen=True)
class Trigger:
    """Start recording when ``user_id`` enters ``channel_id`` in ``guild_id``."""

    guild_id: int
    user_id: int
    channel_id: int

    @classmethod
    def from_dict(cls, data: dict) -> "Trigger":
        return cls(
            guild_id=int(data["guild_id"]),
            user_id=int(data["user_id"]),
            channel_id=int(data["channel_id"]),
        )

    def to_dict(self) -> dict:
        # IDs are stored as strings so JSON readers without 64-bit ints keep them intact
        return {name: str(value) for name, value in asdict(self).items()}


# -------------------------------------------------------------- #
# Trigger Store Service
# -------------------------------------------------------------- #


class TriggerStoreService(BaseTriggerStoreServiceManager):
    """
    JSON file of auto-record triggers.

    The file is re-read on every call so edits made while the bot runs are
    picked up. Writes go to a temp file that replaces the store atomically.
    """

    def __init__(self, context: "Context", store_path: str):
        super().__init__(context)

        self.store_path = store_path
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)

        loop = asyncio.get_event_loop()
        parent = os.path.dirname(os.path.abspath(self.store_path))
        await loop.run_in_executor(None, lambda: os.makedirs(parent, exist_ok=True))

        triggers = await self.list()
        await self.services.logging_service.info(
            f"TriggerStoreService initialized with {len(triggers)} trigger(s) from {self.store_path}"
        )
        return True

    async def on_close(self):
        return True

    # -------------------------------------------------------------- #
    # Trigger Methods
    # -------------------------------------------------------------- #

    async def list(self) -> list[Trigger]:
        async with self._lock:
            return await self._load()

    async def find(self, guild_id: int, user_id: int, channel_id: int) -> Trigger | None:
        """Return the trigger for an exact (guild, user, channel) match, if stored."""
        wanted = Trigger(guild_id, user_id, channel_id)
        for trigger in await self.list():
            if trigger == wanted:
                return trigger
        return None

    async def list_for_guild(self, guild_id: int) -> list[Trigger]:
        return [trigger for trigger in await self.list() if trigger.guild_id == guild_id]

    async def add(self, trigger: Trigger) -> None:
        """
        Persist a new trigger.

        Raises:
            TriggerExists: If the same trigger is already stored
        """
        async with self._lock:
            triggers = await self._load()
            if trigger in triggers:
                raise TriggerExists("This trigger already exists.")
            triggers.append(trigger)
            await self._save(triggers)

        if self.services:
            await self.services.logging_service.info(f"Added trigger {trigger}")

    async def remove(self, guild_id: int, user_id: int, channel_id: int | None = None) -> int:
        """
        Remove a user's triggers, optionally only the one for a given channel.

        Returns:
            Number of triggers removed

        Raises:
            TriggerNotFound: If nothing matched
        """
        async with self._lock:
            triggers = await self._load()
            kept = [
                trigger
                for trigger in triggers
                if not (
                    trigger.guild_id == guild_id
                    and trigger.user_id == user_id
                    and (channel_id is None or trigger.channel_id == channel_id)
                )
            ]
            removed = len(triggers) - len(kept)
            if removed == 0:
                raise TriggerNotFound("No such trigger.")
            await self._save(kept)

        if self.services:
            await self.services.logging_service.info(
                f"Removed {removed} trigger(s) for user {user_id} in guild {guild_id}"
            )
        return removed

    # -------------------------------------------------------------- #
    # Storage
    # -------------------------------------------------------------- #

    async def _load(self) -> list[Trigger]:
        loop = asyncio.get_event_loop()
        if not await loop.run_in_executor(None, os.path.exists, self.store_path):
            return []

        async with aiofiles.open(self.store_path, "r", encoding="utf-8") as f:
            raw = await f.read()

        if not raw.strip():
            return []

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise TriggerStoreError(f"Trigger store {self.store_path} is not valid JSON: {e}")

        if not isinstance(data, list):
            raise TriggerStoreError(f"Trigger store {self.store_path} must contain a JSON list")

        triggers = []
        for item in data:
            try:
                triggers.append(Trigger.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                raise TriggerStoreError(f"Malformed trigger entry {item!r}: {e}")
        return triggers

    async def _save(self, triggers: list[Trigger]) -> None:
        payload = json.dumps([trigger.to_dict() for trigger in triggers], indent=2)
        tmp_path = f"{self.store_path}.tmp"

        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
            await f.flush()

        # atomic rename on same filesystem
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, os.replace, tmp_path, self.store_path)
