import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from autorecord.services.capture.errors import AlreadyActive
from autorecord.services.capture.options import SpeakerKey
from autorecord.utils import generate_capture_token

if TYPE_CHECKING:
    from autorecord.services.capture.session import CaptureSession

# -------------------------------------------------------------- #
# Registry Entry
# -------------------------------------------------------------- #


class EntryState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    FINALIZING = "finalizing"


@dataclass
class RegistryEntry:
    key: SpeakerKey
    token: str
    channel_id: int | None = None
    state: EntryState = EntryState.STARTING
    session: "CaptureSession | None" = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    released: asyncio.Event = field(default_factory=asyncio.Event)


# -------------------------------------------------------------- #
# Session Registry
# -------------------------------------------------------------- #


class SessionRegistry:
    """
    Single source of truth for which speakers are being captured.

    Every method here is synchronous, so on a single event loop each call is
    atomic: two concurrent ``acquire`` calls for one speaker can never both
    succeed. An entry exists from ``acquire`` until ``release``, which covers
    setup and encoder drain as well as the capture itself.

    ``release`` accepts the ownership token handed out by ``acquire``. A holder
    with a stale token (its entry was already released and the speaker was
    acquired again) cannot remove the newer entry.
    """

    def __init__(self):
        self._entries: dict[SpeakerKey, RegistryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Any) -> bool:
        return key in self._entries

    # -------------------------------------------------------------- #
    # Ownership
    # -------------------------------------------------------------- #

    def acquire(self, key: SpeakerKey, channel_id: int | None = None) -> str:
        """
        Claim a speaker.

        Returns:
            The ownership token for the new entry

        Raises:
            AlreadyActive: If any entry exists for the speaker
        """
        if key in self._entries:
            raise AlreadyActive(key)

        token = generate_capture_token()
        self._entries[key] = RegistryEntry(key=key, token=token, channel_id=channel_id)
        return token

    def release(self, key: SpeakerKey, token: str | None = None) -> bool:
        """
        Remove a speaker's entry. Releasing an absent speaker is a no-op.

        Returns:
            True if an entry was removed
        """
        entry = self._entries.get(key)
        if entry is None:
            return False
        if token is not None and entry.token != token:
            return False

        del self._entries[key]
        # Wake anyone waiting on setup or drain
        entry.ready.set()
        entry.released.set()
        return True

    # -------------------------------------------------------------- #
    # Entry State
    # -------------------------------------------------------------- #

    def get(self, key: SpeakerKey) -> RegistryEntry | None:
        return self._entries.get(key)

    def entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def attach(self, key: SpeakerKey, token: str, session: "CaptureSession") -> bool:
        entry = self._owned(key, token)
        if entry is None:
            return False
        entry.session = session
        return True

    def mark_active(self, key: SpeakerKey, token: str) -> bool:
        """Move a STARTING entry to ACTIVE. Entries already finalizing are left alone."""
        entry = self._owned(key, token)
        if entry is None or entry.state != EntryState.STARTING:
            return False
        entry.state = EntryState.ACTIVE
        entry.ready.set()
        return True

    def mark_finalizing(self, key: SpeakerKey, token: str | None = None) -> RegistryEntry | None:
        entry = self._entries.get(key)
        if entry is None or (token is not None and entry.token != token):
            return None
        entry.state = EntryState.FINALIZING
        return entry

    def keys_for_channel(self, guild_id: int, channel_id: int) -> list[SpeakerKey]:
        return [
            key
            for key, entry in self._entries.items()
            if key.guild_id == guild_id and entry.channel_id == channel_id
        ]

    # -------------------------------------------------------------- #
    # Waiting
    # -------------------------------------------------------------- #

    async def wait_ready(self, key: SpeakerKey) -> bool:
        """Wait until the speaker's setup finished. Returns False if it was released instead."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        await entry.ready.wait()
        return self._entries.get(key) is entry

    async def wait_released(self, key: SpeakerKey) -> None:
        """Wait until the speaker's current entry, if any, is released."""
        entry = self._entries.get(key)
        if entry is None:
            return
        await entry.released.wait()

    def _owned(self, key: SpeakerKey, token: str) -> RegistryEntry | None:
        entry = self._entries.get(key)
        if entry is None or entry.token != token:
            return None
        return entry
