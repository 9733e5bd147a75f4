import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Membership Event
# -------------------------------------------------------------- #


@dataclass(frozen=True)
class MembershipEvent:
    """A user's voice channel changed. ``None`` means not in a channel."""

    guild_id: int
    user_id: int
    previous_channel_id: int | None
    new_channel_id: int | None
    is_bot: bool = False

    @property
    def moved(self) -> bool:
        return self.previous_channel_id != self.new_channel_id

    def joined(self, channel_id: int) -> bool:
        return self.new_channel_id == channel_id and self.previous_channel_id != channel_id

    def left(self, channel_id: int) -> bool:
        return self.previous_channel_id == channel_id and self.new_channel_id != channel_id

    def touches(self, channel_id: int) -> bool:
        return self.joined(channel_id) or self.left(channel_id)


EventHandler = Callable[[MembershipEvent], None]


# -------------------------------------------------------------- #
# Event Bus
# -------------------------------------------------------------- #


class Subscription:
    """Handle returned by ``EventBus.subscribe``; the only way to stop delivery."""

    def __init__(self, bus: "EventBus", guild_id: int, handler: EventHandler):
        self._bus = bus
        self.guild_id = guild_id
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus._remove(self)


class EventBus:
    """Delivers membership events to the subscriptions registered for their guild."""

    def __init__(self):
        self._subscriptions: dict[int, list[Subscription]] = {}

    def subscribe(self, guild_id: int, handler: EventHandler) -> Subscription:
        subscription = Subscription(self, guild_id, handler)
        self._subscriptions.setdefault(guild_id, []).append(subscription)
        return subscription

    def publish(self, event: MembershipEvent) -> int:
        """
        Call every handler subscribed to the event's guild.

        Handlers must not block. A failing handler is logged and does not stop
        delivery to the others.

        Returns:
            Number of handlers called
        """
        delivered = 0
        # Snapshot: handlers may unsubscribe while we iterate
        for subscription in list(self._subscriptions.get(event.guild_id, ())):
            if not subscription.active:
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(f"Membership handler failed for {event}: {e}", exc_info=True)
            delivered += 1
        return delivered

    def subscriber_count(self, guild_id: int | None = None) -> int:
        if guild_id is not None:
            return len(self._subscriptions.get(guild_id, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.guild_id)
        if not subs:
            return
        if subscription in subs:
            subs.remove(subscription)
        if not subs:
            del self._subscriptions[subscription.guild_id]
