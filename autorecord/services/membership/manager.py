import asyncio
from contextlib import suppress
from enum import Enum
from typing import TYPE_CHECKING

from autorecord.services.capture.errors import AlreadyActive, SetupError
from autorecord.services.manager import BaseMembershipControllerServiceManager
from autorecord.services.membership.events import EventBus, MembershipEvent, Subscription
from autorecord.services.trigger_store.manager import Trigger, TriggerStoreError
from autorecord.services.voice_transport.base import (
    TransportError,
    VoiceConnection,
    VoiceTransport,
)

if TYPE_CHECKING:
    from autorecord.context import Context
    from autorecord.services.manager import ServicesManager


# -------------------------------------------------------------- #
# Channel Watch
# -------------------------------------------------------------- #


class WatchState(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    TORN_DOWN = "torn_down"


class WatchCommand(Enum):
    ACTIVATE = "activate"
    TEARDOWN = "teardown"


class ChannelWatch:
    """
    State for one tracked channel under one trigger.

    All work for a watch runs on its own worker, one queue item at a time, so
    a join and a leave for the same user are applied in arrival order. Other
    watches and the event source are never blocked by it.
    """

    def __init__(self, trigger: Trigger, predecessor: "ChannelWatch | None" = None):
        self.trigger = trigger
        self.state = WatchState.IDLE
        self.connection: VoiceConnection | None = None
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker: asyncio.Task | None = None
        self.subscription: Subscription | None = None
        self.predecessor = predecessor
        self.closed = asyncio.Event()
        # Set as soon as a teardown is queued, before the worker reaches it
        self.closing = False

    def __repr__(self) -> str:
        return (
            f"ChannelWatch(guild={self.guild_id}, channel={self.channel_id}, "
            f"trigger_user={self.trigger.user_id}, state={self.state.value})"
        )

    @property
    def guild_id(self) -> int:
        return self.trigger.guild_id

    @property
    def channel_id(self) -> int:
        return self.trigger.channel_id

    @property
    def key(self) -> tuple[int, int]:
        return (self.guild_id, self.channel_id)

    def on_event(self, event: MembershipEvent) -> None:
        """Event bus handler. Only queues; never blocks the dispatcher."""
        if self.state == WatchState.TORN_DOWN or not event.touches(self.channel_id):
            return
        if event.left(self.channel_id) and event.user_id == self.trigger.user_id:
            self.closing = True
        self.queue.put_nowait(event)


# -------------------------------------------------------------- #
# Membership Controller Service
# -------------------------------------------------------------- #


class MembershipControllerService(BaseMembershipControllerServiceManager):
    """
    Starts and stops captures as members enter and leave tracked channels.

    Events are queued per guild and handled by one dispatcher task per guild,
    which keeps them in arrival order within a guild. The dispatcher publishes
    each event to the watches subscribed for that guild and evaluates the
    triggers for channel entries.

    After a watch is torn down, ``rearm_after_teardown`` decides what happens
    when its triggering user comes back: True starts a fresh watch, False
    leaves the trigger disarmed until ``rearm`` is called or the bot restarts.
    """

    def __init__(
        self,
        context: "Context",
        transport: VoiceTransport,
        rearm_after_teardown: bool = True,
    ):
        super().__init__(context)

        self.transport = transport
        self.rearm_after_teardown = rearm_after_teardown
        self.event_bus = EventBus()

        self._watches: dict[tuple[int, int], ChannelWatch] = {}
        self._guild_queues: dict[int, asyncio.Queue] = {}
        self._guild_workers: dict[int, asyncio.Task] = {}
        self._disarmed: set[Trigger] = set()

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: "ServicesManager") -> None:
        await super().on_start(services)
        await self.services.logging_service.info(
            f"MembershipControllerService started (rearm_after_teardown={self.rearm_after_teardown})"
        )

    async def on_close(self) -> None:
        await self.shutdown()
        await self.services.logging_service.info("MembershipControllerService stopped")

    async def shutdown(self) -> None:
        """Tear down every watch, then stop the guild dispatchers."""
        watches = list(self._watches.values())
        for watch in watches:
            watch.closing = True
            watch.queue.put_nowait(WatchCommand.TEARDOWN)

        workers = [watch.worker for watch in watches if watch.worker is not None]
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        for task in self._guild_workers.values():
            task.cancel()
        for task in self._guild_workers.values():
            with suppress(asyncio.CancelledError):
                await task
        self._guild_workers.clear()
        self._guild_queues.clear()

    # -------------------------------------------------------------- #
    # Public Methods
    # -------------------------------------------------------------- #

    def handle_event(self, event: MembershipEvent) -> None:
        """Queue a membership change for its guild. Never blocks."""
        if event.is_bot or not event.moved:
            return
        if self.context and self.context.is_shutting_down():
            return

        queue = self._guild_queues.get(event.guild_id)
        if queue is None:
            queue = asyncio.Queue()
            self._guild_queues[event.guild_id] = queue
            self._guild_workers[event.guild_id] = asyncio.create_task(
                self._dispatch_guild(event.guild_id, queue)
            )
        queue.put_nowait(event)

    def request_teardown(self, guild_id: int, channel_id: int) -> ChannelWatch | None:
        """Queue a teardown for a channel's watch. Returns the watch, or None if there is none."""
        watch = self._watches.get((guild_id, channel_id))
        if watch is None or watch.state == WatchState.TORN_DOWN:
            return None
        watch.closing = True
        watch.queue.put_nowait(WatchCommand.TEARDOWN)
        return watch

    def rearm(self, guild_id: int, user_id: int, channel_id: int) -> None:
        self._disarmed.discard(Trigger(guild_id, user_id, channel_id))

    def is_disarmed(self, trigger: Trigger) -> bool:
        return trigger in self._disarmed

    def get_watch(self, guild_id: int, channel_id: int) -> ChannelWatch | None:
        return self._watches.get((guild_id, channel_id))

    def active_watches(self) -> list[ChannelWatch]:
        return [watch for watch in self._watches.values() if watch.state != WatchState.TORN_DOWN]

    async def wait_idle(self) -> None:
        """Wait until every queued event and watch command has been processed."""
        while True:
            for queue in list(self._guild_queues.values()):
                await queue.join()
            for watch in list(self._watches.values()):
                await watch.queue.join()
            if all(queue.empty() for queue in self._guild_queues.values()):
                return

    # -------------------------------------------------------------- #
    # Guild Dispatch
    # -------------------------------------------------------------- #

    async def _dispatch_guild(self, guild_id: int, queue: asyncio.Queue) -> None:
        while True:
            event = await queue.get()
            try:
                # Existing watches first, so a new watch never sees the event that created it
                self.event_bus.publish(event)
                if event.new_channel_id is not None:
                    await self._evaluate_triggers(event)
            except Exception as e:
                await self.services.logging_service.error(
                    f"Failed to dispatch membership event {event} in guild {guild_id}: {e}"
                )
            finally:
                queue.task_done()

    async def _evaluate_triggers(self, event: MembershipEvent) -> None:
        # Re-read every time; triggers can change while the bot runs
        try:
            triggers = await self.services.trigger_store_service.list()
        except TriggerStoreError as e:
            await self.services.logging_service.error(f"Could not load triggers: {e}")
            return

        for trigger in triggers:
            if (
                trigger.guild_id != event.guild_id
                or trigger.user_id != event.user_id
                or trigger.channel_id != event.new_channel_id
            ):
                continue

            existing = self._watches.get((trigger.guild_id, trigger.channel_id))
            if existing is not None and existing.state != WatchState.TORN_DOWN:
                if not existing.closing:
                    continue
                # The old watch still has to process its teardown
                if not self.rearm_after_teardown:
                    continue

            if trigger in self._disarmed:
                await self.services.logging_service.info(
                    f"Trigger {trigger} is disarmed after teardown, not watching"
                )
                continue

            self._create_watch(trigger, predecessor=existing)

    def _create_watch(self, trigger: Trigger, predecessor: ChannelWatch | None = None) -> ChannelWatch:
        watch = ChannelWatch(trigger, predecessor=predecessor)
        watch.subscription = self.event_bus.subscribe(trigger.guild_id, watch.on_event)
        self._watches[watch.key] = watch

        watch.queue.put_nowait(WatchCommand.ACTIVATE)
        watch.worker = asyncio.create_task(self._run_watch(watch))
        return watch

    # -------------------------------------------------------------- #
    # Watch Worker
    # -------------------------------------------------------------- #

    async def _run_watch(self, watch: ChannelWatch) -> None:
        while watch.state != WatchState.TORN_DOWN:
            item = await watch.queue.get()
            try:
                if item is WatchCommand.ACTIVATE:
                    await self._activate(watch)
                elif item is WatchCommand.TEARDOWN:
                    await self._teardown(watch)
                else:
                    await self._apply_event(watch, item)
            except Exception as e:
                await self.services.logging_service.error(f"Error in {watch}: {e}")
            finally:
                watch.queue.task_done()

        # Anything queued behind the teardown is dropped
        while not watch.queue.empty():
            watch.queue.get_nowait()
            watch.queue.task_done()

    async def _activate(self, watch: ChannelWatch) -> None:
        if watch.state != WatchState.IDLE:
            return

        # The previous watch on this channel must have released the connection
        if watch.predecessor is not None:
            await watch.predecessor.closed.wait()
            watch.predecessor = None

        try:
            watch.connection = await self.transport.join(watch.guild_id, watch.channel_id)
        except TransportError as e:
            await self.services.logging_service.error(
                f"Could not join channel {watch.channel_id} for {watch.trigger}: {e}"
            )
            self._close_watch(watch)
            return

        watch.state = WatchState.WATCHING
        members = [member for member in watch.connection.members() if not member.is_bot]
        await self.services.logging_service.info(
            f"Watching channel {watch.channel_id} in guild {watch.guild_id} "
            f"(triggered by user {watch.trigger.user_id}, {len(members)} member(s) present)"
        )

        await asyncio.gather(*(self._start_member(watch, member.user_id) for member in members))

    async def _apply_event(self, watch: ChannelWatch, event: MembershipEvent) -> None:
        if watch.state != WatchState.WATCHING:
            return

        if event.left(watch.channel_id):
            if event.user_id == watch.trigger.user_id:
                await self._teardown(watch)
                return
            await self.services.capture_service_manager.stop_capture(
                watch.guild_id, event.user_id, wait=False
            )
        elif event.joined(watch.channel_id):
            await self._start_member(watch, event.user_id)

    async def _start_member(self, watch: ChannelWatch, user_id: int) -> None:
        try:
            await self.services.capture_service_manager.start_capture(
                watch.connection, watch.guild_id, watch.channel_id, user_id
            )
        except AlreadyActive:
            await self.services.logging_service.debug(
                f"User {user_id} is already being captured in guild {watch.guild_id}"
            )
        except SetupError as e:
            await self.services.logging_service.warning(
                f"Skipping user {user_id} in channel {watch.channel_id}: {e}"
            )

    async def _teardown(self, watch: ChannelWatch) -> None:
        if watch.state == WatchState.TORN_DOWN:
            return
        was_watching = watch.state == WatchState.WATCHING
        watch.state = WatchState.TORN_DOWN

        if watch.subscription:
            watch.subscription.unsubscribe()

        try:
            if was_watching:
                results = await self.services.capture_service_manager.stop_channel(
                    watch.guild_id, watch.channel_id
                )
                await self.services.logging_service.info(
                    f"Stopped {len(results)} capture(s) in channel {watch.channel_id}"
                )
        finally:
            if watch.connection is not None:
                try:
                    await watch.connection.destroy()
                except Exception as e:
                    await self.services.logging_service.error(
                        f"Error leaving voice channel {watch.channel_id}: {e}"
                    )
            self._close_watch(watch)

        if not self.rearm_after_teardown:
            self._disarmed.add(watch.trigger)

        await self.services.logging_service.info(f"Tore down watch on channel {watch.channel_id}")

    def _close_watch(self, watch: ChannelWatch) -> None:
        watch.state = WatchState.TORN_DOWN
        if watch.subscription:
            watch.subscription.unsubscribe()
        if self._watches.get(watch.key) is watch:
            del self._watches[watch.key]
        watch.closed.set()
