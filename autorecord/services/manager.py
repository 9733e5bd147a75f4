from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from autorecord.context import Context


# -------------------------------------------------------------- #
# Services Manager Class
# -------------------------------------------------------------- #


class ServicesManager:
    """Manager for handling multiple service instances."""

    def __init__(
        self,
        context: Context,
        logging_service: BaseAsyncLoggingService,
        ffmpeg_service_manager: BaseFFmpegServiceManager,
        trigger_store_service: BaseTriggerStoreServiceManager,
        capture_service_manager: BaseCaptureServiceManager,
        membership_controller_service: BaseMembershipControllerServiceManager | None = None,
    ):
        self.context = context

        self.logging_service = logging_service

        # Encoding
        self.ffmpeg_service_manager = ffmpeg_service_manager

        # Auto-record rules
        self.trigger_store_service = trigger_store_service

        # Per-speaker captures
        self.capture_service_manager = capture_service_manager

        # Membership driven watches
        self.membership_controller_service = membership_controller_service

    async def initialize_all(self) -> None:
        """Initialize all service managers."""

        # Logging
        await self.logging_service.on_start(self)

        # Leaf services
        await self.ffmpeg_service_manager.on_start(self)
        await self.trigger_store_service.on_start(self)

        # Capture
        await self.capture_service_manager.on_start(self)

        # Membership controller
        if self.membership_controller_service:
            await self.membership_controller_service.on_start(self)

    async def shutdown_all(self, timeout: float = 60.0) -> None:
        """
        Gracefully shutdown all service managers, waiting for ongoing work to complete.

        This method ensures that:
        1. No new watches or captures are started
        2. Channel watches are torn down (connections destroyed)
        3. Remaining captures are stopped and their encoders drained
        4. Leaf services are closed
        5. All logs are flushed

        Args:
            timeout: Maximum time in seconds to wait for services to shutdown (default: 60s)
        """
        await self.logging_service.info("=" * 60)
        await self.logging_service.info("Starting graceful shutdown of all services...")

        # Mark context as shutting down to prevent new operations
        if self.context:
            self.context.mark_shutdown_started()
            await self.logging_service.info("✓ Shutdown flag set - no new operations will start")

        try:
            # Phase 1: Tear down channel watches (stops their captures)
            await self.logging_service.info("Phase 1: Tearing down channel watches...")
            if self.membership_controller_service:
                await asyncio.wait_for(
                    self.membership_controller_service.on_close(), timeout=timeout * 0.4
                )
                await self.logging_service.info("✓ All channel watches torn down")

            # Phase 2: Stop any captures started outside a watch (manual /join)
            await self.logging_service.info("Phase 2: Stopping remaining capture sessions...")
            await asyncio.wait_for(self.capture_service_manager.on_close(), timeout=timeout * 0.4)
            await self.logging_service.info("✓ All capture sessions stopped")

            # Phase 3: Close leaf services
            await self.logging_service.info("Phase 3: Closing leaf services...")
            await asyncio.wait_for(self.ffmpeg_service_manager.on_close(), timeout=timeout * 0.1)
            await self.trigger_store_service.on_close()
            await self.logging_service.info("✓ Leaf services closed")

            await self.logging_service.info("✓ Graceful shutdown completed successfully")
            await self.logging_service.info("=" * 60)

        except asyncio.TimeoutError:
            await self.logging_service.error(
                f"⚠️  Shutdown timeout exceeded ({timeout}s) - forcing shutdown"
            )
        except Exception as e:
            await self.logging_service.error(f"⚠️  Error during shutdown: {e}")
            # Give logging a moment to flush the error
            await asyncio.sleep(0.1)

        # Phase 4: Always flush and close logging (even if there were errors)
        try:
            await asyncio.wait_for(self.logging_service.on_close(), timeout=5.0)
        except asyncio.TimeoutError:
            pass  # Don't wait forever for logging to flush
        except Exception:
            pass  # Suppress any logging errors during shutdown


# -------------------------------------------------------------- #
# Base Service Manager Class
# -------------------------------------------------------------- #


class Manager(ABC):
    """Base class for all manager services."""

    def __init__(self, context: Context):
        self.context = context
        self.services: ServicesManager | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        """Actions to perform on manager start."""
        self.services = services

    async def on_close(self) -> None:
        """Actions to perform on manager close."""
        pass


# -------------------------------------------------------------- #
# Specialized Manager Classes
# -------------------------------------------------------------- #


class BaseAsyncLoggingService(Manager):
    """Specialized manager for asynchronous logging services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def log(self, message: str, level: str = "INFO") -> None:
        """Log a message asynchronously."""
        pass

    @abstractmethod
    async def debug(self, message: str) -> None:
        """Log a debug message asynchronously."""
        pass

    @abstractmethod
    async def info(self, message: str) -> None:
        """Log an info message asynchronously."""
        pass

    @abstractmethod
    async def warning(self, message: str) -> None:
        """Log a warning message asynchronously."""
        pass

    @abstractmethod
    async def error(self, message: str) -> None:
        """Log an error message asynchronously."""
        pass

    @abstractmethod
    async def critical(self, message: str) -> None:
        """Log a critical message asynchronously."""
        pass


class BaseFFmpegServiceManager(Manager):
    """Specialized manager for FFmpeg services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    def get_ffmpeg_path(self) -> str:
        """Get the FFmpeg executable path."""
        pass

    @abstractmethod
    def create_encoder_stream(self, output_path: str, options: Any) -> Any:
        """Create a PCM -> container encoder stream writing to output_path."""
        pass


class BaseTriggerStoreServiceManager(Manager):
    """Specialized manager for the auto-record trigger store."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def list(self) -> list:
        """Return every stored trigger."""
        pass

    @abstractmethod
    async def add(self, trigger: Any) -> None:
        """Persist a new trigger."""
        pass

    @abstractmethod
    async def remove(self, guild_id: int, user_id: int, channel_id: int | None = None) -> int:
        """Remove matching triggers and return how many were removed."""
        pass


class BaseCaptureServiceManager(Manager):
    """Specialized manager for per-speaker capture sessions."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def start_capture(
        self,
        connection: Any,
        guild_id: int,
        channel_id: int,
        user_id: int,
        options: Any | None = None,
    ) -> Any:
        """Start capturing one speaker on an existing voice connection."""
        pass

    @abstractmethod
    async def stop_capture(self, guild_id: int, user_id: int, wait: bool = True) -> Any:
        """Stop capturing one speaker."""
        pass

    @abstractmethod
    async def stop_channel(self, guild_id: int, channel_id: int) -> list:
        """Stop every capture running in a channel."""
        pass

    @abstractmethod
    def is_capturing(self, guild_id: int, user_id: int) -> bool:
        """Check whether a speaker currently has a capture entry."""
        pass


class BaseMembershipControllerServiceManager(Manager):
    """Specialized manager for membership driven channel watches."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    def handle_event(self, event: Any) -> None:
        """Accept a membership change without blocking the caller."""
        pass

    @abstractmethod
    def rearm(self, guild_id: int, user_id: int, channel_id: int) -> None:
        """Allow a torn down trigger to start a new watch."""
        pass
