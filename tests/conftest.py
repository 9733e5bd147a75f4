"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides
fixtures and configuration that can be used across all tests.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from autorecord.context import Context
from autorecord.services.capture.manager import CaptureManagerService
from autorecord.services.manager import ServicesManager
from autorecord.services.membership.manager import MembershipControllerService
from autorecord.services.trigger_store.manager import TriggerStoreService
from tests.fakes import FakeFFmpegService, FakeTransport

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom settings and markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Apply a timeout to every test except those marked as slow."""
    for item in items:
        if "slow" not in item.keywords:
            item.add_marker(pytest.mark.timeout(30))


# ============================================================================
# Discord Mocks
# ============================================================================


@pytest.fixture
def mock_discord_bot() -> MagicMock:
    """Create a mock Discord bot instance."""
    bot = MagicMock()
    bot.user = MagicMock()
    bot.user.name = "TestBot"
    bot.user.id = 123456789
    bot.guilds = []
    bot.get_channel = MagicMock(return_value=None)
    bot.fetch_channel = AsyncMock()
    return bot


@pytest.fixture
def mock_discord_context() -> MagicMock:
    """Create a mock Discord application context (py-cord)."""
    ctx = MagicMock()
    ctx.author = MagicMock()
    ctx.author.name = "TestUser"
    ctx.author.id = 987654321
    ctx.author.voice = None
    ctx.guild = MagicMock()
    ctx.guild.id = 111222333
    ctx.guild.name = "Test Guild"
    ctx.guild_id = 111222333
    ctx.defer = AsyncMock()
    ctx.respond = AsyncMock()
    ctx.followup = MagicMock()
    ctx.followup.send = AsyncMock()
    return ctx


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def mock_logging_service() -> MagicMock:
    """Logging service whose methods are awaitable no-ops."""
    service = MagicMock()
    for name in ("on_start", "on_close", "log", "debug", "info", "warning", "error", "critical"):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture
async def services(tmp_path, mock_logging_service, fake_transport):
    """
    A fully wired ServicesManager backed by in-memory fakes.

    The capture manager, trigger store and membership controller are the real
    implementations; only the voice transport and ffmpeg are replaced.
    """
    context = Context()

    services_manager = ServicesManager(
        context=context,
        logging_service=mock_logging_service,
        ffmpeg_service_manager=FakeFFmpegService(context),
        trigger_store_service=TriggerStoreService(
            context, store_path=str(tmp_path / "triggers.json")
        ),
        capture_service_manager=CaptureManagerService(
            context, storage_path=str(tmp_path / "recordings")
        ),
        membership_controller_service=MembershipControllerService(context, fake_transport),
    )
    context.set_services_manager(services_manager)
    await services_manager.initialize_all()

    yield services_manager

    if not context.is_shutting_down():
        await services_manager.shutdown_all(timeout=5.0)
