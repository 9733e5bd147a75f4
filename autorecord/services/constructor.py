import os
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from autorecord.context import Context
    from autorecord.services.voice_transport.base import VoiceTransport

from autorecord.services.capture.decoder import decoder_factory_for
from autorecord.services.capture.manager import CaptureManagerService
from autorecord.services.capture.options import CaptureConstants, CaptureOptions
from autorecord.services.ffmpeg_manager.manager import FFmpegManagerService
from autorecord.services.logger import AsyncLoggingService
from autorecord.services.manager import ServicesManager
from autorecord.services.membership.manager import MembershipControllerService
from autorecord.services.trigger_store.manager import TriggerStoreService
from autorecord.utils import parse_bool_env

# prefer a project-local .env.local file
load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Defaults
# -------------------------------------------------------------- #

DEFAULT_RECORDING_STORAGE_PATH = os.path.join("assets", "data", "recordings")
DEFAULT_TRIGGER_STORE_PATH = os.path.join("assets", "data", "triggers.json")


def _optional_int(value: str | None) -> int | None:
    if value is None or value.strip() == "":
        return None
    return int(value)


def _optional_float(value: str | None) -> float | None:
    if value is None or value.strip() == "":
        return None
    return float(value)


def load_capture_options() -> CaptureOptions:
    """Build the default capture options from the environment."""
    return CaptureOptions(
        format=os.getenv("RECORDING_FORMAT", CaptureConstants.DEFAULT_FORMAT),
        bitrate=int(os.getenv("RECORDING_BITRATE_KBPS", CaptureConstants.DEFAULT_BITRATE_KBPS)),
        tempo=_optional_float(os.getenv("RECORDING_TEMPO")),
    )


# -------------------------------------------------------------- #
# Constructor for Services Manager
# -------------------------------------------------------------- #


def construct_services_manager(
    context: "Context",
    transport: "VoiceTransport",
    recording_storage_path: str | None = None,
    trigger_store_path: str | None = None,
    default_logging_path: str = "logs",
    log_file: str | None = None,
    use_timestamp_logs: bool = True,
) -> ServicesManager:
    """Construct the services manager and every service it owns.

    Args:
        context: Context instance containing the bot and services
        transport: Voice transport used by the membership controller
        recording_storage_path: Root directory for finished recordings
            (default: RECORDING_STORAGE_PATH or assets/data/recordings)
        trigger_store_path: JSON file holding auto-record triggers
            (default: TRIGGER_STORE_PATH or assets/data/triggers.json)
        default_logging_path: Directory to store log files (default: "logs")
        log_file: Specific log file name (optional, overrides use_timestamp_logs)
        use_timestamp_logs: If True and log_file is None, creates timestamped log files
    """
    recording_storage_path = recording_storage_path or os.getenv(
        "RECORDING_STORAGE_PATH", DEFAULT_RECORDING_STORAGE_PATH
    )
    trigger_store_path = trigger_store_path or os.getenv(
        "TRIGGER_STORE_PATH", DEFAULT_TRIGGER_STORE_PATH
    )

    # create logger
    logging_service = AsyncLoggingService(
        context=context,
        log_dir=default_logging_path,
        log_file=log_file,
        use_timestamp=use_timestamp_logs,
        min_level=os.getenv("LOG_LEVEL", "DEBUG"),
    )

    ffmpeg_service_manager = FFmpegManagerService(
        context=context, ffmpeg_path=os.getenv("FFMPEG_PATH")
    )

    trigger_store_service = TriggerStoreService(context=context, store_path=trigger_store_path)

    capture_service_manager = CaptureManagerService(
        context=context,
        storage_path=recording_storage_path,
        recording_channel_id=_optional_int(os.getenv("RECORDING_CHANNEL_ID")),
        decoder_factory=decoder_factory_for(transport.frame_encoding),
        default_options=load_capture_options(),
    )

    membership_controller_service = MembershipControllerService(
        context=context,
        transport=transport,
        rearm_after_teardown=parse_bool_env(
            os.getenv("AUTORECORD_REARM_AFTER_TEARDOWN"), default=True
        ),
    )

    return ServicesManager(
        context=context,
        logging_service=logging_service,
        ffmpeg_service_manager=ffmpeg_service_manager,
        trigger_store_service=trigger_store_service,
        capture_service_manager=capture_service_manager,
        membership_controller_service=membership_controller_service,
    )
