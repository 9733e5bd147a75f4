# -------------------------------------------------------------- #
# Capture Errors
# -------------------------------------------------------------- #


class CaptureError(Exception):
    """Base class for every capture pipeline failure."""


class SetupError(CaptureError):
    """The pipeline could not be built; no session was registered."""


class SubscriptionFailed(SetupError):
    """The voice transport refused or failed the speaker subscription."""


class DecoderInitFailed(SetupError):
    """The frame decoder could not be constructed."""


class StreamError(CaptureError):
    """A fault in the transport or decoder while audio was flowing."""


class DecoderFailed(StreamError):
    """A frame could not be decoded."""


class EncodeError(CaptureError):
    """The encoder did not produce a finished artifact."""


class AlreadyActive(CaptureError):
    """Another capture already owns this speaker.

    This is a normal concurrency outcome: the caller lost the race and must
    treat the speaker as already handled.
    """

    def __init__(self, key):
        super().__init__(f"Capture already active for {key}")
        self.key = key
