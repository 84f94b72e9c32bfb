"""
Error Taxonomy
==============

Exceptions raised by the capture, detection and orchestration layers.

Categories:
    - Configuration errors: fatal to the call that raised them, never retried
    - Transient stream errors: retried locally, then surfaced as non-fatal
    - Per-frame errors: always recovered inside the pipeline

Callers classify failures by exception type, never by message text.
"""


class StreamwatchError(Exception):
    """Base class for all streamwatch errors."""
    pass


# =============================================================================
# Configuration
# =============================================================================

class ConfigurationError(StreamwatchError):
    """Raised when a channel, config or stream URL is missing or invalid."""
    pass


class InvalidStreamUrlError(ConfigurationError):
    """Raised when a stream URL fails the source allow-list."""
    pass


# =============================================================================
# Capture
# =============================================================================

class CaptureError(StreamwatchError):
    """Raised when the frame capture subprocess cannot be driven."""
    pass


class ProcessSpawnError(CaptureError):
    """Raised when the decoder subprocess cannot be started at all."""
    pass


class TransientStreamError(CaptureError):
    """
    Stream failure that may heal on its own.

    The orchestrator demotes a channel that fails with one of these
    to pending and retries it from the liveness poll.
    """
    pass


class CaptureTimeoutError(TransientStreamError):
    """Raised when no frame arrives within the connection timeout."""

    def __init__(self, message: str = "Connection timeout") -> None:
        super().__init__(message)


class ReconnectExhaustedError(TransientStreamError):
    """Raised when the reconnect budget is used up."""

    def __init__(self, message: str = "Max reconnection attempts reached") -> None:
        super().__init__(message)


class StreamEndedError(TransientStreamError):
    """Raised when the decoder subprocess exits unexpectedly."""

    def __init__(self, message: str = "Stream ended", returncode=None) -> None:
        super().__init__(message)
        self.returncode = returncode


# =============================================================================
# Detection
# =============================================================================

class InferenceError(StreamwatchError):
    """Raised when the inference engine fails on a single frame."""
    pass


class LivenessCheckError(StreamwatchError):
    """Raised when the stream status API cannot be reached."""
    pass
