"""Exceptions raised by the sandbox runner.

Every failure of a run is terminal: nothing is retried. Engine errors are
chained as ``__cause__``.
"""


class SandboxError(Exception):
    """Base exception for sandbox errors."""


class LanguageNotSupportedError(SandboxError):
    """Raised when no descriptor is registered for the requested language."""

    def __init__(self, language: str):
        self.language = language
        super().__init__(f"{language!r} is not supported")


class ProvisioningError(SandboxError):
    """Raised when a language's base image cannot be pulled."""


class ContainerCreationError(SandboxError):
    """Raised when the engine rejects container creation."""


class SourceInjectionError(SandboxError):
    """Raised when the source archive cannot be built or copied in."""


class ContainerStartError(SandboxError):
    """Raised when the engine fails to start a created container."""


class StreamProtocolError(SandboxError):
    """Raised when the multiplexed log stream is malformed."""


class UnknownFrameTypeError(StreamProtocolError):
    """Raised for a frame whose stream tag is neither stdout nor stderr."""

    def __init__(self, stream_type: int):
        self.stream_type = stream_type
        super().__init__(f"unknown frame type: {stream_type}")


class TruncatedFrameError(StreamProtocolError):
    """Raised when the stream ends in the middle of a frame payload."""


class LogStreamError(SandboxError):
    """Raised when the log stream cannot be attached or read."""


class ContainerWaitError(SandboxError):
    """Raised on an engine failure while awaiting container exit."""


class SandboxTimeoutError(SandboxError, TimeoutError):
    """Raised when the caller's deadline elapses before the run completes."""


class CleanupError(SandboxError):
    """Raised when a container could not be removed after a successful run."""
