"""Error definitions for the build-load-publish pipeline.

Every error carries a stable ``code`` so callers (and the CLI) can handle
failures programmatically. Context is attached with ``add_note`` rather than
by re-wrapping, so the error type survives as it propagates upward.
"""

from __future__ import annotations

# Error code constants
PARSE_ERROR = "parse_error"
NO_OUTPUT = "no_output"
BUILD_FAILED = "build_failed"
PROTOCOL_ERROR = "protocol_error"
NO_LOADED_REF = "no_loaded_ref"
LOAD_FAILED = "load_failed"
PRODUCER_FAILED = "producer_failed"
STREAM_DRAIN_FAILED = "stream_drain_failed"
TAG_FAILED = "tag_failed"
PUSH_FAILED = "push_failed"
UNSUPPORTED_OPERATION = "unsupported_operation"
CANCELLED = "cancelled"
INVALID_REFERENCE = "invalid_reference"
INVALID_PLATFORM = "invalid_platform"
DAEMON_ERROR = "daemon_error"


class NixContainersError(Exception):
    """Base error for all pipeline failures."""

    default_code = "error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class ParseError(NixContainersError):
    """Raised when builder output is not a well-formed JSON array."""

    default_code = PARSE_ERROR


class NoOutputError(NixContainersError):
    """Raised when the builder succeeded but reported no output path."""

    default_code = NO_OUTPUT


class BuildFailedError(NixContainersError):
    """Raised when the builder process fails or exits non-zero."""

    default_code = BUILD_FAILED

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code


class ProtocolError(NixContainersError):
    """Raised when the daemon's load stream violates its contract."""

    default_code = PROTOCOL_ERROR


class NoLoadedRefError(NixContainersError):
    """Raised when the load stream ends without naming a loaded image."""

    default_code = NO_LOADED_REF


class LoadError(NixContainersError):
    """Raised when the daemon reports a failure while loading an image."""

    default_code = LOAD_FAILED


class ProducerFailedError(NixContainersError):
    """Raised when the image-stream producer fails or exits non-zero."""

    default_code = PRODUCER_FAILED

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code


class StreamDrainError(NixContainersError):
    """Raised when reading a subprocess diagnostic stream fails."""

    default_code = STREAM_DRAIN_FAILED


class TagError(NixContainersError):
    """Raised when tagging or untagging an image in the daemon fails."""

    default_code = TAG_FAILED


class PushError(NixContainersError):
    """Raised when writing an image or index to the registry fails."""

    default_code = PUSH_FAILED


class UnsupportedOperationError(NixContainersError):
    """Raised for multi-platform builds that are not pushed."""

    default_code = UNSUPPORTED_OPERATION


class OperationCancelledError(NixContainersError):
    """Raised when work stops because its cancellation scope was cancelled."""

    default_code = CANCELLED


class InvalidReferenceError(NixContainersError, ValueError):
    """Raised for image references that cannot be parsed."""

    default_code = INVALID_REFERENCE


class InvalidPlatformError(NixContainersError, ValueError):
    """Raised for platform strings that cannot be parsed."""

    default_code = INVALID_PLATFORM


class DaemonError(NixContainersError):
    """Raised when the container daemon cannot be reached or queried."""

    default_code = DAEMON_ERROR


def describe(exc: BaseException) -> str:
    """Render an error message followed by its notes, innermost context last.

    Args:
        exc: Exception to describe.

    Returns:
        A single descriptive string.
    """
    notes = getattr(exc, "__notes__", None) or []
    parts = [*reversed(notes), str(exc)]
    return ": ".join(p for p in parts if p)


__all__ = [
    "BuildFailedError",
    "DaemonError",
    "InvalidPlatformError",
    "InvalidReferenceError",
    "LoadError",
    "NixContainersError",
    "NoLoadedRefError",
    "NoOutputError",
    "OperationCancelledError",
    "ParseError",
    "ProducerFailedError",
    "ProtocolError",
    "PushError",
    "StreamDrainError",
    "TagError",
    "UnsupportedOperationError",
    "describe",
]
