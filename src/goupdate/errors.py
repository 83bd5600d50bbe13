"""Exception hierarchy for the update pipeline.

Transient failures are raised inside poll attempts and absorbed by the
poller. Everything else is terminal and propagates to the caller with the
operation and resource named in the message.
"""

from __future__ import annotations


class UpdateError(Exception):
    """Base exception for all update pipeline errors."""


class TransientError(UpdateError):
    """A retryable failure inside a single poll attempt."""


class DeadlineExceededError(UpdateError):
    """The pipeline deadline expired or was cancelled."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation}: deadline exceeded")
        self.operation = operation


class PollTimeoutError(UpdateError):
    """The retry budget elapsed before the operation succeeded."""

    def __init__(self, operation: str, timeout: float, last_error: BaseException | None) -> None:
        message = f"{operation}: timed out after {timeout:g}s"
        if last_error is not None:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)
        self.operation = operation
        self.timeout = timeout
        self.last_error = last_error


class VersionParseError(UpdateError, ValueError):
    """A version string is malformed or the installed version cannot be read."""


class ReleaseFeedError(UpdateError):
    """The release feed could not be fetched or decoded."""


class NoStableReleaseError(UpdateError):
    """The release feed contains no matching stable release."""


class DownloadError(UpdateError):
    """The release archive could not be downloaded."""


class ChecksumFetchError(UpdateError):
    """The published checksum could not be fetched."""


class ChecksumMismatchError(UpdateError):
    """The downloaded archive does not match its published checksum."""


class InstallError(UpdateError):
    """An installer stage failed."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class PathTraversalError(InstallError):
    """An archive entry resolves outside the install root."""

    def __init__(self, entry_name: str, root: str) -> None:
        super().__init__(
            "extract_archive",
            f"invalid tar entry (path traversal attempt): {entry_name!r} escapes {root}",
        )
        self.entry_name = entry_name


class VerificationError(UpdateError):
    """Running the installed entry point failed."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(f"{message}: {output.strip()}" if output.strip() else message)
        self.output = output


class VerificationTimeoutError(VerificationError):
    """The installed entry point did not exit before the deadline."""
