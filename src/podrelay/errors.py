"""Error taxonomy shared by every resolver component.

``PodRelayError`` carries a machine-readable ``code`` and a ``recoverable``
flag so callers can pick a cache policy without inspecting messages:
network failures and timeouts are recoverable (retry later, serve stale),
parse, config and cancellation errors are not.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from podrelay.models import BatchResult


class ErrorCode(StrEnum):
    NETWORK_ERROR = "NETWORK_ERROR"
    HTTP_STATUS = "HTTP_STATUS"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    PARSE_ERROR = "PARSE_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    FEED_UNAVAILABLE = "FEED_UNAVAILABLE"
    INVALID_INPUT = "INVALID_INPUT"


class PodRelayError(Exception):
    """Base class for every error raised across a podrelay component boundary."""

    code: ErrorCode = ErrorCode.NETWORK_ERROR
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": str(self.code),
            "message": self.message,
            "recoverable": self.recoverable,
        }


class NetworkError(PodRelayError):
    """Connection failure, CORS-style rejection or non-2xx response."""

    code = ErrorCode.NETWORK_ERROR
    recoverable = True

    def __init__(self, message: str, *, status: int | None = None, reason: str = "") -> None:
        super().__init__(
            message,
            code=ErrorCode.HTTP_STATUS if status is not None else ErrorCode.NETWORK_ERROR,
        )
        self.status = status
        # Short diagnostic tag, e.g. "http_404" or "proxy_http_502".
        self.reason = reason or (f"http_{status}" if status is not None else "fetch_failed")


class FetchTimeoutError(PodRelayError):
    """A self-imposed deadline expired. Distinct from caller cancellation."""

    code = ErrorCode.TIMEOUT
    recoverable = True

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(message)


class CancellationError(PodRelayError):
    """The caller's cancellation signal fired. Never retried, never cached."""

    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class BatchCancelledError(CancellationError):
    """A recommendation batch was cancelled after making some progress.

    ``partial`` holds the groups and tried categories reached before the
    signal fired.
    """

    def __init__(self, partial: BatchResult, message: str = "Operation cancelled") -> None:
        super().__init__(message)
        self.partial = partial


class ParseError(PodRelayError):
    """Malformed JSON or XML."""

    code = ErrorCode.PARSE_ERROR


class ConfigError(PodRelayError):
    """Missing or invalid target URL or proxy base."""

    code = ErrorCode.CONFIG_ERROR


class FeedUnavailableError(PodRelayError):
    """The feed cannot be fetched and parsed from this execution context."""

    code = ErrorCode.FEED_UNAVAILABLE
    recoverable = True

    def __init__(self, feed_url: str, *, reason: str = "fetch_failed") -> None:
        super().__init__(f"Feed cannot be fetched from here: {feed_url}")
        self.feed_url = feed_url
        self.reason = reason
