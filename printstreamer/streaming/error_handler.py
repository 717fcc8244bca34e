"""
Error classification for encoder supervision and the broadcast provider.

Every failure seen by a supervisor or the readiness loop is mapped to an
ErrorKind which decides whether it is retried, surfaced or ignored.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Classification of error kinds."""

    START_FAILED = "start_failed"  # Child process could not be launched
    PEER_CLOSED = "peer_closed"  # Client disconnect, pipe reset
    AUTH_FAILED = "auth_failed"  # OAuth refresh or credentials rejected
    REMOTE_RETRYABLE = "remote_retryable"  # Provider 5xx, redundantTransition
    REMOTE_FATAL = "remote_fatal"  # Invalid argument, permission denied
    BLOCKED = "blocked"  # Command rejected by disallowed prefix
    CONFIRMATION_REQUIRED = "confirmation_required"
    TIMEOUT = "timeout"  # Ingestion wait ran out
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"  # Recoverable, can retry
    MEDIUM = "medium"  # May require configuration change
    HIGH = "high"  # Requires manual intervention
    CRITICAL = "critical"  # System failure


class EncoderStartError(Exception):
    """The encoder child process could not be launched."""

    def __init__(self, message: str, argv: list[str] | None = None):
        super().__init__(message)
        self.argv = argv or []


class ProviderError(Exception):
    """Error returned by the broadcast provider."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        status_code: int | None = None,
        reason: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.reason = reason

    @property
    def is_retryable(self) -> bool:
        return self.kind in (ErrorKind.REMOTE_RETRYABLE, ErrorKind.TIMEOUT, ErrorKind.UNKNOWN)


class AuthenticationError(ProviderError):
    """Provider authentication failed."""

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message, kind=ErrorKind.AUTH_FAILED, reason=reason)


@dataclass
class StreamError:
    """A classified error with context."""

    kind: ErrorKind
    severity: ErrorSeverity
    message: str
    original_exception: Exception | None = None
    context: dict[str, Any] | None = None
    timestamp: datetime | None = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)
        if self.context is None:
            self.context = {}

    @property
    def is_retryable(self) -> bool:
        return self.kind in (
            ErrorKind.START_FAILED,
            ErrorKind.REMOTE_RETRYABLE,
            ErrorKind.TIMEOUT,
            ErrorKind.UNKNOWN,
        )


_RETRYABLE_REASONS = (
    "redundanttransition",
    "backenderror",
    "internalerror",
    "ratelimitexceeded",
    "userratelimitexceeded",
)

_FATAL_REASONS = (
    "invalidargument",
    "forbidden",
    "insufficientpermissions",
    "livestreamingnotenabled",
    "livebroadcastnotfound",
    "invalidtransition",
)


class ErrorClassifier:
    """Classifies exceptions into ErrorKind and severity."""

    @staticmethod
    def classify(error: Exception, context: dict[str, Any] | None = None) -> StreamError:
        """
        Classify an exception into a StreamError.

        Args:
            error: The exception to classify.
            context: Additional context about the error.

        Returns:
            StreamError with classified kind and severity.
        """
        message = str(error)
        error_str = message.lower()

        if isinstance(error, AuthenticationError):
            return StreamError(ErrorKind.AUTH_FAILED, ErrorSeverity.HIGH, message, error, context)

        if isinstance(error, ProviderError) and error.kind != ErrorKind.UNKNOWN:
            severity = ErrorSeverity.LOW if error.is_retryable else ErrorSeverity.HIGH
            return StreamError(error.kind, severity, message, error, context)

        if isinstance(error, EncoderStartError) or isinstance(error, FileNotFoundError):
            return StreamError(ErrorKind.START_FAILED, ErrorSeverity.MEDIUM, message, error, context)

        if isinstance(error, (BrokenPipeError, ConnectionResetError)):
            return StreamError(ErrorKind.PEER_CLOSED, ErrorSeverity.LOW, message, error, context)

        if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
            return StreamError(ErrorKind.TIMEOUT, ErrorSeverity.LOW, message, error, context)

        if isinstance(error, httpx.HTTPStatusError):
            code = error.response.status_code
            if code == 401:
                return StreamError(ErrorKind.AUTH_FAILED, ErrorSeverity.HIGH, message, error, context)
            if code >= 500 or code == 429:
                return StreamError(ErrorKind.REMOTE_RETRYABLE, ErrorSeverity.LOW, message, error, context)
            return StreamError(ErrorKind.REMOTE_FATAL, ErrorSeverity.HIGH, message, error, context)

        if isinstance(error, httpx.TransportError):
            return StreamError(ErrorKind.REMOTE_RETRYABLE, ErrorSeverity.LOW, message, error, context)

        compact = error_str.replace(" ", "")
        if any(reason in compact for reason in _RETRYABLE_REASONS):
            kind, severity = ErrorKind.REMOTE_RETRYABLE, ErrorSeverity.LOW
        elif any(reason in compact for reason in _FATAL_REASONS):
            kind, severity = ErrorKind.REMOTE_FATAL, ErrorSeverity.HIGH
        elif any(term in error_str for term in ["invalid_grant", "unauthorized", "401"]):
            kind, severity = ErrorKind.AUTH_FAILED, ErrorSeverity.HIGH
        elif any(term in error_str for term in ["broken pipe", "connection reset", "peer closed"]):
            kind, severity = ErrorKind.PEER_CLOSED, ErrorSeverity.LOW
        elif any(term in error_str for term in ["timeout", "timed out"]):
            kind, severity = ErrorKind.TIMEOUT, ErrorSeverity.LOW
        elif any(code in error_str for code in ["500", "502", "503", "504"]):
            kind, severity = ErrorKind.REMOTE_RETRYABLE, ErrorSeverity.LOW
        else:
            kind, severity = ErrorKind.UNKNOWN, ErrorSeverity.MEDIUM

        return StreamError(kind, severity, message, error, context)


def compute_backoff(
    failures: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
) -> float:
    """
    Exponential backoff delay in seconds.

    ``min(base * 2^(failures-1), cap)`` plus a uniform jitter in
    ``[0, jitter]``.
    """
    exponent = max(0, failures - 1)
    # Avoid float overflow for long failure streaks
    delay = cap if exponent >= 32 else min(base * (2 ** exponent), cap)
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return delay
