"""Structured errors — one exception type, a closed set of kinds.

Every failure that reaches a route handler is a ``RelayError``. The kind
decides retry behaviour and the HTTP status; the code is a finer-grained
tag for clients and logs.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Closed enumeration of failure causes."""

    VALIDATION = "validation"
    UPSTREAM_HTTP = "upstream_http"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    INPUT_REQUIRED = "INPUT_REQUIRED"
    INPUT_INVALID_FORMAT = "INPUT_INVALID_FORMAT"
    CONFIG_MISSING = "CONFIG_MISSING"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_TIMEOUT = "API_TIMEOUT"
    API_INVALID_RESPONSE = "API_INVALID_RESPONSE"
    API_SERVER_ERROR = "API_SERVER_ERROR"
    API_NETWORK_ERROR = "API_NETWORK_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Upstream statuses worth another attempt.
RETRYABLE_STATUSES = frozenset({408, 425, 429})

_GENERIC_MESSAGE = "An unexpected error occurred. Please try again."


class RelayError(Exception):
    """A categorized failure.

    Attributes:
        kind: which ``ErrorKind`` this is
        code: specific ``ErrorCode``
        message: human-readable summary
        status: HTTP status of the remote call, if one was made
        detail: raw response text or extra diagnostic payload
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: ErrorCode | None = None,
        status: int | None = None,
        detail: Any = None,
    ):
        super().__init__(message)
        self._kind = kind
        self._code = code or _DEFAULT_CODES[kind]
        self._message = message
        self._status = status
        self._detail = detail

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def code(self) -> ErrorCode:
        return self._code

    @property
    def message(self) -> str:
        return self._message

    @property
    def status(self) -> int | None:
        return self._status

    @property
    def detail(self) -> Any:
        return self._detail

    @property
    def retryable(self) -> bool:
        """Whether another attempt could plausibly succeed."""
        if self._kind is ErrorKind.TIMEOUT:
            return True
        if self._kind is ErrorKind.UPSTREAM_HTTP:
            if self._status is None:
                # no response at all: only a network failure is worth repeating
                return self._code is ErrorCode.API_NETWORK_ERROR
            return self._status in RETRYABLE_STATUSES or self._status >= 500
        return False

    @property
    def http_status(self) -> int:
        """Status the outermost handler responds with."""
        if self._kind is ErrorKind.VALIDATION:
            return 400
        if self._kind is ErrorKind.UPSTREAM_HTTP and self._status and self._status >= 400:
            return self._status
        return 500

    def to_dict(self) -> dict[str, Any]:
        """JSON error body. Unknown errors never expose their detail."""
        if self._kind is ErrorKind.UNKNOWN:
            message, details = _GENERIC_MESSAGE, None
        else:
            message, details = self._message, self._detail
        body: dict[str, Any] = {
            "code": self._code.value,
            "kind": self._kind.value,
            "message": message,
            "timestamp": int(time.time() * 1000),
        }
        if details is not None:
            body["details"] = details
        if self._status is not None:
            body["status"] = self._status
        return {"error": body}

    def __repr__(self) -> str:
        return (
            f"RelayError(kind={self._kind.value!r}, code={self._code.value!r}, "
            f"status={self._status!r}, message={self._message!r})"
        )


_DEFAULT_CODES: dict[ErrorKind, ErrorCode] = {
    ErrorKind.VALIDATION: ErrorCode.INPUT_INVALID_FORMAT,
    ErrorKind.UPSTREAM_HTTP: ErrorCode.API_NETWORK_ERROR,
    ErrorKind.TIMEOUT: ErrorCode.API_TIMEOUT,
    ErrorKind.CONFIGURATION: ErrorCode.CONFIG_MISSING,
    ErrorKind.UNKNOWN: ErrorCode.UNKNOWN_ERROR,
}


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def validation_error(message: str, *, code: ErrorCode = ErrorCode.INPUT_INVALID_FORMAT, detail: Any = None) -> RelayError:
    return RelayError(ErrorKind.VALIDATION, message, code=code, detail=detail)


def configuration_error(name: str) -> RelayError:
    """A required setting is absent."""
    return RelayError(
        ErrorKind.CONFIGURATION,
        f"Missing required configuration: {name}",
        detail={"setting": name},
    )


def timeout_error(message: str = "Operation timed out", *, seconds: float | None = None) -> RelayError:
    detail = {"timeout_seconds": seconds} if seconds is not None else None
    return RelayError(ErrorKind.TIMEOUT, message, detail=detail)


def create_upstream_error(message: str, status: int | None = None, body: str | None = None) -> RelayError:
    """Build an upstream error, classifying the code by HTTP status.

    Example:
        >>> err = create_upstream_error("OpenRouter API error: 429", 429, "slow down")
        >>> err.code, err.retryable, err.http_status
        (<ErrorCode.API_RATE_LIMIT: 'API_RATE_LIMIT'>, True, 429)
    """
    code = ErrorCode.API_NETWORK_ERROR
    if status is not None:
        if status == 429:
            code = ErrorCode.API_RATE_LIMIT
        elif status in (408, 504):
            code = ErrorCode.API_TIMEOUT
        elif 400 <= status < 500:
            code = ErrorCode.API_INVALID_RESPONSE
        elif status >= 500:
            code = ErrorCode.API_SERVER_ERROR
    return RelayError(ErrorKind.UPSTREAM_HTTP, message, code=code, status=status, detail=body)


def as_relay_error(exc: BaseException) -> RelayError:
    """Return ``exc`` if already categorized, else wrap it as ``unknown``."""
    if isinstance(exc, RelayError):
        return exc
    error = RelayError(ErrorKind.UNKNOWN, str(exc) or type(exc).__name__, detail=repr(exc))
    error.__cause__ = exc
    return error


def log_error(error: RelayError, **context: Any) -> None:
    """Log a categorized error with enough detail to reconstruct it."""
    if error.kind is ErrorKind.UNKNOWN:
        logger.error(f"Unhandled error: {error!r} context={context}", exc_info=error.__cause__ or error)
    elif error.kind is ErrorKind.VALIDATION:
        logger.info(f"Rejected request: {error.message} context={context}")
    else:
        logger.warning(f"{error!r} detail={str(error.detail)[:500]} context={context}")
