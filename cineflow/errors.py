"""Provider error taxonomy and the one classifier every remote call site uses."""
from __future__ import annotations

import asyncio
import enum

import requests
from google.genai import errors as genai_errors

QUOTA_TOKEN = "QUOTA_EXHAUSTED"

_CAPACITY_WORDS = (
    "429",
    "quota",
    "exhausted",
    "rate limit",
    "rate-limit",
    "resource_exhausted",
    "load failed",
    "failed to fetch",
)
_TRANSIENT_WORDS = (
    "502",
    "503",
    "504",
    "connection reset",
    "connection aborted",
    "temporarily unavailable",
)
_TIMEOUT_WORDS = ("timed out", "timeout")


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    CAPACITY = "capacity"
    TIMEOUT = "timeout"
    FATAL = "fatal"


class ProviderError(RuntimeError):
    """Base class for failures reported by (or while talking to) a provider."""


class CapacityExhaustedError(ProviderError):
    """Rate limit / quota / billing unavailability that fallback could not absorb."""

    def __init__(self, message: str = "") -> None:
        text = message or "provider capacity exhausted"
        if QUOTA_TOKEN not in text:
            text = f"{QUOTA_TOKEN}: {text}"
        super().__init__(text)


class TransientProviderError(ProviderError):
    pass


class JobFailedError(ProviderError):
    """The provider accepted the job and later reported it as failed."""


class PollTimeoutError(ProviderError):
    pass


class PollConnectionLostError(ProviderError):
    pass


class MalformedResponseError(ProviderError, ValueError):
    """Bad JSON or a payload missing the field we need. Never retried."""


class IllegalTransitionError(ValueError):
    pass


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_error(exc: BaseException) -> ErrorKind:
    """Map any exception raised by a remote call onto an ``ErrorKind``."""
    if isinstance(exc, CapacityExhaustedError):
        return ErrorKind.CAPACITY
    if isinstance(exc, (PollTimeoutError, asyncio.TimeoutError, TimeoutError, requests.Timeout)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, TransientProviderError):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (MalformedResponseError, PollConnectionLostError)):
        return ErrorKind.FATAL
    # JobFailedError falls through: its provider reason may name a quota

    if isinstance(exc, genai_errors.APIError):
        code = _status_code(exc)
        if code == 429:
            return ErrorKind.CAPACITY
        if isinstance(exc, genai_errors.ServerError):
            return ErrorKind.TRANSIENT

    if isinstance(exc, requests.HTTPError) and _status_code(exc) == 429:
        return ErrorKind.CAPACITY

    text = str(exc).lower()
    if any(word in text for word in _CAPACITY_WORDS):
        return ErrorKind.CAPACITY

    if isinstance(exc, (requests.ConnectionError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if any(word in text for word in _TRANSIENT_WORDS):
        return ErrorKind.TRANSIENT
    if any(word in text for word in _TIMEOUT_WORDS):
        return ErrorKind.TIMEOUT
    return ErrorKind.FATAL


def is_capacity_error(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.CAPACITY
