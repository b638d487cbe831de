"""Retry policy with exponential backoff for provider calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_AUTH_ERROR_NAMES = {
    "AuthenticationError",
    "PermissionDeniedError",
}

_INVALID_REQUEST_NAMES = {
    "BadRequestError",
    "NotFoundError",
    "UnprocessableEntityError",
}

_RETRYABLE_NAMES = {
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
}


def _exception_name(exc: BaseException) -> str:
    return exc.__class__.__name__


def describe_failure(exc: BaseException) -> str:
    """One-line summary used when a provider failure is surfaced to the caller."""
    name = _exception_name(exc)
    if name in _AUTH_ERROR_NAMES:
        return f"authentication failed ({name}): {exc}"
    if name in _INVALID_REQUEST_NAMES:
        return f"request rejected ({name}): {exc}"
    return f"{name}: {exc}"


class RetryPolicy:
    """Exponential backoff for transient transport failures.

    Authentication and invalid-request errors fail immediately; rate limits,
    timeouts, connection errors and 5xx responses are retried up to
    ``max_retries`` times with a delay of 1, 2, 4... seconds capped at
    ``max_backoff_seconds``.
    """

    max_retries: int
    max_backoff_seconds: int
    sleep_fn: Callable[[float], None]

    def __init__(
        self,
        max_retries: int = 3,
        sleep_fn: Callable[[float], None] | None = None,
        max_backoff_seconds: int = 8,
    ) -> None:
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.sleep_fn = sleep_fn or time.sleep

    def backoff_seconds(self, attempt_index: int) -> int:
        return min(1 << attempt_index, self.max_backoff_seconds)

    def execute(self, operation: Callable[[], T]) -> T:
        retries = 0
        while True:
            try:
                return operation()
            except Exception as exc:  # noqa: BLE001
                if self._should_fail_fast(exc):
                    raise
                if not self._is_retryable(exc) or retries >= self.max_retries:
                    raise
                delay = self.backoff_seconds(retries)
                retries += 1
                logger.warning(
                    f"Provider call failed with {_exception_name(exc)}; "
                    f"retry {retries}/{self.max_retries} in {delay}s"
                )
                self.sleep_fn(delay)

    def _should_fail_fast(self, exc: Exception) -> bool:
        if isinstance(exc, ValueError):
            return True
        name = _exception_name(exc)
        return name in _AUTH_ERROR_NAMES or name in _INVALID_REQUEST_NAMES

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, (TimeoutError, ConnectionError)):
            return True
        name = _exception_name(exc)
        if name in _RETRYABLE_NAMES:
            return True
        if name == "APIStatusError":
            status_code = _status_code(exc)
            return status_code is not None and (status_code >= 500 or status_code == 429)
        return False


def _status_code(exc: Exception) -> int | None:
    """HTTP status of an SDK error, from the exception or its response."""
    for holder in (exc, getattr(exc, "response", None)):
        value = getattr(holder, "status_code", None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None
