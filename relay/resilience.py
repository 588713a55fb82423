"""Resilient outbound calls — timeout, retry with backoff, attempt observers.

Typical composition for a single upstream request::

    result = await retry_call(
        lambda: with_timeout(fetch(), 30.0, "OpenRouter API request timed out"),
        "OpenRouter test",
        context=model,
        max_attempts=3,
    )

``call_with_policy`` does the same from a configured ``RetryPolicy``.
Each attempt builds a fresh awaitable, so the operation passed to
``retry_call`` must be a zero-argument callable, not a coroutine object.
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from relay.errors import RelayError, timeout_error

if TYPE_CHECKING:
    from relay.config import RetryPolicy

T = TypeVar("T")

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backoff strategies
# ---------------------------------------------------------------------------


class Backoff(ABC):
    """Delay policy applied between attempts."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        ...


@dataclass
class ExponentialBackoff(Backoff):
    """``min(base_delay * multiplier ** (attempt - 1), max_delay)`` plus jitter.

    Jitter is additive, up to ``jitter`` times the delay, so concurrent
    callers hitting the same upstream spread out.
    """

    base_delay: float = 2.0
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay


@dataclass
class ConstantBackoff(Backoff):
    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay


class NoBackoff(Backoff):
    def next_delay(self, attempt: int) -> float:
        return 0.0


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


class CallObserver(Protocol):
    """Receives one event per attempt start and outcome."""

    def on_attempt(self, name: str, attempt: int, max_attempts: int, context: str | None) -> None: ...

    def on_success(self, name: str, attempt: int, context: str | None) -> None: ...

    def on_failure(
        self,
        name: str,
        attempt: int,
        error: BaseException,
        delay: float | None,
        context: str | None,
    ) -> None: ...


class LoggingObserver:
    """Default observer — writes attempt events to the module logger."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def on_attempt(self, name: str, attempt: int, max_attempts: int, context: str | None) -> None:
        self._log.debug(f"{_label(name, context)}: attempt {attempt}/{max_attempts}")

    def on_success(self, name: str, attempt: int, context: str | None) -> None:
        if attempt > 1:
            self._log.info(f"{_label(name, context)}: succeeded on attempt {attempt}")

    def on_failure(
        self,
        name: str,
        attempt: int,
        error: BaseException,
        delay: float | None,
        context: str | None,
    ) -> None:
        if delay is None:
            self._log.warning(f"{_label(name, context)}: attempt {attempt} failed, giving up: {error!r}")
        else:
            self._log.warning(
                f"Retrying {_label(name, context)} in {delay:.2f}s "
                f"(attempt {attempt} failed: {error!r})"
            )


def _label(name: str, context: str | None) -> str:
    return f"{name} [{context}]" if context else name


def is_retryable(error: BaseException) -> bool:
    """Only categorized transient failures are retried."""
    return isinstance(error, RelayError) and error.retryable


# ---------------------------------------------------------------------------
# Timeout wrapper
# ---------------------------------------------------------------------------


def _discard_outcome(task: asyncio.Future) -> None:
    # Abandoned operations may still fail; retrieve so asyncio does not warn.
    if not task.cancelled():
        task.exception()


async def with_timeout(
    awaitable: Awaitable[T],
    seconds: float,
    message: str = "Operation timed out",
) -> T:
    """Wait for ``awaitable`` at most ``seconds``.

    Raises a timeout ``RelayError`` carrying ``message`` when the deadline
    wins. The operation is not cancelled; it keeps running unobserved and
    its eventual result is ignored.
    """
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=seconds)
    if task in done:
        return task.result()
    task.add_done_callback(_discard_outcome)
    raise timeout_error(message, seconds=seconds)


# ---------------------------------------------------------------------------
# Retry wrapper
# ---------------------------------------------------------------------------


async def retry_call(
    operation: Callable[[], Awaitable[T]],
    name: str,
    context: str | None = None,
    *,
    max_attempts: int = 3,
    backoff: Backoff | None = None,
    observer: CallObserver | None = None,
    retry_if: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times, one at a time.

    Non-retryable failures are raised immediately. When attempts run out,
    the last failure is raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
    backoff = backoff or ExponentialBackoff()
    observer = observer or LoggingObserver()

    attempt = 0
    while True:
        attempt += 1
        observer.on_attempt(name, attempt, max_attempts, context)
        try:
            result = await operation()
        except Exception as e:
            if attempt >= max_attempts or not retry_if(e):
                observer.on_failure(name, attempt, e, None, context)
                raise
            delay = backoff.next_delay(attempt)
            observer.on_failure(name, attempt, e, delay, context)
            await sleep(delay)
            continue
        observer.on_success(name, attempt, context)
        return result


async def call_with_policy(
    operation: Callable[[], Awaitable[T]],
    name: str,
    policy: RetryPolicy,
    *,
    timeout: float,
    timeout_message: str,
    context: str | None = None,
    observer: CallObserver | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """``retry_call`` over ``with_timeout`` using a configured policy."""
    return await retry_call(
        lambda: with_timeout(operation(), timeout, timeout_message),
        name,
        context,
        max_attempts=policy.max_attempts,
        backoff=policy.build_backoff(),
        observer=observer,
        sleep=sleep,
    )
