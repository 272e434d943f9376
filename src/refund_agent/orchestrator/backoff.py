"""Exponential backoff with jitter and a rate-limit-aware retry loop.

Every network-calling stage wraps its call in `with_retry`. Errors are
classified into three kinds:

- RATE_LIMIT: HTTP 429 or a message mentioning quota / rate limit. Waits the
  computed delay times `RATE_LIMIT_MULTIPLIER`; exhaustion raises
  `RateLimitExceeded`.
- TRANSIENT: timeouts, dropped connections, 5xx, empty responses. Standard
  backoff; exhaustion re-raises the last error.
- FATAL: anything else. Propagates immediately, no delay.
"""

from __future__ import annotations

import random
import threading
import time
from enum import Enum
from typing import Callable, Optional, TypeVar

import openai
import requests

from ..domain.errors import (
    EmptyResponse,
    ExtractionFailed,
    HttpError,
    NetworkTimeout,
    OperationCancelled,
    RateLimitExceeded,
)
from ..domain.models import BackoffState
from ..logging import get_logger

LOG = get_logger("orchestrator-backoff")

T = TypeVar("T")

GROWTH = 1.5
JITTER_SECONDS = 1.0
RATE_LIMIT_MULTIPLIER = 2.0
_RATE_LIMIT_MARKERS = ("429", "quota", "rate limit")


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    FATAL = "fatal"


def compute_delay(
    attempt: int,
    base: float,
    max_delay: float,
    *,
    rng: Optional[random.Random] = None,
) -> float:
    """Seconds to wait before retry number `attempt` (0-based).

    `min(base * 1.5**attempt, max_delay)` plus jitter in [0, 1) seconds.
    """
    r = rng or random
    capped = min(base * (GROWTH ** max(0, attempt)), max_delay)
    return capped + r.random() * JITTER_SECONDS


def classify_error(exc: BaseException) -> ErrorKind:
    # Typed errors carry their status; only untyped messages are sniffed for markers.
    if isinstance(exc, RateLimitExceeded) or isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMIT
    if isinstance(exc, HttpError):
        if exc.status == 429:
            return ErrorKind.RATE_LIMIT
        return ErrorKind.TRANSIENT if exc.status >= 500 else ErrorKind.FATAL
    if isinstance(exc, (NetworkTimeout, EmptyResponse, ExtractionFailed)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code == 429:
            return ErrorKind.RATE_LIMIT
        return ErrorKind.TRANSIENT if exc.status_code >= 500 else ErrorKind.FATAL
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return ErrorKind.TRANSIENT
    msg = str(exc).lower()
    if any(m in msg for m in _RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMIT
    return ErrorKind.FATAL


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation cancelled")


def with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 2.0,
    max_delay: float = 30.0,
    classify: Callable[[BaseException], ErrorKind] = classify_error,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    cancel: Optional[threading.Event] = None,
    label: str = "operation",
) -> T:
    """Run `operation` until it succeeds, a fatal error occurs or attempts run out.

    `max_attempts` counts every call, the first one included.
    """
    state = BackoffState(base_delay=base_delay, max_delay=max_delay)
    attempts = max(1, int(max_attempts))
    while True:
        check_cancelled(cancel)
        try:
            return operation()
        except OperationCancelled:
            raise
        except Exception as exc:
            kind = classify(exc)
            if kind is ErrorKind.FATAL:
                raise
            state.retry_count += 1
            if state.retry_count >= attempts:
                LOG.error(f"{label}: giving up after {state.retry_count} attempt(s): {exc}")
                if kind is ErrorKind.RATE_LIMIT and not isinstance(exc, RateLimitExceeded):
                    raise RateLimitExceeded(
                        f"API rate limit exceeded after {state.retry_count} attempts: {exc}"
                    ) from exc
                raise
            delay = compute_delay(state.retry_count - 1, state.base_delay, state.max_delay, rng=rng)
            if kind is ErrorKind.RATE_LIMIT:
                delay *= RATE_LIMIT_MULTIPLIER
            LOG.warning(
                "%s: attempt %d/%d failed (%s): %s; retrying in %.2fs",
                label, state.retry_count, attempts, kind.value, exc, delay,
            )
            check_cancelled(cancel)
            sleep(delay)
