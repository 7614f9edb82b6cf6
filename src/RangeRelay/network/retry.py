"""Per-part retry policy built on Tenacity.

Part fetches retry any transient failure (network error, non-2xx status,
local write error) with a constant delay and a fixed attempt budget.  The
sleep between attempts is cancellation-aware so a cancelled download stops
waiting immediately; the next attempt then observes the token and raises
:class:`~RangeRelay.errors.CancellationError`, which is never retried.

Example:
    >>> policy = create_part_retry_policy(max_attempts=10, delay_seconds=1.0)
    >>> policy(fetch_part)  # doctest: +SKIP
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

from ..cancellation import CancellationToken
from ..errors import BadStatusError, TransientIOError

logger = logging.getLogger(__name__)


def is_transient_failure(exc: BaseException) -> bool:
    """Return ``True`` for failures a part fetch should retry."""
    return isinstance(exc, (BadStatusError, TransientIOError))


def create_part_retry_policy(
    *,
    max_attempts: int,
    delay_seconds: float,
    token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> Retrying:
    """Create a Tenacity controller with constant backoff.

    Args:
        max_attempts: Total attempts allowed, including the first.
        delay_seconds: Fixed delay between attempts.
        token: Optional cancellation token; when set, sleeps end early on cancel.
        on_retry: Callback receiving ``(attempt_number, exception, delay)``
            before each sleep.

    Returns:
        A ``Retrying`` object.  Exhausting the budget raises
        ``tenacity.RetryError`` carrying the last attempt.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def _sleep(seconds: float) -> None:
        if token is not None:
            token.wait(seconds)
        elif seconds > 0:
            time.sleep(seconds)

    def _before_sleep(retry_state: RetryCallState) -> None:
        if on_retry is None or retry_state.outcome is None:
            return
        exc = retry_state.outcome.exception()
        if exc is not None:
            on_retry(retry_state.attempt_number, exc, delay_seconds)

    return Retrying(
        retry=retry_if_exception(is_transient_failure),
        wait=wait_fixed(delay_seconds),
        stop=stop_after_attempt(max_attempts),
        sleep=_sleep,
        before_sleep=_before_sleep,
        reraise=False,
    )


__all__ = ["create_part_retry_policy", "is_transient_failure"]
