"""Bounded retry with linearly increasing backoff."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from cropscan.errors import RetryExhausted

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, and how long to wait between tries.

    The wait after failed attempt ``k`` (1-based) is ``base_delay * k``.
    """

    max_attempts: int = 3
    base_delay: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def delay_after(self, attempt: int) -> float:
        return self.base_delay * attempt


def retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], object] = time.sleep,
    on_retry: Callable[[int, BaseException], object] | None = None,
) -> T:
    """Call ``func`` until it succeeds or the policy runs out of attempts.

    Only ``Exception`` subclasses are retried.

    Raises:
        RetryExhausted: After ``policy.max_attempts`` failures, chained to the
            last error.
    """
    last_error: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func()
        except Exception as e:  # noqa: BLE001
            last_error = e
            logger.warning("Attempt %d/%d failed: %s", attempt, policy.max_attempts, e)
            if on_retry is not None:
                on_retry(attempt, e)
            if attempt < policy.max_attempts:
                sleep(policy.delay_after(attempt))

    assert last_error is not None
    raise RetryExhausted(policy.max_attempts, last_error) from last_error
