"""
RetryPolicy: bounded retry with exponential backoff for remote calls.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from binkeeper.errors import RemoteCallError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Only transient RPC/network failures are retried."""
    return isinstance(exc, RemoteCallError)


@dataclass
class RetryPolicy:
    """Runs an attempt closure up to `attempts` times.

    Delay before retry n (1-based) is base_delay * multiplier**(n-1).
    Non-retryable errors propagate on the first occurrence.
    """

    attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delays(self) -> list[float]:
        return [self.base_delay * self.multiplier**i for i in range(self.attempts - 1)]

    def call(self, attempt: Callable[[], T], name: str = "operation") -> T:
        delays = self.delays()
        for n in range(1, self.attempts + 1):
            try:
                return attempt()
            except Exception as e:
                if not self.retryable(e):
                    raise
                if n >= self.attempts:
                    logger.error("%s failed after %d attempts: %s", name, n, e)
                    raise
                delay = delays[n - 1]
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    name,
                    n,
                    self.attempts,
                    delay,
                    e,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")
