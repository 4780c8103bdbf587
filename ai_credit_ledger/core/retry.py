"""
Retry policy for ledger writes.

One policy object drives every retried store transaction.
"""

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TransactionConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff on store write conflicts."""
    max_attempts: int = 3
    backoff_base: float = 0.1
    backoff_max: float = 2.0

    def __post_init__(self):
        """Validate retry bounds."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base < 0:
            raise ValueError("backoff_base cannot be negative")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")

    def retrying(self) -> Retrying:
        """Build a tenacity controller for this policy."""
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception_type(TransactionConflict),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run func, retrying on TransactionConflict.

        Raises:
            TransactionConflict: When every attempt conflicted
        """
        return self.retrying()(func, *args, **kwargs)
