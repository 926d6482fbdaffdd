# automail/helpers/retry.py
"""Explicit retry policy for completion-engine calls.

Retries are decided by a predicate over the typed error kind instead of
matching exception classes at the call site:

    policy = RetryPolicy(
        max_attempts=3,
        delay_seconds=1.0,
        retry_on=lambda kind: kind == AIErrorKind.INVALID_ARGUMENTS,
    )
    result = policy.run(client.complete_with_functions, system, messages, functions)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _never(kind: Any) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with fixed (or exponentially growing) delay.

    Only exceptions carrying a ``kind`` attribute are considered; everything
    else propagates on the first attempt.
    """

    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff: float = 1.0
    retry_on: Callable[[Any], bool] = _never
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.delay_seconds * (self.backoff ** (attempt - 1))

    def run(self, fn: Callable[..., T], *args, **kwargs) -> T:
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as exc:
                kind = getattr(exc, "kind", None)
                if kind is None or not self.retry_on(kind) or attempt >= self.max_attempts:
                    raise
                wait = self.delay_for(attempt)
                logger.warning(
                    "Retry %d/%d nach %.1fs (%s: %s)",
                    attempt,
                    self.max_attempts - 1,
                    wait,
                    kind,
                    exc,
                )
                self.sleep(wait)
                attempt += 1
