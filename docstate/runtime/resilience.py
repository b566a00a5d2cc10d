"""
Bounded retry for transition submission.

A policy is built per submission from the resolved ``ClientSettings``. Only
exception types listed as retryable are retried; platform rejections and
cancellations are listed as fatal so they surface on the first attempt. The
``on_retry`` hook runs before each backoff sleep, which is where the
lifecycle controller re-queries whether the previous attempt landed.

    policy = RetryPolicy.from_settings(
        settings,
        retryable_exceptions=(NetworkError,),
        non_retryable_exceptions=(SubmissionRejected,),
    )
    document = policy.execute(lambda: submitter.submit_and_await(...))
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple, TypeVar

T = TypeVar("T")

RetryHook = Callable[[int, Exception, float], None]


class BackoffStrategy(Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    EXPONENTIAL_JITTER = "exponential_jitter"


@dataclass(frozen=True)
class FailedAttempt:
    """One failed call: its 1-based number, the error and the sleep that followed."""
    attempt: int
    error: Exception
    delay_seconds: float


@dataclass
class RetryStats:
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    exhausted: int = 0
    slept_seconds: float = 0.0

    def snapshot(self) -> "RetryStats":
        return RetryStats(self.attempts, self.successes, self.failures, self.exhausted, self.slept_seconds)


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, failures: List[FailedAttempt]):
        self.failures = list(failures)
        self.attempts = len(self.failures)
        self.last_exception = self.failures[-1].error
        super().__init__(f"gave up after {self.attempts} attempts: {self.last_exception}")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 30.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL_JITTER
    jitter_factor: float = 0.5
    retryable_exceptions: Tuple[type, ...] = (Exception,)
    non_retryable_exceptions: Tuple[type, ...] = ()
    on_retry: Optional[RetryHook] = None
    sleep: Callable[[float], None] = time.sleep
    _stats: RetryStats = field(default_factory=RetryStats, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")

    @classmethod
    def from_settings(cls, settings, **overrides) -> "RetryPolicy":
        """Policy sized by ``submission.max_submit_attempts`` and ``retry_base_delay_seconds``."""
        overrides.setdefault("max_attempts", settings.max_submit_attempts)
        overrides.setdefault("base_delay_seconds", settings.retry_base_delay_seconds)
        return cls(**overrides)

    @property
    def stats(self) -> RetryStats:
        with self._lock:
            return self._stats.snapshot()

    def delay_for(self, attempt: int) -> float:
        """Sleep after failed attempt number ``attempt`` (1-based), capped at ``max_delay_seconds``."""
        base = self.base_delay_seconds
        strategy = self.backoff_strategy
        if strategy is BackoffStrategy.FIXED:
            delay = base
        elif strategy is BackoffStrategy.LINEAR:
            delay = base * attempt
        else:
            delay = base * 2 ** (attempt - 1)
            if strategy is BackoffStrategy.EXPONENTIAL_JITTER:
                delay += random.uniform(0, self.jitter_factor * delay)
        return min(delay, self.max_delay_seconds)

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, self.non_retryable_exceptions):
            return False
        return isinstance(error, self.retryable_exceptions)

    def _count(self, **deltas) -> None:
        with self._lock:
            for name, delta in deltas.items():
                setattr(self._stats, name, getattr(self._stats, name) + delta)

    def execute(self, func: Callable[[], T]) -> T:
        failures: List[FailedAttempt] = []
        for attempt in range(1, self.max_attempts + 1):
            self._count(attempts=1)
            try:
                result = func()
            except Exception as e:
                self._count(failures=1)
                if not self.is_retryable(e):
                    raise
                if attempt == self.max_attempts:
                    failures.append(FailedAttempt(attempt, e, 0.0))
                    break
                delay = self.delay_for(attempt)
                failures.append(FailedAttempt(attempt, e, delay))
                self._count(slept_seconds=delay)
                if self.on_retry is not None:
                    self.on_retry(attempt, e, delay)
                self.sleep(delay)
            else:
                self._count(successes=1)
                return result

        self._count(exhausted=1)
        raise RetryExhaustedError(failures)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper
