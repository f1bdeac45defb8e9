"""
Bounded retry with exponential backoff.

RetryPolicy is the immutable schedule; RetryState is the per-operation
state machine (attempt counter, next delay, terminal flag). Callers that
loop themselves (the execution coordinator) drive RetryState directly;
everything else uses call_with_retries.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule: base * factor**(attempt-1), capped, optional jitter."""

    max_attempts: int = 3
    base_delay_sec: float = 0.5
    factor: float = 2.0
    max_delay_sec: float = 30.0
    jitter: float = 0.0  # fraction of the delay, e.g. 0.1 = +/-10%

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = min(self.base_delay_sec * (self.factor ** max(0, attempt - 1)), self.max_delay_sec)
        if self.jitter > 0:
            r = (rng or random).uniform(-self.jitter, self.jitter)
            delay = max(0.0, delay * (1.0 + r))
        return delay

    def start(self) -> "RetryState":
        return RetryState(policy=self)


@dataclass
class RetryState:
    """
    Attempt bookkeeping for one operation.

    States: ready -> (attempt) -> succeeded | ready (backoff) | exhausted
    """

    policy: RetryPolicy
    attempts: int = 0
    succeeded: bool = False
    last_error: Optional[str] = None
    history: list = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return not self.succeeded and self.attempts >= self.policy.max_attempts

    @property
    def terminal(self) -> bool:
        return self.succeeded or self.exhausted

    def begin_attempt(self) -> int:
        if self.terminal:
            raise RuntimeError("retry state is terminal")
        self.attempts += 1
        return self.attempts

    def record_success(self) -> None:
        self.succeeded = True
        self.history.append("ok")

    def record_failure(self, reason: str, rng: Optional[random.Random] = None) -> Optional[float]:
        """Record a failed attempt; returns the backoff delay, or None once exhausted."""
        self.last_error = reason
        self.history.append(reason)
        if self.exhausted:
            return None
        return self.policy.delay_for(self.attempts, rng)


def call_with_retries(
    func: Callable,
    *args,
    policy: Optional[RetryPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    on_error: Optional[Callable[[int, BaseException], None]] = None,
    **kwargs,
):
    """Call func with retries/backoff; re-raises the last error when exhausted."""
    state = (policy or RetryPolicy()).start()
    while True:
        attempt = state.begin_attempt()
        try:
            result = func(*args, **kwargs)
        except retry_on as e:
            if on_error is not None:
                on_error(attempt, e)
            delay = state.record_failure(str(e))
            if delay is None:
                raise
            sleep(delay)
            continue
        state.record_success()
        return result
