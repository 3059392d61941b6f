import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional


_LOGGER = logging.getLogger("lanefleet.resilience")


def exponential_backoff(attempt: int, base_delay: float, factor: float = 2.0, max_delay: float = 30.0) -> float:
    """Delay before retry number ``attempt`` (1-based)."""
    if base_delay <= 0:
        return 0.0
    return min(base_delay * (factor ** max(0, attempt - 1)), max_delay)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    backoff_fn: Callable[[int, float], float] = field(default=exponential_backoff)
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.backoff_fn(attempt, self.base_delay)))

    def pause(self, attempt: int) -> None:
        delay = self.delay_for(attempt)
        if delay > 0:
            self.sleep(delay)


# Push retry: the first push plus exactly one retry after fetch + rebase.
PUSH_RETRY_POLICY = RetryPolicy(max_attempts=2, base_delay=0.2)
ID_RETRY_POLICY = RetryPolicy(max_attempts=5, base_delay=0.05)


def zero_delay_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.0, backoff_fn=lambda _attempt, _base: 0.0)


def run_with_retry(
    func: Callable[[int], Any],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    operation: str = "",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> Any:
    """
    Call ``func(attempt)`` until it returns or ``policy.max_attempts`` is used up.

    Args:
        func: Callable receiving the 1-based attempt number
        policy: Attempt budget and pacing
        retry_on: Exception types that trigger another attempt
        should_retry: Optional finer filter; a ``False`` answer re-raises at once
        operation: Name used in log lines
        on_retry: Optional callback run before the next attempt; it may raise

    The last exception is re-raised unchanged once attempts are exhausted.
    """
    name = operation or getattr(func, "__name__", "operation")
    attempts = max(1, int(policy.max_attempts))
    attempt = 1
    while True:
        try:
            return func(attempt)
        except retry_on as err:
            if should_retry is not None and not should_retry(err):
                raise
            if attempt >= attempts:
                _LOGGER.error(f"Operation {name} failed after {attempts} attempts: {err}")
                raise
            _LOGGER.warning(f"Attempt {attempt} failed for {name}: {err}")
            if on_retry:
                on_retry(attempt, err)
            policy.pause(attempt)
            attempt += 1
