"""
Retry engine - exponential backoff around fallible operations.

Path: clusterctl/core/retry.py

Usage:
    policy = RetryPolicy.ssh("ssh-connect-10.0.0.5")
    client = retry_call(policy, dial, cancel=cancel, retry_on=is_retryable_error)

    @retry(RetryPolicy.package_manager("apt-install keepalived"))
    def install():
        ...

Between attempts the engine waits `backoff`, then multiplies it by the
policy multiplier, capped at `max_backoff`. A set cancel event interrupts
the wait immediately and OperationCancelled is raised instead of the
operation's own error.
"""

import functools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from clusterctl.core.cancel import raise_if_cancelled, wait_or_cancel
from clusterctl.core.errors import OperationCancelled, RetryError

# Module logger - configure at application level
logger = logging.getLogger(__name__)

T = TypeVar("T")

Waiter = Callable[[Optional[threading.Event], float], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for one operation. Durations are seconds."""
    max_attempts: int = 5
    initial_backoff: float = 2.0
    max_backoff: float = 30.0
    backoff_multiplier: float = 2.0
    operation: str = "operation"

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"{self.operation}: max_attempts must be >= 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError(f"{self.operation}: backoff must be non-negative")

    @classmethod
    def default(cls, operation: str) -> "RetryPolicy":
        """Sensible defaults for most operations."""
        return cls(5, 2.0, 30.0, 2.0, operation)

    @classmethod
    def ssh(cls, operation: str) -> "RetryPolicy":
        """Dial and handshake with a remote host."""
        return cls(3, 1.0, 10.0, 2.0, operation)

    @classmethod
    def package_manager(cls, operation: str) -> "RetryPolicy":
        """apt/yum/dnf operations, which contend for package locks."""
        return cls(5, 3.0, 60.0, 2.0, operation)

    @classmethod
    def network(cls, operation: str) -> "RetryPolicy":
        return cls(10, 2.0, 30.0, 2.0, operation)

    def next_backoff(self, backoff: float) -> float:
        return min(backoff * self.backoff_multiplier, self.max_backoff)


def retry_call(
    policy: RetryPolicy,
    fn: Callable[[], T],
    *,
    cancel: Optional[threading.Event] = None,
    retry_on: Optional[Callable[[Exception], bool]] = None,
    log: Optional[logging.Logger] = None,
    waiter: Waiter = wait_or_cancel,
) -> T:
    """
    Execute `fn` under `policy`.

    Args:
        policy: Attempts and backoff schedule.
        fn: Zero-argument callable. Raising means the attempt failed.
        cancel: Optional cancellation event.
        retry_on: Predicate deciding whether an exception is transient.
            Non-retryable exceptions propagate immediately, unwrapped.
            Defaults to retrying every Exception.
        log: Logger for attempt lines (defaults to module logger).
        waiter: waiter(cancel, seconds) -> True if cancelled. Tests inject
            a recording waiter here.

    Returns:
        Whatever `fn` returns on its first successful attempt.

    Raises:
        RetryError: All attempts failed.
        OperationCancelled: Cancelled before or between attempts.
    """
    log = log or logger
    backoff = policy.initial_backoff

    for attempt in range(1, policy.max_attempts + 1):
        raise_if_cancelled(cancel, policy.operation)

        try:
            result = fn()
        except OperationCancelled:
            raise
        except Exception as exc:
            if retry_on is not None and not retry_on(exc):
                raise

            if attempt >= policy.max_attempts:
                raise RetryError(policy.operation, attempt, exc) from exc

            log.warning(
                f"{policy.operation} failed (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {backoff:g}s: {exc}"
            )

            if waiter(cancel, backoff):
                raise OperationCancelled(
                    f"{policy.operation}: cancelled after {attempt} attempts"
                ) from exc

            backoff = policy.next_backoff(backoff)
            continue

        if attempt > 1:
            log.info(f"{policy.operation} succeeded after {attempt} attempts")
        return result

    # max_attempts >= 1 is enforced by RetryPolicy, so the loop always returns or raises
    raise RetryError(policy.operation, policy.max_attempts, RuntimeError("unexpected retry loop exit"))


def retry(
    policy: RetryPolicy,
    *,
    retry_on: Optional[Callable[[Exception], bool]] = None,
):
    """
    Retry decorator for idempotent operations.

    The wrapped function may receive a `cancel` keyword argument; it is
    forwarded to the function and also used to interrupt backoff waits.
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            cancel = kwargs.get("cancel")
            return retry_call(
                policy,
                lambda: fn(*args, **kwargs),
                cancel=cancel,
                retry_on=retry_on,
            )
        return wrapper
    return decorator
