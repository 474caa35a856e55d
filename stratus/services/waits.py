from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Generic, Optional, TypeVar

from stratus.services.errors import OperationCancelled, StageTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Deadline:
    """An absolute point on the monotonic clock."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(expires_at=time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def earliest(self, other: Optional["Deadline"]) -> "Deadline":
        if other is None or self.expires_at <= other.expires_at:
            return self
        return other


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    value: T
    attempts: int
    elapsed: float


class WaitExpired(StageTimeout):
    def __init__(self, description: str, attempts: int, elapsed: float) -> None:
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(f"Timed out waiting for {description} after {attempts} attempts ({elapsed:.1f}s)")


def ensure_not_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation was cancelled")


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    description: str,
    deadline: Deadline,
    initial_interval: float,
    max_interval: float | None = None,
    multiplier: float = 2.0,
    cancel: threading.Event | None = None,
) -> PollOutcome[T]:
    """Call ``check`` until it returns a value other than ``None``.

    Sleeps between attempts with exponential backoff capped at
    ``max_interval``. The sleep is an ``Event.wait`` so setting ``cancel``
    interrupts it immediately. Exceptions raised by ``check`` propagate.

    Raises:
        WaitExpired: the deadline passed before ``check`` produced a value.
        OperationCancelled: ``cancel`` was set.
    """
    waiter = cancel if cancel is not None else threading.Event()
    started = time.monotonic()
    interval = initial_interval
    cap = max_interval if max_interval is not None else initial_interval
    attempts = 0
    while True:
        ensure_not_cancelled(cancel)
        attempts += 1
        value = check()
        elapsed = time.monotonic() - started
        if value is not None:
            logger.debug("%s ready after %s attempt(s) (%.1fs)", description, attempts, elapsed)
            return PollOutcome(value=value, attempts=attempts, elapsed=elapsed)

        remaining = deadline.remaining()
        if remaining <= 0:
            raise WaitExpired(description, attempts, elapsed)
        delay = min(interval, remaining)
        logger.debug("%s not ready (attempt %s); retrying in %.2fs", description, attempts, delay)
        if waiter.wait(delay):
            raise OperationCancelled(f"Cancelled while waiting for {description}")
        interval = min(interval * multiplier, cap)
