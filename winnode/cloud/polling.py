"""
Timed polling shared by every wait in the lifecycle.

`poll_until` re-runs a probe at a fixed interval until its result passes a
readiness check, the wait's own timeout elapses, or the caller's overall
`Deadline` runs out.  Provider errors raised by the probe are treated as
transient and retried; anything else propagates immediately.
"""

import time
from typing import Callable, Optional, TypeVar

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_any,
)

from winnode.errors import ProviderAPIError, WaitTimeoutError

T = TypeVar("T")


class Deadline:
    """Overall time budget for one create / destroy call."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    @classmethod
    def optional(cls, seconds: Optional[float]) -> Optional["Deadline"]:
        """A deadline of ``seconds``, or ``None`` when it is unset or zero."""
        if not seconds or seconds <= 0:
            return None
        return cls(seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0


def poll_until(
    poll_fn: Callable[[], T],
    ready_check: Callable[[T], bool],
    *,
    timeout: float,
    interval: float,
    description: str,
    deadline: Optional[Deadline] = None,
    max_attempts: Optional[int] = None,
    timeout_error: type = WaitTimeoutError,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call *poll_fn* until ``ready_check(result)`` is true and return that result.

    Parameters
    ----------
    timeout : float
        Budget for this wait in seconds; clipped to what is left of *deadline*.
    interval : float
        Delay between polls, cut short so no sleep outlasts *timeout* or *deadline*.
    deadline : Deadline, optional
        Checked before every round; an already-expired deadline fails at once.
    max_attempts : int, optional
        Upper bound on the number of polls, on top of the timeout.
    timeout_error : type
        `WaitTimeoutError` subclass raised on exhaustion.

    Raises
    ------
    WaitTimeoutError
        (or *timeout_error*) when the budget is used up.  The last observed
        result is attached as ``last_result``.
    """
    if deadline is not None:
        if deadline.expired():
            raise timeout_error(description, 0.0)
        timeout = min(timeout, deadline.remaining())

    stops = [stop_after_delay(timeout)]
    if max_attempts is not None:
        stops.append(stop_after_attempt(max_attempts))
    if deadline is not None:
        stops.append(lambda retry_state: deadline.expired())

    def wait(retry_state) -> float:
        # Never sleep past the end of this wait or of the overall deadline.
        delay = min(interval, max(0.0, timeout - (retry_state.seconds_since_start or 0.0)))
        if deadline is not None:
            delay = min(delay, deadline.remaining())
        return delay

    retrying = Retrying(
        stop=stop_any(*stops),
        wait=wait,
        retry=(
            retry_if_exception_type(ProviderAPIError)
            | retry_if_result(lambda result: not ready_check(result))
        ),
        sleep=sleep,
    )
    try:
        return retrying(poll_fn)
    except RetryError as exc:
        last = exc.last_attempt
        if last.failed:
            cause = last.exception()
            raise timeout_error(description, timeout, cause) from cause
        raise timeout_error(description, timeout, last.result()) from None
