"""
Retry helpers for calls to the directory and the room service.

Outbound calls can fail for reasons that go away within seconds: a dropped
socket, a rate limit, a restarting homeserver. The helpers here retry such
calls a bounded number of times inside one tick; whatever still fails is
recorded and left to the next tick.

Waits between attempts end early when a cancel event is set, so a pending
retry never holds up shutdown.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Any, Dict, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded, or retrying was cancelled."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and wait schedule for one kind of call."""

    max_attempts: int = 3
    delay: float = 1.0
    backoff: float = 1.0
    max_delay: float = 60.0

    @classmethod
    def from_config(cls, error_config: Dict[str, Any]) -> 'RetryPolicy':
        """
        Build a policy from an ``error_handling`` config section.

        ``max_retries`` counts retries, so the number of attempts is one more.
        """
        return cls(
            max_attempts=int(error_config.get('max_retries', 3)) + 1,
            delay=float(error_config.get('retry_wait_seconds', 1.0)),
            backoff=float(error_config.get('retry_backoff', 1.0)),
            max_delay=float(error_config.get('retry_max_wait_seconds', 60.0)),
        )

    def wait_before(self, retry_number: int, exception: Optional[Exception] = None) -> float:
        """
        Seconds to wait before retry number ``retry_number`` (1-based).

        A ``retry_after`` hint carried by the exception (a server asking to
        back off for a given time) takes precedence over the schedule. Both
        are capped at ``max_delay``.
        """
        hinted = getattr(exception, 'retry_after', None)
        if isinstance(hinted, (int, float)) and hinted >= 0:
            return min(float(hinted), self.max_delay)
        return min(self.delay * self.backoff ** (retry_number - 1), self.max_delay)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    policy: Optional[RetryPolicy] = None,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    cancel_event: Optional[threading.Event] = None
) -> Any:
    """
    Call a function, retrying on failure according to ``policy``.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        policy: Attempt budget and waits; at least one call is always made
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events
        should_retry: Optional predicate; a caught exception it rejects is re-raised at once
        cancel_event: When set, pending waits end and no further attempt is made

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all attempts failed or retrying was cancelled
    """
    if kwargs is None:
        kwargs = {}
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            result = func(*args, **kwargs)
        except exceptions as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt == attempts:
                raise MaxRetriesExceeded(attempt, e) from e

            wait = policy.wait_before(attempt, e)
            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}, "
                         f"retrying in {wait:.1f} seconds")

            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            if cancel_event is not None:
                if cancel_event.wait(wait):
                    logger.info("Shutdown requested, abandoning retries")
                    raise MaxRetriesExceeded(attempt, e) from e
            elif wait > 0:
                time.sleep(wait)
            continue

        if attempt > 1:
            logger.info(f"Operation succeeded on attempt {attempt}")
        return result


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if a failed call is worth another attempt.

    A failure without an HTTP ``status_code`` never got a response (socket,
    TLS or timeout error) and is always retried. Responses are retried only
    for 429 and 5xx.
    """
    status_code = getattr(exception, 'status_code', None)
    if not isinstance(status_code, int):
        return True
    return status_code == 429 or 500 <= status_code < 600


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """Callback that logs each retry of ``operation_name`` as a warning."""
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
