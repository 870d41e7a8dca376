"""
Poll-until-converged helper shared by every wait-for-X step.
"""

import logging
import time
from typing import Any, Callable, Optional, Tuple, Type

from errors import ConvergenceTimeout

logger = logging.getLogger(__name__)


def poll_until(
    probe: Callable[[], Any],
    predicate: Callable[[Any], bool],
    interval: float,
    timeout: float,
    what: str,
    error_cls: Type[ConvergenceTimeout] = ConvergenceTimeout,
    fatal: Tuple[Type[BaseException], ...] = (),
    progress_every: Optional[float] = None,
    describe: Callable[[Any], str] = repr,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """
    Repeatedly observe external state until a predicate holds.

    Any exception raised by ``probe`` counts as "not converged yet" unless it
    is an instance of one of the ``fatal`` types, in which case it propagates
    immediately. The last sleep is clipped to the remaining budget, so on
    timeout the elapsed time is at least ``timeout`` and at most
    ``timeout + interval`` (plus the duration of the final probe).

    Args:
        probe: Returns the current observed state
        predicate: True once the observed state is the desired one
        interval: Seconds between probes
        timeout: Maximum seconds to wait
        what: Human-readable description of what is awaited
        error_cls: ConvergenceTimeout subclass raised on timeout
        fatal: Exception types that abort polling instead of being retried
        progress_every: Log a progress line at most this often (seconds)
        describe: Formats an observed state for progress/timeout messages
        sleep: Sleep function
        clock: Monotonic clock function

    Returns:
        The observed state that satisfied the predicate

    Raises:
        ConvergenceTimeout: (as error_cls) if the budget is exhausted
    """
    start = clock()
    last_state: Any = None
    last_error: Optional[BaseException] = None
    last_progress = start

    while True:
        try:
            last_state = probe()
            last_error = None
            if predicate(last_state):
                return last_state
        except fatal:
            raise
        except Exception as e:
            last_error = e
            logger.debug(f"Probe for {what} failed, treating as not ready: {e}")

        now = clock()
        elapsed = now - start
        if elapsed >= timeout:
            logger.error(
                f"Timeout waiting for {what} after {elapsed:.0f}s "
                f"(last observed: {describe(last_state)})"
            )
            raise error_cls(
                what,
                timeout=timeout,
                elapsed=elapsed,
                last_state=last_state,
                last_error=last_error,
            )

        if progress_every and now - last_progress >= progress_every:
            logger.info(
                f"Still waiting for {what}... ({describe(last_state)}, {elapsed:.0f}s elapsed)"
            )
            last_progress = now

        sleep(min(interval, timeout - elapsed))
