"""Common utilities: clock and fixed-interval polling."""

import logging
import threading
import time
from typing import Any, Callable, Optional

from errors import PollCancelled

logger = logging.getLogger(__name__)


class Clock:
    """Wall clock used by polling loops. Tests substitute a fake."""

    def now(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def poll_until(
    fetch: Callable[[], Any],
    done: Callable[[Any], bool],
    interval: float,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    clock: Optional[Clock] = None,
    delay_first: bool = False,
    what: str = 'condition',
) -> tuple[bool, Any]:
    """Call fetch() every interval seconds until done(value) is true.

    Args:
        fetch: Returns the current value
        done: Predicate on the fetched value
        interval: Fixed seconds between calls (no backoff)
        timeout: Deadline in seconds; None polls forever
        cancel: Optional event; when set, polling stops with PollCancelled
        clock: Clock to use (default: real time)
        delay_first: Sleep before the first call instead of after it
        what: Description for log messages

    Returns:
        (satisfied, last_value) tuple. satisfied is False only when the
        deadline expired; last_value is the most recently fetched value.

    Raises:
        PollCancelled: If cancel was set
    """
    clock = clock or Clock()
    deadline = None if timeout is None else clock.now() + timeout
    value = None
    attempts = 0

    while True:
        if delay_first or attempts > 0:
            if deadline is not None and clock.now() >= deadline:
                logger.debug(f"Gave up waiting for {what} after {attempts} attempts")
                return False, value
            clock.sleep(interval)
        if cancel is not None and cancel.is_set():
            raise PollCancelled(what)
        value = fetch()
        attempts += 1
        if done(value):
            logger.debug(f"{what} reached after {attempts} attempts")
            return True, value
        logger.debug(f"Waiting for {what}, retrying in {interval}s...")
