"""Cooperative cancellation shared by every stage of a batch run."""

import asyncio
import time

from loguru import logger


CANCEL_POLL_INTERVAL_SECONDS = 0.1


class CancellationToken:
    """
    A flag that in-flight work polls to decide whether to keep going.

    The token never interrupts a running await; callers check it at their own
    suspension points. Once tripped it stays tripped until ``reset`` is called.

    Examples:
        >>> token = CancellationToken()
        >>> token.cancelled
        False
        >>> token.cancel()
        >>> token.cancelled
        True

    """

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if not self._cancelled:
            logger.info("cancellation_requested")
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False


async def cancellable_delay(
    delay_ms: int,
    token: CancellationToken,
    *,
    poll_interval: float = CANCEL_POLL_INTERVAL_SECONDS,
) -> bool:
    """
    Sleep for ``delay_ms`` milliseconds, waking early if the token is tripped.

    The token is polled every ``poll_interval`` seconds, so cancellation latency
    does not depend on the length of the delay.

    Returns:
        True if the full delay elapsed, False if it was cut short by cancellation.

    """
    if delay_ms <= 0:
        return not token.cancelled

    deadline = time.monotonic() + delay_ms / 1000
    while not token.cancelled:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return True
        await asyncio.sleep(min(poll_interval, remaining))

    logger.debug("delay_interrupted_by_cancellation", delay_ms=delay_ms)
    return False
