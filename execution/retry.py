"""
Retry combinator — bounded attempts with a fixed or growing delay.

Used for order-status polling, liquidation price read-back and market data
reads. One call site shape for all of them:

    outcome = await retry_async(
        lambda: venue.get_order(order_id),
        attempts=3, delay=0.3,
        until=lambda o: o.status == 'filled',
        label='order-poll',
    )
    if outcome.ok:
        order = outcome.value
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from loguru import logger


@dataclass
class RetryOutcome:
    value: Any = None           # last value returned (even if `until` never passed)
    attempts: int = 0
    ok: bool = False            # True when a value satisfied `until`
    error: Optional[BaseException] = None

    def unwrap(self):
        """Return the accepted value or re-raise the last error."""
        if self.ok:
            return self.value
        if self.error is not None:
            raise self.error
        return self.value


async def retry_async(
    call: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    delay: float = 0.5,
    until: Optional[Callable[[Any], bool]] = None,
    retry_on: tuple = (Exception,),
    backoff: float = 1.0,
    label: str = '',
) -> RetryOutcome:
    """
    Await `call` up to `attempts` times.

    Args:
        call:     zero-arg coroutine factory
        attempts: max number of calls
        delay:    sleep before the 2nd call (multiplied by `backoff` after each)
        until:    acceptance predicate; None accepts any returned value
        retry_on: exception types that trigger another attempt, others propagate
        backoff:  delay multiplier, 1.0 = fixed delay
        label:    tag for debug logs

    Returns:
        RetryOutcome — never raises for exceptions listed in `retry_on`.
    """
    outcome = RetryOutcome()
    wait = delay
    for n in range(1, attempts + 1):
        outcome.attempts = n
        try:
            value = await call()
        except retry_on as e:
            outcome.error = e
            logger.debug(f'[RETRY] {label} attempt {n}/{attempts} failed: {e}')
        else:
            outcome.value = value
            outcome.error = None
            if until is None or until(value):
                outcome.ok = True
                return outcome
            logger.debug(f'[RETRY] {label} attempt {n}/{attempts} not accepted yet')

        if n < attempts and wait > 0:
            await asyncio.sleep(wait)
            wait *= backoff

    return outcome
