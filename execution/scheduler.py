"""
Tick Scheduler — fixed-interval trigger for the lifecycle tick.

  - first tick fires immediately
  - a trigger that arrives while a tick is still running is skipped, not queued
  - a tick that reports `halted`, or raises FatalError, stops the scheduler
  - any other error is logged and the next interval proceeds
"""
import asyncio
from typing import Awaitable, Callable
from loguru import logger

from execution.errors import FatalError, TradingError


class TickScheduler:
    def __init__(self, tick: Callable[[], Awaitable], interval: float, on_halt=None):
        self.tick = tick
        self.interval = interval
        self.on_halt = on_halt
        self.skipped = 0
        self.completed = 0
        self.halt_reason = ''
        self._current: asyncio.Task | None = None
        self._stop = asyncio.Event()

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    @property
    def halted(self) -> bool:
        return bool(self.halt_reason)

    def stop(self):
        self._stop.set()

    def trigger(self) -> bool:
        """Start a tick unless one is in flight. Returns False when skipped."""
        if self.busy:
            self.skipped += 1
            logger.warning(f'[SCHED] Previous tick still running — skipping ({self.skipped} skipped)')
            return False
        self._current = asyncio.create_task(self._run_one())
        return True

    async def _run_one(self):
        try:
            outcome = await self.tick()
        except FatalError as e:
            await self._halt(f'fatal: {e}')
            return
        except TradingError as e:
            logger.error(f'[SCHED] Tick failed: {e}')
            return
        except Exception as e:
            logger.exception(f'[SCHED] Unhandled tick error: {e}')
            return
        self.completed += 1
        if getattr(outcome, 'halted', False):
            await self._halt('account guard closed all positions')

    async def _halt(self, reason: str):
        self.halt_reason = reason
        logger.critical(f'[SCHED] Halting: {reason}')
        self._stop.set()
        if self.on_halt is not None:
            await self.on_halt(reason)

    async def run(self):
        logger.info(f'[SCHED] Ticking every {self.interval:.0f}s')
        while not self._stop.is_set():
            self.trigger()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        if self.busy:
            await self._current
        logger.info(f'[SCHED] Stopped — {self.completed} ticks, {self.skipped} skipped')
