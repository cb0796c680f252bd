"""
Periodic Drivers

The engine and the rate table never schedule themselves. These asyncio
drivers own the cadence:
- TickScheduler: engine.tick_all() every tick interval (default 100 ms)
- RateRefresher: rates.refresh() every refresh period
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional
import asyncio
import structlog

from ..rates.table import RateTable
from .engine import MeteringEngine

logger = structlog.get_logger()


class PeriodicDriver(ABC):
    """
    Runs a synchronous step on a fixed period.

    The loop lives on the event loop; each step runs in a worker thread so a
    slow feed or a long tick_all() never stalls other coroutines.
    """

    name = "driver"

    def __init__(self, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval_seconds
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @abstractmethod
    def step(self) -> None:
        """One unit of work. Exceptions are logged and the loop carries on."""

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        logger.info("driver_started", driver=self.name, interval_seconds=self.interval)
        try:
            while True:
                try:
                    await asyncio.to_thread(self.step)
                except Exception as e:
                    logger.error("driver_step_failed", driver=self.name, error=str(e), exc_info=True)
                self.runs += 1
                await asyncio.sleep(self.interval)
        finally:
            logger.info("driver_stopped", driver=self.name, runs=self.runs)

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class TickScheduler(PeriodicDriver):
    """Ticks every active session on a fixed period."""

    name = "tick_scheduler"

    def __init__(self, engine: MeteringEngine, interval_ms: int = 100):
        super().__init__(interval_ms / 1000)
        self.engine = engine

    def step(self) -> None:
        self.engine.tick_all()


class RateRefresher(PeriodicDriver):
    """Pulls a new rate snapshot on a fixed period."""

    name = "rate_refresher"

    def __init__(
        self,
        rates: RateTable,
        interval_seconds: float = 5,
        on_refresh: Optional[Callable[[bool], None]] = None,
    ):
        super().__init__(interval_seconds)
        self.rates = rates
        self.on_refresh = on_refresh

    def step(self) -> None:
        ok = self.rates.refresh()
        if self.on_refresh is not None:
            self.on_refresh(ok)
