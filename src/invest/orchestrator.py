"""Engine orchestrator -- runs the price monitor and the recurring purchase loop.

Each iteration of the main loop:
  1. TICK: execute recurring plans that are due, under the cycle lock
  2. LOG: cycle summary
  3. SLEEP: SchedulerSettings.tick_interval seconds

Prices refresh on their own cadence inside PriceMonitor; the tick only
reads last-known prices so it never waits on the network.
"""

import asyncio
from datetime import datetime

from invest.config import AppSettings
from invest.ledger.holdings import HoldingsLedger
from invest.logging import get_logger
from invest.market_data.price_monitor import PriceMonitor
from invest.market_data.price_store import PriceSeriesStore
from invest.models import ExecutionRecord, PlanStatus, utc_now
from invest.scheduler.recurring import RecurringScheduler

logger = get_logger(__name__)


class Orchestrator:
    """Wires the long-running engine loops together.

    Args:
        settings: Application settings (tick interval, scheduler switch).
        ledger: The holdings ledger, for status reporting.
        scheduler: Recurring purchase scheduler driven by the tick loop.
        price_store: Shared last-known prices, for valuation in status.
        price_monitor: Optional background price poller.
    """

    def __init__(
        self,
        settings: AppSettings,
        ledger: HoldingsLedger,
        scheduler: RecurringScheduler,
        price_store: PriceSeriesStore,
        price_monitor: PriceMonitor | None = None,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._scheduler = scheduler
        self._price_store = price_store
        self._price_monitor = price_monitor
        self._running = False
        self._cycle_lock = asyncio.Lock()
        self._last_tick_at: datetime | None = None
        self._cycles = 0

    async def start(self) -> None:
        """Start the price monitor, then run the tick loop until stop().

        Stops the price monitor on the way out, whatever ends the loop.
        """
        logger.info(
            "orchestrator_starting",
            tick_interval=self._settings.scheduler.tick_interval,
            scheduler_enabled=self._settings.scheduler.enabled,
        )
        self._track_plan_instruments()
        if self._price_monitor is not None:
            await self._price_monitor.start()

        self._running = True
        try:
            await self._run_loop()
        finally:
            if self._price_monitor is not None:
                await self._price_monitor.stop()
            logger.info("orchestrator_stopped")

    async def stop(self) -> None:
        """Signal the loop to stop after the current cycle."""
        logger.info("orchestrator_stopping_gracefully")
        self._running = False

    async def _run_loop(self) -> None:
        while self._running:
            try:
                if self._settings.scheduler.enabled:
                    await self.run_cycle()
                await asyncio.sleep(self._settings.scheduler.tick_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("orchestrator_cycle_error", error=str(e), exc_info=True)
                await asyncio.sleep(self._settings.scheduler.tick_interval)

    async def run_cycle(self, now: datetime | None = None) -> list[ExecutionRecord]:
        """Run one scheduler tick. Overlapping cycles are serialized."""
        async with self._cycle_lock:
            self._track_plan_instruments()
            records = await self._scheduler.tick(now)
            self._last_tick_at = now or utc_now()
            self._cycles += 1

        if records:
            logger.info(
                "orchestrator_cycle_complete",
                cycle=self._cycles,
                executions=len(records),
                cash_balance=str(self._ledger.cash_balance),
            )
        return records

    def _track_plan_instruments(self) -> None:
        if self._price_monitor is None:
            return
        for plan in self._scheduler.list_plans():
            if plan.is_live:
                self._price_monitor.track(plan.instrument_id)

    @property
    def is_running(self) -> bool:
        """Whether the main loop is active."""
        return self._running

    async def get_status(self) -> dict:
        """Return a summary of engine state.

        Returns:
            Dict with: running, cycles, last_tick_at, cash_balance,
            portfolio_value, active_plans, next_due_at, tracked_instruments.
        """
        prices = await self._price_store.get_prices()
        next_due = self._scheduler.next_due_at()
        return {
            "running": self._running,
            "cycles": self._cycles,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "cash_balance": str(self._ledger.cash_balance),
            "portfolio_value": str(self._ledger.valuation(prices)),
            "active_plans": len(self._scheduler.list_plans(PlanStatus.ACTIVE)),
            "next_due_at": next_due.isoformat() if next_due else None,
            "tracked_instruments": (
                self._price_monitor.instruments if self._price_monitor is not None else []
            ),
        }
