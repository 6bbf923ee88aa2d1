"""Recurring purchase plans and their execution scheduler.

Plan lifecycle: ACTIVE <-> PAUSED, and either -> CANCELLED (terminal).
At most one live (active or paused) plan exists per instrument.

tick() walks every due ACTIVE plan under the scheduler lock:
1. Read the last-known price from the PriceSeriesStore (never fetches)
2. Buy through the HoldingsLedger
3. Append an ExecutionRecord, success or failure
4. Advance next_execution_at past ``now``

A failed cycle is not retried early; it waits for the next scheduled date.
Cycles missed entirely (process down for several periods) are skipped, not
replayed, so an outage never turns into a burst of purchases.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from invest.data.store import PortfolioStore
from invest.exceptions import (
    DuplicateActivePlan,
    InsufficientFunds,
    InvalidTransition,
    PlanNotFound,
)
from invest.ledger.holdings import HoldingsLedger
from invest.logging import bound_context, get_logger
from invest.market_data.price_store import PriceSeriesStore
from invest.models import (
    ExecutionErrorReason,
    ExecutionRecord,
    Frequency,
    PlanStatus,
    RecurringPurchase,
    utc_now,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")


class RecurringScheduler:
    """Owns recurring plans and executes them when due.

    Args:
        ledger: Ledger every purchase goes through.
        prices: Shared last-known price cache.
        store: Optional durable store for plans and execution records.
        fee_rate_bps: Fee applied to scheduled buys; None uses the ledger default.
        max_price_age_seconds: Quotes older than this still execute, but are
            logged as stale. None disables the check.
        history_limit: Execution records kept in memory, newest first; the
            store keeps the full history.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        ledger: HoldingsLedger,
        prices: PriceSeriesStore,
        store: PortfolioStore | None = None,
        fee_rate_bps: int | None = None,
        max_price_age_seconds: float | None = None,
        history_limit: int = 10_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._ledger = ledger
        self._prices = prices
        self._store = store
        self._fee_rate_bps = fee_rate_bps
        self._max_price_age = max_price_age_seconds
        self._history_limit = history_limit
        self._clock = clock
        self._plans: dict[str, RecurringPurchase] = {}
        self._executions: list[ExecutionRecord] = []
        self._lock = asyncio.Lock()

    # ──────────────────────────────────────────────
    # Plan lifecycle
    # ──────────────────────────────────────────────

    async def create(
        self,
        instrument_id: str,
        amount_per_execution: Decimal,
        frequency: Frequency,
    ) -> RecurringPurchase:
        """Create an ACTIVE plan whose first run is one period from now.

        Raises:
            ValueError: If the amount is not positive.
            DuplicateActivePlan: If the instrument already has a live plan.
        """
        if amount_per_execution <= 0:
            raise ValueError(
                f"amount_per_execution must be > 0, got {amount_per_execution}"
            )

        async with self._lock:
            existing = self._live_plan_for(instrument_id)
            if existing is not None:
                raise DuplicateActivePlan(
                    f"Plan {existing.id} is already {existing.status.value} for {instrument_id}"
                )

            created_at = self._clock()
            plan = RecurringPurchase(
                id=uuid4().hex[:16],
                instrument_id=instrument_id,
                amount_per_execution=amount_per_execution,
                frequency=frequency,
                status=PlanStatus.ACTIVE,
                next_execution_at=frequency.next_date(created_at),
                created_at=created_at,
            )
            await self._save(plan)

        logger.info(
            "recurring_plan_created",
            plan_id=plan.id,
            instrument_id=instrument_id,
            amount=str(amount_per_execution),
            frequency=frequency.value,
            next_execution_at=plan.next_execution_at.isoformat(),
        )
        return plan

    async def pause(self, plan_id: str) -> RecurringPurchase:
        """ACTIVE -> PAUSED.

        Raises:
            PlanNotFound: Unknown plan id.
            InvalidTransition: Plan is not ACTIVE.
        """
        return await self._transition(plan_id, "pause", (PlanStatus.ACTIVE,), PlanStatus.PAUSED)

    async def resume(self, plan_id: str) -> RecurringPurchase:
        """PAUSED -> ACTIVE, next run one period from now.

        Cycles missed while paused are not fired retroactively.

        Raises:
            PlanNotFound: Unknown plan id.
            InvalidTransition: Plan is not PAUSED.
        """
        return await self._transition(plan_id, "resume", (PlanStatus.PAUSED,), PlanStatus.ACTIVE)

    async def cancel(self, plan_id: str) -> RecurringPurchase:
        """ACTIVE or PAUSED -> CANCELLED. Irreversible.

        Raises:
            PlanNotFound: Unknown plan id.
            InvalidTransition: Plan is already CANCELLED.
        """
        return await self._transition(
            plan_id, "cancel", (PlanStatus.ACTIVE, PlanStatus.PAUSED), PlanStatus.CANCELLED
        )

    async def _transition(
        self,
        plan_id: str,
        action: str,
        allowed_from: tuple[PlanStatus, ...],
        target: PlanStatus,
    ) -> RecurringPurchase:
        async with self._lock:
            plan = self._require_plan(plan_id)
            if plan.status not in allowed_from:
                raise InvalidTransition(
                    f"Cannot {action} plan {plan_id} in status {plan.status.value}"
                )
            if target is PlanStatus.ACTIVE:
                updated = replace(
                    plan,
                    status=target,
                    next_execution_at=plan.frequency.next_date(self._clock()),
                )
            else:
                updated = replace(plan, status=target)
            await self._save(updated)

        logger.info(
            "recurring_plan_transition",
            plan_id=plan_id,
            action=action,
            from_status=plan.status.value,
            to_status=target.value,
        )
        return updated

    # ──────────────────────────────────────────────
    # Execution
    # ──────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> list[ExecutionRecord]:
        """Execute every ACTIVE plan due at ``now``. Returns the new records.

        Each plan runs at most once per call and its due date is advanced
        before the next plan is looked at, so repeated calls for the same
        ``now`` never charge twice.
        """
        now = now or self._clock()
        records: list[ExecutionRecord] = []

        async with self._lock:
            with bound_context(tick_at=now.isoformat()):
                for plan_id in list(self._plans):
                    plan = self._plans[plan_id]
                    if not plan.is_due(now):
                        continue
                    try:
                        records.append(await self._execute(plan, now))
                    except Exception:
                        logger.error(
                            "recurring_execution_error",
                            plan_id=plan.id,
                            instrument_id=plan.instrument_id,
                            exc_info=True,
                        )

                if records:
                    logger.info(
                        "recurring_tick_complete",
                        executed=sum(1 for r in records if r.success),
                        failed=sum(1 for r in records if not r.success),
                    )
        return records

    async def _execute(self, plan: RecurringPurchase, now: datetime) -> ExecutionRecord:
        # Caller holds self._lock.
        scheduled_for = plan.next_execution_at
        record_id = uuid4().hex[:16]
        price = await self._prices.get_price(plan.instrument_id)

        error_reason: ExecutionErrorReason | None = None
        if price is None or price <= 0:
            error_reason = ExecutionErrorReason.PRICE_UNAVAILABLE
        else:
            await self._check_price_age(plan)
            try:
                result = await self._ledger.buy(
                    plan.instrument_id,
                    plan.amount_per_execution,
                    price,
                    self._fee_rate_bps,
                )
            except InsufficientFunds:
                error_reason = ExecutionErrorReason.INSUFFICIENT_FUNDS

        next_at = self._advance(plan, now)

        if error_reason is None:
            record = ExecutionRecord(
                id=record_id,
                recurring_purchase_id=plan.id,
                instrument_id=plan.instrument_id,
                amount_requested=plan.amount_per_execution,
                shares_acquired=result.shares_acquired,
                success=True,
                executed_at=now,
                scheduled_for=scheduled_for,
                price_per_share=result.price_per_share,
                fee_charged=result.fee_charged,
            )
            updated = replace(
                plan,
                next_execution_at=next_at,
                purchase_count=plan.purchase_count + 1,
                total_invested=plan.total_invested + plan.amount_per_execution,
                last_execution_at=now,
            )
            logger.info(
                "recurring_purchase_executed",
                plan_id=plan.id,
                instrument_id=plan.instrument_id,
                amount=str(plan.amount_per_execution),
                shares=str(result.shares_acquired),
                price=str(result.price_per_share),
                next_execution_at=next_at.isoformat(),
            )
        else:
            record = ExecutionRecord(
                id=record_id,
                recurring_purchase_id=plan.id,
                instrument_id=plan.instrument_id,
                amount_requested=plan.amount_per_execution,
                shares_acquired=_ZERO,
                success=False,
                executed_at=now,
                scheduled_for=scheduled_for,
                error_reason=error_reason,
            )
            updated = replace(plan, next_execution_at=next_at)
            logger.warning(
                "recurring_purchase_failed",
                plan_id=plan.id,
                instrument_id=plan.instrument_id,
                reason=error_reason.value,
                next_execution_at=next_at.isoformat(),
            )

        # The buy is already committed, so the plan advances in memory even
        # if the write below fails.
        self._plans[plan.id] = updated
        self._append_execution(record)
        if self._store is not None:
            await self._store.record_execution(updated, record)
        return record

    async def _check_price_age(self, plan: RecurringPurchase) -> None:
        if self._max_price_age is None:
            return
        age = await self._prices.get_price_age(plan.instrument_id)
        if age is not None and age > self._max_price_age:
            logger.warning(
                "recurring_price_stale",
                plan_id=plan.id,
                instrument_id=plan.instrument_id,
                age_seconds=round(age, 1),
                max_age_seconds=self._max_price_age,
            )

    def _append_execution(self, record: ExecutionRecord) -> None:
        self._executions.append(record)
        overflow = len(self._executions) - self._history_limit
        if overflow > 0:
            del self._executions[:overflow]

    def _advance(self, plan: RecurringPurchase, now: datetime) -> datetime:
        next_at = plan.frequency.next_date(plan.next_execution_at)
        skipped = 0
        while next_at <= now:
            next_at = plan.frequency.next_date(next_at)
            skipped += 1
        if skipped:
            logger.warning(
                "recurring_cycles_skipped",
                plan_id=plan.id,
                skipped=skipped,
                next_execution_at=next_at.isoformat(),
            )
        return next_at

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    def list_plans(self, status: PlanStatus | None = None) -> list[RecurringPurchase]:
        plans = sorted(self._plans.values(), key=lambda p: p.created_at)
        if status is None:
            return plans
        return [p for p in plans if p.status is status]

    def get_plan(self, plan_id: str) -> RecurringPurchase:
        """Raises PlanNotFound for an unknown id."""
        return self._require_plan(plan_id)

    def get_plan_for_instrument(self, instrument_id: str) -> RecurringPurchase | None:
        """The instrument's live plan, if any."""
        return self._live_plan_for(instrument_id)

    def has_live_plan(self, instrument_id: str) -> bool:
        return self._live_plan_for(instrument_id) is not None

    def get_execution_history(
        self, plan_id: str | None = None, limit: int | None = None
    ) -> list[ExecutionRecord]:
        """Execution records, most recent first."""
        records = [
            r
            for r in reversed(self._executions)
            if plan_id is None or r.recurring_purchase_id == plan_id
        ]
        return records[:limit] if limit is not None else records

    def total_monthly_investment(self) -> Decimal:
        """Projected monthly spend across ACTIVE plans."""
        return sum(
            (
                p.amount_per_execution * p.frequency.monthly_multiplier
                for p in self._plans.values()
                if p.status is PlanStatus.ACTIVE
            ),
            _ZERO,
        )

    def total_invested(self) -> Decimal:
        return sum((p.total_invested for p in self._plans.values()), _ZERO)

    def total_executions(self) -> int:
        return sum(p.purchase_count for p in self._plans.values())

    def next_due_at(self) -> datetime | None:
        """Earliest next_execution_at among ACTIVE plans."""
        due = [
            p.next_execution_at
            for p in self._plans.values()
            if p.status is PlanStatus.ACTIVE
        ]
        return min(due) if due else None

    async def load(self) -> int:
        """Restore plans and execution history from the store. Returns plan count."""
        if self._store is None:
            return 0
        plans = await self._store.load_plans()
        executions = await self._store.load_executions(limit=self._history_limit)
        async with self._lock:
            self._plans = {p.id: p for p in plans}
            self._executions = []
            for record in reversed(executions):
                self._append_execution(record)
        logger.info("recurring_plans_loaded", plans=len(plans), executions=len(executions))
        return len(plans)

    # ──────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────

    def _require_plan(self, plan_id: str) -> RecurringPurchase:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(f"No recurring plan with id {plan_id}")
        return plan

    def _live_plan_for(self, instrument_id: str) -> RecurringPurchase | None:
        for plan in self._plans.values():
            if plan.instrument_id == instrument_id and plan.is_live:
                return plan
        return None

    async def _save(self, plan: RecurringPurchase) -> None:
        # Persist first so a failed write leaves memory unchanged.
        if self._store is not None:
            await self._store.save_plan(plan)
        self._plans[plan.id] = plan
