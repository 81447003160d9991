"""
Loyalty Ledger - Accrual Reconciliation Worker

State Flow (one long-lived loop, timer driven):
IDLE -> FETCHING -> RECONCILING -> IDLE
           |
           +-> IDLE (no pending orders, or storage failure)

RECONCILING fans out one unit per order and waits for all of them, so at most
one batch is ever in flight. Per unit:

    cooldown -> permit -> (cooldown tripped meanwhile? start over) -> query -> apply

A 429 trips the shared cooldown; every sibling parks before its next query
until it expires, then takes a fresh permit so calls stay 1/R apart after the
pause. Failures stay inside their unit.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from loyalty.core.errors import (
    AccrualError,
    AccrualRateLimited,
    LedgerStoreError,
    NoPendingOrders,
    OrderNotRegistered,
)
from loyalty.models.order import PendingOrder, Verdict
from loyalty.services.rate_limiter import Cooldown, RateLimiter

logger = logging.getLogger(__name__)


class VerdictSource(Protocol):
    async def query_verdict(self, order_number: str) -> Verdict: ...


class VerdictSink(Protocol):
    async def fetch_pending_batch(self, limit: int) -> list[PendingOrder]: ...

    async def apply_verdict(
        self, order: PendingOrder, user_id: uuid.UUID, amount: Decimal
    ) -> bool: ...


class UnitOutcome(str, Enum):
    """How one order's reconciliation ended."""
    APPLIED = "applied"
    SKIPPED = "skipped"  # already terminal in storage
    NOT_READY = "not_ready"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


@dataclass
class CycleReport:
    """Tally of one fetch-and-reconcile cycle."""
    fetched: int = 0
    applied: int = 0
    skipped: int = 0
    not_ready: int = 0
    rate_limited: int = 0
    failed: int = 0

    def record(self, outcome: UnitOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)


class AccrualWorker:
    """
    Periodic reconciler between the ledger store and the accrual system.

    Runs until its task is cancelled or stop() is called. Cancellation
    reaches whatever the loop is awaiting (sleep, permit, cooldown, HTTP call,
    transaction); stop() lets the current cycle finish first.
    """

    def __init__(
        self,
        store: VerdictSink,
        client: VerdictSource,
        limiter: RateLimiter,
        cooldown: Optional[Cooldown] = None,
        *,
        poll_interval: float = 0.3,
        batch_size: int = 10,
        penalty_seconds: float = 600.0,
    ):
        self.store = store
        self.client = client
        self.limiter = limiter
        self.cooldown = cooldown or Cooldown()
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.penalty_seconds = penalty_seconds

        self._stopping = asyncio.Event()
        self.running = False
        self.cycles = 0

    @classmethod
    def from_settings(cls, store: VerdictSink, client: VerdictSource, settings) -> "AccrualWorker":
        return cls(
            store,
            client,
            RateLimiter(settings.ACCRUAL_RATE_LIMIT),
            poll_interval=settings.poll_interval_seconds,
            batch_size=settings.ACCRUAL_BATCH_SIZE,
            penalty_seconds=settings.ACCRUAL_PENALTY_SECONDS,
        )

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stopping.set()

    async def run(self) -> None:
        logger.info(
            f"Accrual worker started (interval={self.poll_interval}s, "
            f"batch={self.batch_size}, rate={self.limiter.rate}/s)"
        )
        self.running = True
        try:
            while not self._stopping.is_set():
                if await self._idle():
                    break
                try:
                    await self.run_cycle()
                except Exception:
                    # run_cycle contains its own failures; this is the last line
                    logger.exception("Accrual cycle crashed")
        finally:
            self.running = False
            logger.info(f"Accrual worker stopped after {self.cycles} cycles")

    async def _idle(self) -> bool:
        """Sleep one poll interval. Returns True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_cycle(self) -> CycleReport:
        """Fetch one batch and reconcile every order in it."""
        self.cycles += 1
        report = CycleReport()

        await self.cooldown.wait()

        try:
            batch = await self.store.fetch_pending_batch(self.batch_size)
        except NoPendingOrders:
            return report
        except LedgerStoreError as e:
            logger.error(f"Failed to fetch pending orders: {e}")
            return report

        report.fetched = len(batch)
        results = await asyncio.gather(
            *(self._reconcile(order) for order in batch),
            return_exceptions=True,
        )
        for order, result in zip(batch, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Unexpected error reconciling order {order.number}",
                    exc_info=result,
                    extra={"order_number": order.number},
                )
                report.record(UnitOutcome.FAILED)
            else:
                report.record(result)

        logger.debug(
            f"Accrual cycle {self.cycles}: {report}",
            extra={"fetched": report.fetched, "applied": report.applied, "failed": report.failed},
        )
        return report

    async def _permit(self) -> None:
        """Wait out the cooldown, then take a permit granted outside of it."""
        while True:
            await self.cooldown.wait()
            await self.limiter.acquire()
            if not self.cooldown.active:
                return

    async def _reconcile(self, order: PendingOrder) -> UnitOutcome:
        await self._permit()

        try:
            verdict = await self.client.query_verdict(order.number)
        except OrderNotRegistered:
            return UnitOutcome.NOT_READY
        except AccrualRateLimited as e:
            penalty = e.retry_after if e.retry_after is not None else self.penalty_seconds
            self.cooldown.trip(penalty)
            logger.warning(
                f"Accrual system rate limited on order {order.number}, backing off {penalty:.0f}s",
                extra={"order_number": order.number, "retry_after": penalty},
            )
            return UnitOutcome.RATE_LIMITED
        except AccrualError as e:
            logger.warning(f"Accrual query failed: {e}", extra={"order_number": order.number})
            return UnitOutcome.FAILED

        order.apply(verdict)
        try:
            applied = await self.store.apply_verdict(order, order.user_id, verdict.credit)
        except LedgerStoreError as e:
            # storage is authoritative; the order is still pending there
            logger.error(
                f"Failed to apply verdict for order {order.number}: {e}",
                extra={"order_number": order.number, "status": order.status.value},
            )
            return UnitOutcome.FAILED

        return UnitOutcome.APPLIED if applied else UnitOutcome.SKIPPED
