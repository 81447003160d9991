"""
Loyalty Ledger - Accrual Worker Tests

Cycle scenarios against a real ledger store with a scripted accrual client:
- mixed verdicts in one batch
- one 429 in a batch of five
- failures contained to their unit
- stop() and cancellation
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from loyalty.core.errors import (
    AccrualRateLimited,
    AccrualUnavailable,
    LedgerStoreError,
    NoPendingOrders,
    OrderNotRegistered,
)
from loyalty.models.order import AccrualStatus, OrderStatus, PendingOrder, Verdict
from loyalty.services.accrual_worker import AccrualWorker, CycleReport, UnitOutcome
from loyalty.services.ledger_store import LedgerStore
from loyalty.services.rate_limiter import Cooldown, RateLimiter


def _worker(store, client, rate: int = 100, penalty: float = 600.0, **kwargs) -> AccrualWorker:
    return AccrualWorker(
        store,
        client,
        RateLimiter(rate),
        poll_interval=kwargs.pop("poll_interval", 0.01),
        batch_size=kwargs.pop("batch_size", 10),
        penalty_seconds=penalty,
        **kwargs,
    )


def _pending(number: str) -> PendingOrder:
    return PendingOrder(
        id=uuid.uuid4(),
        number=number,
        user_id=uuid.uuid4(),
        status=OrderStatus.NEW,
        uploaded_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


class StubStore:
    """Store double for cycles that never reach the database."""

    def __init__(self, batch=None, fetch_error=None):
        self.batch = batch or []
        self.fetch_error = fetch_error
        self.applied: list[tuple[str, Decimal]] = []

    async def fetch_pending_batch(self, limit):
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.batch)[:limit]

    async def apply_verdict(self, order, user_id, amount):
        self.applied.append((order.number, amount))
        return True


class FlakyStore(LedgerStore):
    """Real store whose commit fails for chosen order numbers."""

    def __init__(self, *args, fail_numbers=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_numbers = set(fail_numbers)

    async def apply_verdict(self, order, user_id, amount):
        if order.number in self.fail_numbers:
            raise LedgerStoreError("could not serialize access")
        return await super().apply_verdict(order, user_id, amount)


def _processed(number: str, accrual: str) -> Verdict:
    return Verdict(order=number, status=AccrualStatus.PROCESSED, accrual=Decimal(accrual))


class TestCycleScenarios:
    """Batch-level behaviour end to end through the store."""

    def test_mixed_batch_processed_invalid_not_ready(self, store, seed, scripted_client):
        client = scripted_client({
            "1001": _processed("1001", "10.00"),
            "1002": Verdict(order="1002", status=AccrualStatus.INVALID, accrual=Decimal("0")),
            "1003": OrderNotRegistered("1003"),
        })

        async def scenario():
            user_id = await seed.add_user("alice")
            for number in ("1001", "1002", "1003"):
                await seed.add_order(user_id, number)

            report = await _worker(store, client).run_cycle()
            return (
                report,
                user_id,
                [await seed.get_order(n) for n in ("1001", "1002", "1003")],
                await seed.get_balance(user_id),
                await store.fetch_pending_batch(10),
            )

        report, user_id, rows, balance, still_pending = asyncio.run(scenario())

        assert report == CycleReport(fetched=3, applied=2, not_ready=1)
        assert (rows[0].status, rows[0].accrual) == ("PROCESSED", Decimal("10.00"))
        assert (rows[1].status, rows[1].accrual) == ("INVALID", Decimal("0"))
        assert rows[2].status == "NEW"
        assert balance.current == Decimal("10.00")
        assert [order.number for order in still_pending] == ["1003"]

    def test_rate_limited_unit_does_not_block_siblings(self, store, seed, scripted_client):
        replies = {"2000": AccrualRateLimited("2000")}
        for i in range(1, 5):
            replies[f"200{i}"] = _processed(f"200{i}", "1.50")
        client = scripted_client(replies)
        worker = _worker(store, client, rate=100, penalty=0.2)

        async def scenario():
            user_id = await seed.add_user("alice")
            for number in sorted(replies):
                await seed.add_order(user_id, number)

            started = time.monotonic()
            report = await worker.run_cycle()
            elapsed = time.monotonic() - started
            return report, elapsed, await seed.get_order("2000"), await seed.get_balance(user_id)

        report, elapsed, limited_row, balance = asyncio.run(scenario())

        assert report == CycleReport(fetched=5, applied=4, rate_limited=1)
        assert limited_row.status == "NEW", "rate limited unit must not write"
        assert balance.current == Decimal("6.00")
        # siblings waited out the shared cooldown before querying
        assert elapsed >= 0.15
        assert sorted(client.calls) == sorted(replies)

    def test_retry_after_overrides_penalty(self, scripted_client):
        client = scripted_client({"3001": AccrualRateLimited("3001", retry_after=30)})
        worker = _worker(StubStore([_pending("3001")]), client, penalty=600)

        report = asyncio.run(worker.run_cycle())

        assert report.rate_limited == 1
        assert 25 < worker.cooldown.remaining <= 30

    def test_missing_retry_after_uses_penalty(self, scripted_client):
        client = scripted_client({"3101": AccrualRateLimited("3101")})
        worker = _worker(StubStore([_pending("3101")]), client, penalty=600)

        asyncio.run(worker.run_cycle())

        assert worker.cooldown.remaining > 590


class TimedClient:
    """Oracle double recording when each query went out."""

    def __init__(self, throttled: str):
        self.throttled = throttled
        self.sent_at: list[float] = []

    async def query_verdict(self, order_number: str) -> Verdict:
        self.sent_at.append(time.monotonic())
        if order_number == self.throttled:
            raise AccrualRateLimited(order_number)
        raise OrderNotRegistered(order_number)


class TestRateBoundAfterCooldown:
    """Siblings released by an expired cooldown are spaced like any other calls."""

    def test_calls_stay_spaced_after_429(self):
        client = TimedClient(throttled="0")
        batch = [_pending(str(i)) for i in range(10)]
        worker = _worker(StubStore(batch), client, rate=10, penalty=0.3)

        report = asyncio.run(worker.run_cycle())

        assert report == CycleReport(fetched=10, not_ready=9, rate_limited=1)
        sent = sorted(client.sent_at)
        gaps = [b - a for a, b in zip(sent, sent[1:])]
        assert min(gaps) >= 0.09, f"burst after cooldown: {gaps}"

    def test_no_call_inside_cooldown(self):
        client = TimedClient(throttled="0")
        batch = [_pending(str(i)) for i in range(4)]
        worker = _worker(StubStore(batch), client, rate=10, penalty=0.5)

        asyncio.run(worker.run_cycle())

        first, rest = client.sent_at[0], sorted(client.sent_at[1:])
        assert rest[0] - first >= 0.45

    def test_single_warning_per_429(self, caplog, scripted_client):
        client = scripted_client({"9001": AccrualRateLimited("9001", retry_after=5)})
        worker = _worker(StubStore([_pending("9001")]), client)

        with caplog.at_level(logging.DEBUG, logger="loyalty"):
            asyncio.run(worker.run_cycle())

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert warnings[0].order_number == "9001"
        assert warnings[0].retry_after == 5


class TestFailureContainment:
    """One order's failure never aborts its siblings or the loop."""

    def test_commit_failure_is_contained(self, session_maker, seed, scripted_client):
        store = FlakyStore(session_maker, isolation_level="SERIALIZABLE", fail_numbers={"4002"})
        client = scripted_client({
            "4001": _processed("4001", "2.00"),
            "4002": _processed("4002", "3.00"),
            "4003": _processed("4003", "4.00"),
        })

        async def scenario():
            user_id = await seed.add_user("alice")
            for number in ("4001", "4002", "4003"):
                await seed.add_order(user_id, number)
            report = await _worker(store, client).run_cycle()
            return report, await seed.get_balance(user_id), await store.fetch_pending_batch(10)

        report, balance, still_pending = asyncio.run(scenario())

        assert report == CycleReport(fetched=3, applied=2, failed=1)
        assert balance.current == Decimal("6.00")
        assert [order.number for order in still_pending] == ["4002"]

    def test_transient_and_unexpected_errors_are_contained(self, scripted_client):
        client = scripted_client({
            "5001": AccrualUnavailable("5001", "connection reset"),
            "5002": RuntimeError("bug in client"),
            "5003": _processed("5003", "1.00"),
        })
        store = StubStore([_pending(n) for n in ("5001", "5002", "5003")])

        report = asyncio.run(_worker(store, client).run_cycle())

        assert report == CycleReport(fetched=3, applied=1, failed=2)
        assert store.applied == [("5003", Decimal("1.00"))]

    def test_no_pending_orders_is_silent(self, scripted_client):
        store = StubStore(fetch_error=NoPendingOrders())
        client = scripted_client({})

        report = asyncio.run(_worker(store, client).run_cycle())

        assert report == CycleReport()
        assert client.calls == []

    def test_fetch_failure_returns_to_idle(self, scripted_client):
        store = StubStore(fetch_error=LedgerStoreError("connection refused"))

        report = asyncio.run(_worker(store, scripted_client({})).run_cycle())

        assert report == CycleReport()

    def test_batch_size_bounds_the_fetch(self, scripted_client):
        batch = [_pending(f"60{i:02d}") for i in range(15)]
        client = scripted_client({o.number: OrderNotRegistered(o.number) for o in batch})

        report = asyncio.run(_worker(StubStore(batch), client, batch_size=10).run_cycle())

        assert report.fetched == 10
        assert report.not_ready == 10


class TestLifecycle:
    """Loop start, graceful stop and prompt cancellation."""

    def test_run_reconciles_until_stopped(self, store, seed, scripted_client):
        client = scripted_client({"7001": _processed("7001", "7.00")})
        worker = _worker(store, client, poll_interval=0.01)

        async def scenario():
            user_id = await seed.add_user("alice")
            await seed.add_order(user_id, "7001")

            task = asyncio.create_task(worker.run())
            for _ in range(200):
                if (await seed.get_order("7001")).status == "PROCESSED":
                    break
                await asyncio.sleep(0.01)
            worker.stop()
            await asyncio.wait_for(task, timeout=2)
            return await seed.get_balance(user_id)

        balance = asyncio.run(scenario())

        assert balance.current == Decimal("7.00")
        assert worker.running is False
        assert worker.cycles >= 1
        assert client.calls.count("7001") == 1, "terminal order must not be queried again"

    def test_cancel_interrupts_straggling_oracle_call(self):
        class HangingClient:
            async def query_verdict(self, order_number):
                await asyncio.sleep(3600)

        worker = _worker(StubStore([_pending("8001")]), HangingClient())

        async def scenario():
            task = asyncio.create_task(worker.run_cycle())
            await asyncio.sleep(0.05)
            started = time.monotonic()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return time.monotonic() - started

        assert asyncio.run(scenario()) < 1.0

    def test_cancel_interrupts_cooldown(self, scripted_client):
        cooldown = Cooldown()
        cooldown.trip(3600)
        worker = _worker(StubStore([_pending("8101")]), scripted_client({}), cooldown=cooldown)

        async def scenario():
            task = asyncio.create_task(worker.run())
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert worker.running is False


class TestCycleReport:
    def test_record_counts_outcomes(self):
        report = CycleReport(fetched=3)
        report.record(UnitOutcome.APPLIED)
        report.record(UnitOutcome.APPLIED)
        report.record(UnitOutcome.SKIPPED)

        assert report == CycleReport(fetched=3, applied=2, skipped=1)
