"""
Loyalty Ledger - Accrual System Mock
Stand-in for the external accrual system

This is a MOCK implementation.
In production the worker talks to the real accrual system.

Contract (same as the real system):
    - scripted order numbers answer with their scripted verdict
    - throttled queries answer 429 with Retry-After
    - unknown numbers answer 204, or a random verdict in random mode
"""

import random
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from loyalty.core.types import ZERO_POINTS
from loyalty.models.order import AccrualStatus, Verdict


@dataclass
class MockReply:
    """What the mock answers for one query."""
    status_code: int
    verdict: Optional[Verdict] = None
    retry_after: Optional[int] = None


class AccrualMock:
    """
    Mock Accrual System

    Scriptable per order number. In random mode unknown numbers get any
    status and an integer accrual below 1000.
    """

    def __init__(self, random_mode: bool = False, rng: Optional[random.Random] = None) -> None:
        self.random_mode = random_mode
        self._rng = rng or random.Random()
        self._verdicts: dict[str, Verdict] = {}
        self._throttle_remaining: int = 0
        self._retry_after: int = 60
        self._query_log: list[dict] = []

    def script(
        self,
        order_number: str,
        status: AccrualStatus,
        accrual: Optional[Decimal] = None,
    ) -> Verdict:
        """Fix the verdict returned for an order number."""
        verdict = Verdict(
            order=order_number,
            status=status,
            accrual=accrual if status == AccrualStatus.PROCESSED and accrual is not None else ZERO_POINTS,
        )
        self._verdicts[order_number] = verdict
        return verdict

    def throttle(self, queries: int, retry_after: int = 60) -> None:
        """Answer the next `queries` queries with 429."""
        self._throttle_remaining = queries
        self._retry_after = retry_after

    def reset(self) -> None:
        """Forget scripts, throttling and the query log."""
        self._verdicts.clear()
        self._throttle_remaining = 0
        self._query_log.clear()

    def reply(self, order_number: str) -> MockReply:
        """Decide the answer for one query and log it."""
        if self._throttle_remaining > 0:
            self._throttle_remaining -= 1
            result = MockReply(status_code=429, retry_after=self._retry_after)
        elif order_number in self._verdicts:
            result = MockReply(status_code=200, verdict=self._verdicts[order_number])
        elif self.random_mode:
            result = MockReply(status_code=200, verdict=self._random_verdict(order_number))
        else:
            result = MockReply(status_code=204)

        self._query_log.append({
            "order": order_number,
            "status_code": result.status_code,
            "queried_at": datetime.now(timezone.utc).isoformat(),
        })
        return result

    def _random_verdict(self, order_number: str) -> Verdict:
        status = self._rng.choice(list(AccrualStatus))
        accrual = Decimal(self._rng.randrange(1000)) if status == AccrualStatus.PROCESSED else ZERO_POINTS
        return Verdict(order=order_number, status=status, accrual=accrual)

    def get_query_log(self) -> list[dict]:
        """Queries received, oldest first."""
        return list(self._query_log)


accrual_mock_instance = AccrualMock()
