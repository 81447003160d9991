"""
Loyalty Ledger - Accrual System Bridge

Wire contract:
    GET /api/orders/{number}
        200 -> {"order": str, "status": REGISTERED|INVALID|PROCESSING|PROCESSED,
                "accrual": number (PROCESSED only)}
        204 -> order not registered yet
        429 -> rate limited, optional Retry-After (seconds)

Translates responses into a Verdict or one of the AccrualError subclasses.
No retries here; the worker decides what to do with each failure.
"""

import logging
import math
from typing import Optional

import httpx
from pydantic import ValidationError

from loyalty.core.config import get_settings
from loyalty.core.errors import (
    AccrualRateLimited,
    AccrualUnavailable,
    OrderNotRegistered,
)
from loyalty.core.types import loads
from loyalty.models.order import Verdict

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in delta-seconds form; HTTP-date and garbage are ignored."""
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0 or not math.isfinite(seconds):
        return None
    return seconds


class AccrualClient:
    """
    Client for the external accrual system.

    One verdict query per order number. The underlying httpx.AsyncClient is
    shared across concurrent queries and owned by this object unless injected.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.ACCRUAL_SYSTEM_ADDRESS).rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.ACCRUAL_REQUEST_TIMEOUT,
        )

    async def query_verdict(self, order_number: str) -> Verdict:
        """
        Ask the accrual system for the current verdict on an order.

        Raises:
            OrderNotRegistered: 204, not known yet
            AccrualRateLimited: 429, back off
            AccrualUnavailable: anything else that is not a valid verdict
        """
        try:
            response = await self.client.get(f"{self.base_url}/api/orders/{order_number}")
        except httpx.RequestError as e:
            raise AccrualUnavailable(order_number, f"request failed: {e!r}") from e

        if response.status_code == 204:
            raise OrderNotRegistered(order_number)

        if response.status_code == 429:
            raise AccrualRateLimited(
                order_number,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        if response.status_code != 200:
            raise AccrualUnavailable(
                order_number,
                f"accrual system returned {response.status_code}: {response.text[:200]}",
            )

        try:
            verdict = Verdict.model_validate(loads(response.content))
        except (ValueError, ValidationError) as e:
            raise AccrualUnavailable(order_number, f"malformed verdict: {e}") from e

        if verdict.order != order_number:
            raise AccrualUnavailable(
                order_number, f"verdict is for a different order {verdict.order}"
            )

        logger.debug(
            f"[ACCRUAL] {order_number}: {verdict.status.value} accrual={verdict.accrual}"
        )
        return verdict

    async def close(self) -> None:
        """Close the HTTP client if this object created it."""
        if self._owns_client:
            await self.client.aclose()
