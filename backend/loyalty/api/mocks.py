"""
Loyalty Ledger - Mock Accrual System Routes
Serves the accrual wire contract plus endpoints to script it
"""

from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from loyalty.core.types import Points, dumps
from loyalty.models.order import AccrualStatus
from loyalty.services.mocks import AccrualMock, accrual_mock_instance

router = APIRouter(prefix="/mocks", tags=["Mock Systems"])

# Same path the real accrual system serves
accrual_api_router = APIRouter(tags=["Mock Systems"])


def get_accrual_mock() -> AccrualMock:
    return accrual_mock_instance


class ScriptVerdictRequest(BaseModel):
    """Verdict to return for one order number."""
    status: AccrualStatus
    accrual: Optional[Points] = None


class RandomModeRequest(BaseModel):
    """Answer unscripted order numbers with random verdicts instead of 204."""
    enabled: bool = True


class ThrottleRequest(BaseModel):
    """Answer the next N queries with 429."""
    queries: int = Field(1, ge=1)
    retry_after: int = Field(60, ge=0)


# =============================================================================
# WIRE CONTRACT
# =============================================================================

@accrual_api_router.get("/api/orders/{order_number}")
async def get_order_accrual(
    order_number: str,
    mock: AccrualMock = Depends(get_accrual_mock),
) -> Response:
    """
    Accrual verdict for an order.

    200 with JSON (accrual as a bare number, PROCESSED only), 204 if unknown,
    429 with Retry-After when throttled.
    """
    reply = mock.reply(order_number)

    if reply.status_code == 429:
        return Response(
            content="No more than N requests per minute allowed",
            status_code=429,
            headers={"Retry-After": str(reply.retry_after)},
            media_type="text/plain",
        )
    if reply.verdict is None:
        return Response(status_code=204)

    payload = {"order": reply.verdict.order, "status": reply.verdict.status.value}
    if reply.verdict.status == AccrualStatus.PROCESSED:
        payload["accrual"] = reply.verdict.accrual
    return Response(
        content=dumps(payload, decimal_as_number=True),
        media_type="application/json",
    )


# =============================================================================
# MOCK CONTROL
# =============================================================================

@router.put("/accrual/orders/{order_number}")
async def script_order_verdict(
    order_number: str,
    request: ScriptVerdictRequest,
    mock: AccrualMock = Depends(get_accrual_mock),
) -> dict:
    """Fix the verdict the mock returns for an order number."""
    verdict = mock.script(order_number, request.status, request.accrual)
    return verdict.model_dump(mode="json")


@router.post("/accrual/throttle")
async def throttle_accrual(
    request: ThrottleRequest,
    mock: AccrualMock = Depends(get_accrual_mock),
) -> dict:
    """Make the next queries answer 429."""
    mock.throttle(request.queries, request.retry_after)
    return {"throttled_queries": request.queries, "retry_after": request.retry_after}


@router.post("/accrual/random")
async def set_accrual_random_mode(
    request: RandomModeRequest,
    mock: AccrualMock = Depends(get_accrual_mock),
) -> dict:
    """Toggle random verdicts for unscripted order numbers."""
    mock.random_mode = request.enabled
    return {"random_mode": mock.random_mode}


@router.post("/accrual/reset")
async def reset_accrual(mock: AccrualMock = Depends(get_accrual_mock)) -> dict:
    """Reset mock accrual system to a clean state."""
    mock.reset()
    return {"status": "reset"}


@router.get("/accrual/log")
async def get_accrual_log(mock: AccrualMock = Depends(get_accrual_mock)) -> list[dict]:
    """Queries received by the mock, oldest first."""
    return mock.get_query_log()
