"""
Loyalty Ledger - Order & Verdict Schemas
Data contracts between the accrual system, the worker and the store
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from loyalty.core.types import Points, ZERO_POINTS


class OrderStatus(str, Enum):
    """Lifecycle of an uploaded order."""
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.INVALID, OrderStatus.PROCESSED})
PENDING_STATUSES = (OrderStatus.NEW, OrderStatus.PROCESSING)


class AccrualStatus(str, Enum):
    """Order status as reported by the accrual system."""
    REGISTERED = "REGISTERED"
    INVALID = "INVALID"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"


# Accrual system status -> ledger status
ACCRUAL_TO_ORDER_STATUS: dict[AccrualStatus, OrderStatus] = {
    AccrualStatus.REGISTERED: OrderStatus.PROCESSING,
    AccrualStatus.PROCESSING: OrderStatus.PROCESSING,
    AccrualStatus.INVALID: OrderStatus.INVALID,
    AccrualStatus.PROCESSED: OrderStatus.PROCESSED,
}


class Verdict(BaseModel):
    """Accrual system answer for one order number."""
    order: str = Field(..., min_length=1)
    status: AccrualStatus
    accrual: Points = ZERO_POINTS

    @property
    def order_status(self) -> OrderStatus:
        return ACCRUAL_TO_ORDER_STATUS[self.status]

    @property
    def credit(self) -> Decimal:
        """Points owed to the user; only a PROCESSED verdict earns any."""
        if self.status == AccrualStatus.PROCESSED:
            return self.accrual
        return ZERO_POINTS


class PendingOrder(BaseModel):
    """Order as fetched for reconciliation."""
    id: uuid.UUID
    number: str
    user_id: uuid.UUID
    status: OrderStatus
    accrual: Points = ZERO_POINTS
    uploaded_at: datetime

    class Config:
        from_attributes = True

    def apply(self, verdict: Verdict) -> None:
        """Copy the verdict onto this in-memory order."""
        self.status = verdict.order_status
        self.accrual = verdict.credit
