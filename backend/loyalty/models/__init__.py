from loyalty.models.order import (
    ACCRUAL_TO_ORDER_STATUS,
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    AccrualStatus,
    OrderStatus,
    PendingOrder,
    Verdict,
)

__all__ = [
    "ACCRUAL_TO_ORDER_STATUS",
    "PENDING_STATUSES",
    "TERMINAL_STATUSES",
    "AccrualStatus",
    "OrderStatus",
    "PendingOrder",
    "Verdict",
]
