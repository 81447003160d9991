"""
Loyalty Ledger - Error Taxonomy

One exception per reported condition. The worker decides how loud each one is.
"""

from typing import Optional


class LoyaltyError(Exception):
    """Base class for all ledger errors."""
    pass


# =============================================================================
# STORAGE
# =============================================================================

class NoPendingOrders(LoyaltyError):
    """No orders are waiting for a verdict. Expected, not a failure."""
    pass


class LedgerStoreError(LoyaltyError):
    """Storage failed to read or commit."""
    pass


class OrderNotFound(LedgerStoreError):
    """No order row with this number."""

    def __init__(self, order_number: str):
        super().__init__(f"order {order_number} not found")
        self.order_number = order_number


class BalanceNotFound(LedgerStoreError):
    """The user has no balance row."""

    def __init__(self, user_id):
        super().__init__(f"balance for user {user_id} not found")
        self.user_id = user_id


class InsufficientFunds(LedgerStoreError):
    """Debit rejected by the non-negative balance constraint."""
    pass


# =============================================================================
# ACCRUAL SYSTEM
# =============================================================================

class AccrualError(LoyaltyError):
    """Accrual system did not produce a verdict."""

    def __init__(self, order_number: str, message: str):
        super().__init__(f"order {order_number}: {message}")
        self.order_number = order_number


class OrderNotRegistered(AccrualError):
    """Accrual system has no record of the order yet (HTTP 204)."""

    def __init__(self, order_number: str):
        super().__init__(order_number, "not registered in accrual system")


class AccrualRateLimited(AccrualError):
    """Accrual system is shedding load (HTTP 429)."""

    def __init__(self, order_number: str, retry_after: Optional[float] = None):
        super().__init__(order_number, "rate limited by accrual system")
        self.retry_after = retry_after


class AccrualUnavailable(AccrualError):
    """Network failure, unexpected status or malformed payload."""
    pass
