# Database module
from loyalty.db.models import Base, User, Order, Balance, Withdrawal

__all__ = [
    "Base",
    "User",
    "Order",
    "Balance",
    "Withdrawal",
]
