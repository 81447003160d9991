"""
Loyalty Ledger - External System Bridges
"""

from loyalty.bridges.accrual import AccrualClient

__all__ = ["AccrualClient"]
