"""
Loyalty Ledger - Ledger Store
Transactional repository for orders and balances

Every write runs in one transaction at the configured isolation level
(REPEATABLE READ by default) and locks only the rows it touches:

    apply_verdict: order row (by number) -> owner's balance row
    withdraw:      owner's balance row

Lock order is always order before balance, so the two paths cannot deadlock.
Storage, not the caller's in-memory order, is authoritative.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from loyalty.core.config import get_settings
from loyalty.core.errors import (
    BalanceNotFound,
    InsufficientFunds,
    LedgerStoreError,
    NoPendingOrders,
    OrderNotFound,
)
from loyalty.core.types import quantize_points
from loyalty.db.models import Balance, Order, Withdrawal, utc_now
from loyalty.models.order import PENDING_STATUSES, OrderStatus, PendingOrder

logger = logging.getLogger(__name__)

_PENDING_VALUES = [status.value for status in PENDING_STATUSES]


class LedgerStore:
    """
    Ledger persistence for the reconciliation worker and its collaborators.

    Guarantees:
    1. fetch_pending_batch only ever returns NEW/PROCESSING orders
    2. apply_verdict updates the order and credits the balance, or neither
    3. a verdict for an order that is already terminal is a no-op
    4. a balance never goes negative (CHECK constraint, not Python)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        isolation_level: Optional[str] = None,
    ):
        self._session_maker = session_maker
        self.isolation_level = isolation_level or get_settings().LEDGER_ISOLATION_LEVEL

    async def _begin(self, session: AsyncSession) -> None:
        """Pin the transaction's isolation level; must run before any statement."""
        await session.connection(execution_options={"isolation_level": self.isolation_level})

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def fetch_pending_batch(self, limit: int) -> list[PendingOrder]:
        """
        Oldest non-terminal orders first, at most `limit` of them.

        Raises:
            NoPendingOrders: nothing to reconcile
            LedgerStoreError: the query failed
        """
        try:
            async with self._session_maker() as session:
                result = await session.execute(
                    select(Order)
                    .where(Order.status.in_(_PENDING_VALUES))
                    .order_by(Order.uploaded_at, Order.id)
                    .limit(limit)
                )
                orders = [PendingOrder.model_validate(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise LedgerStoreError(f"failed to fetch pending orders: {e}") from e

        if not orders:
            raise NoPendingOrders("no orders awaiting accrual")
        return orders

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def apply_verdict(
        self,
        order: PendingOrder,
        user_id: uuid.UUID,
        amount: Decimal,
    ) -> bool:
        """
        Persist the order's new status/accrual and credit `amount` to its owner.

        Returns:
            True if applied, False if the order was already terminal

        Raises:
            OrderNotFound: no order with this number
            BalanceNotFound: owner has no balance row (order update rolled back)
            LedgerStoreError: ownership mismatch or driver failure
        """
        if amount < 0:
            raise ValueError(f"credit must be non-negative, got {amount}")
        amount = quantize_points(amount)

        try:
            async with self._session_maker() as session:
                async with session.begin():
                    await self._begin(session)

                    row = (
                        await session.execute(
                            select(Order.user_id, Order.status)
                            .where(Order.number == order.number)
                            .with_for_update()
                        )
                    ).one_or_none()
                    if row is None:
                        raise OrderNotFound(order.number)
                    if row.user_id != user_id:
                        raise LedgerStoreError(
                            f"order {order.number} is not owned by user {user_id}"
                        )
                    if OrderStatus(row.status).is_terminal:
                        logger.info(f"Order {order.number} already {row.status}, verdict skipped")
                        return False

                    # status guard covers backends where FOR UPDATE is a no-op
                    updated = await session.execute(
                        update(Order)
                        .where(Order.number == order.number)
                        .where(Order.status.in_(_PENDING_VALUES))
                        .values(
                            status=order.status.value,
                            accrual=order.accrual,
                            updated_at=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount == 0:
                        logger.info(f"Order {order.number} settled concurrently, verdict skipped")
                        return False

                    balance_id = (
                        await session.execute(
                            select(Balance.id)
                            .where(Balance.user_id == user_id)
                            .with_for_update()
                        )
                    ).scalar_one_or_none()
                    if balance_id is None:
                        raise BalanceNotFound(user_id)

                    await session.execute(
                        update(Balance)
                        .where(Balance.id == balance_id)
                        .values(current=Balance.current + amount, updated_at=utc_now())
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as e:
            raise LedgerStoreError(f"failed to apply verdict for {order.number}: {e}") from e

        logger.info(
            f"Order {order.number} -> {order.status.value}, credited {amount}",
            extra={"order_number": order.number, "status": order.status.value},
        )
        return True

    async def withdraw(
        self,
        user_id: uuid.UUID,
        order_number: str,
        amount: Decimal,
    ) -> Decimal:
        """
        Debit the user's balance and record the withdrawal.

        Returns:
            the balance left after the debit

        Raises:
            InsufficientFunds: the debit would make the balance negative
            BalanceNotFound: user has no balance row
            LedgerStoreError: driver failure
        """
        if amount <= 0:
            raise ValueError(f"withdrawal must be positive, got {amount}")
        amount = quantize_points(amount)

        try:
            async with self._session_maker() as session:
                async with session.begin():
                    await self._begin(session)

                    balance_id = (
                        await session.execute(
                            select(Balance.id)
                            .where(Balance.user_id == user_id)
                            .with_for_update()
                        )
                    ).scalar_one_or_none()
                    if balance_id is None:
                        raise BalanceNotFound(user_id)

                    try:
                        await session.execute(
                            update(Balance)
                            .where(Balance.id == balance_id)
                            .values(
                                current=Balance.current - amount,
                                withdrawn=Balance.withdrawn + amount,
                                updated_at=utc_now(),
                            )
                            .execution_options(synchronize_session=False)
                        )
                    except IntegrityError as e:
                        raise InsufficientFunds(
                            f"user {user_id} cannot withdraw {amount}"
                        ) from e

                    session.add(
                        Withdrawal(order_number=order_number, user_id=user_id, amount=amount)
                    )
                    await session.flush()

                    current = (
                        await session.execute(
                            select(Balance.current).where(Balance.id == balance_id)
                        )
                    ).scalar_one()
        except SQLAlchemyError as e:
            raise LedgerStoreError(f"failed to withdraw for {order_number}: {e}") from e

        logger.info(f"User {user_id} withdrew {amount} for order {order_number}")
        return current
