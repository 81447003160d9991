"""
Loyalty Ledger - SQLAlchemy ORM Models
Authoritative database schema implementation
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class User(Base):
    """Account that owns orders and one balance."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    login: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )

    # Relationships
    orders: Mapped[list["Order"]] = relationship(back_populates="user")
    balance: Mapped["Balance"] = relationship(back_populates="user", uselist=False)


class Order(Base):
    """Uploaded order awaiting (or holding) an accrual verdict."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="NEW")
    accrual: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="orders")

    __table_args__ = (
        CheckConstraint(
            "status IN ('NEW', 'PROCESSING', 'INVALID', 'PROCESSED')",
            name="orders_status_valid",
        ),
        CheckConstraint("accrual >= 0", name="orders_accrual_non_negative"),
        Index("idx_orders_user", "user_id"),
        Index(
            "idx_orders_pending",
            "uploaded_at",
            postgresql_where="status IN ('NEW', 'PROCESSING')",
        ),
    )


class Balance(Base):
    """Spendable and lifetime-withdrawn points, one row per user."""

    __tablename__ = "balances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    current: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    withdrawn: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="balance")

    __table_args__ = (
        CheckConstraint("current >= 0", name="balances_current_non_negative"),
        CheckConstraint("withdrawn >= 0", name="balances_withdrawn_non_negative"),
    )


class Withdrawal(Base):
    """Points spent against an order number."""

    __tablename__ = "withdrawals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="withdrawals_amount_positive"),
        Index("idx_withdrawals_user", "user_id", "processed_at"),
    )
