"""
Loyalty Ledger - Shared test fixtures

The ledger store runs against a real SQLite file through aiosqlite. NullPool
keeps connections from leaking between the event loops of separate
asyncio.run() calls.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from loyalty.db.models import Balance, Base, Order, User, Withdrawal
from loyalty.models.order import Verdict
from loyalty.services.ledger_store import LedgerStore


BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class LedgerSeed:
    """Direct ORM access for arranging and inspecting ledger state."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self._order_seq = 0

    async def add_user(
        self,
        login: str,
        current: Optional[Decimal] = Decimal("0"),
    ) -> uuid.UUID:
        """Create a user; current=None leaves the user without a balance row."""
        async with self.session_maker() as session:
            async with session.begin():
                user = User(login=login)
                session.add(user)
                await session.flush()
                if current is not None:
                    session.add(Balance(user_id=user.id, current=current))
                return user.id

    async def add_order(self, user_id: uuid.UUID, number: str, status: str = "NEW") -> None:
        self._order_seq += 1
        async with self.session_maker() as session:
            async with session.begin():
                session.add(
                    Order(
                        number=number,
                        user_id=user_id,
                        status=status,
                        uploaded_at=BASE_TIME + timedelta(seconds=self._order_seq),
                    )
                )

    async def get_order(self, number: str) -> Order:
        async with self.session_maker() as session:
            return (await session.execute(select(Order).where(Order.number == number))).scalar_one()

    async def get_balance(self, user_id: uuid.UUID) -> Balance:
        async with self.session_maker() as session:
            return (
                await session.execute(select(Balance).where(Balance.user_id == user_id))
            ).scalar_one()

    async def list_withdrawals(self, user_id: uuid.UUID) -> list[Withdrawal]:
        async with self.session_maker() as session:
            result = await session.execute(select(Withdrawal).where(Withdrawal.user_id == user_id))
            return list(result.scalars().all())


class ScriptedAccrualClient:
    """Accrual client double: each order number maps to a Verdict or an exception."""

    def __init__(self, replies: dict):
        self.replies = replies
        self.calls: list[str] = []

    async def query_verdict(self, order_number: str) -> Verdict:
        self.calls.append(order_number)
        reply = self.replies[order_number]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", poolclass=NullPool)

    async def _create_schema() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create_schema())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def store(session_maker) -> LedgerStore:
    # SQLite has no REPEATABLE READ
    return LedgerStore(session_maker, isolation_level="SERIALIZABLE")


@pytest.fixture
def seed(session_maker) -> LedgerSeed:
    return LedgerSeed(session_maker)


@pytest.fixture
def scripted_client():
    return ScriptedAccrualClient
