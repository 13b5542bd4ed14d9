"""SQLAlchemy-backed adapters for users and expenses.

These are the only classes that talk to the database. Driver and ORM failures
are logged here and re-raised as :class:`~expense_api.errors.Internal` so that
no adapter-specific detail reaches a client.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement, select

from .database import ExpenseModel, UserModel
from .errors import Conflict, Internal

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _store_errors(session: AsyncSession, action: str) -> AsyncIterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure while trying to %s", action)
        await session.rollback()
        raise Internal("Storage is unavailable, please retry later") from exc


class UserStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: int) -> Optional[UserModel]:
        async with _store_errors(self.session, "load user"):
            return await self.session.get(UserModel, user_id)

    async def get_by_email(self, email: str) -> Optional[UserModel]:
        async with _store_errors(self.session, "load user by email"):
            result = await self.session.execute(select(UserModel).where(UserModel.email == email))
            return result.scalar_one_or_none()

    async def add(self, user: UserModel) -> UserModel:
        async with _store_errors(self.session, "create user"):
            self.session.add(user)
            try:
                await self.session.commit()
            except IntegrityError:
                await self.session.rollback()
                raise Conflict("Email already registered")
            await self.session.refresh(user)
            return user


class ExpenseStore:
    """Expense persistence.

    Lookups by id always take the owner id as well; there is no way to fetch
    an expense by id alone.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_owned(self, owner_id: int, expense_id: int) -> Optional[ExpenseModel]:
        async with _store_errors(self.session, "load expense"):
            result = await self.session.execute(
                select(ExpenseModel).where(
                    ExpenseModel.id == expense_id,
                    ExpenseModel.user_id == owner_id,
                )
            )
            return result.scalar_one_or_none()

    async def page(self, where: Sequence[ColumnElement], offset: int, limit: int) -> List[ExpenseModel]:
        query = (
            select(ExpenseModel)
            .where(*where)
            .order_by(ExpenseModel.date.desc(), ExpenseModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        async with _store_errors(self.session, "list expenses"):
            result = await self.session.execute(query)
            return list(result.scalars().all())

    async def count(self, where: Sequence[ColumnElement]) -> int:
        query = select(func.count()).select_from(ExpenseModel).where(*where)
        async with _store_errors(self.session, "count expenses"):
            result = await self.session.execute(query)
            return int(result.scalar_one())

    async def amounts_by_category(self, owner_id: int) -> List[Tuple[str, Decimal]]:
        query = select(ExpenseModel.category, ExpenseModel.amount).where(ExpenseModel.user_id == owner_id)
        async with _store_errors(self.session, "load expenses for summary"):
            result = await self.session.execute(query)
            return [(row.category, row.amount) for row in result]

    async def add(self, expense: ExpenseModel) -> ExpenseModel:
        async with _store_errors(self.session, "create expense"):
            self.session.add(expense)
            await self.session.commit()
            await self.session.refresh(expense)
            return expense

    async def save(self, expense: ExpenseModel) -> ExpenseModel:
        async with _store_errors(self.session, "update expense"):
            await self.session.commit()
            await self.session.refresh(expense)
            return expense

    async def delete(self, expense: ExpenseModel) -> None:
        async with _store_errors(self.session, "delete expense"):
            await self.session.delete(expense)
            await self.session.commit()
