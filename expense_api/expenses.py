"""Owner-scoped expense queries, category totals and mutations.

Nothing here keeps state between calls: every operation works from the owner
id resolved from the bearer token and re-reads what it needs from the store.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy.sql import ColumnElement

from .database import ExpenseModel
from .errors import InvalidArgument, NotFound
from .store import ExpenseStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
MAX_STORE_INT = 2 ** 63 - 1  # SQL BIGINT
MAX_CATEGORY_LENGTH = 64
MAX_AMOUNT = Decimal("9999999999.99")  # Numeric(12, 2)
UPDATABLE_FIELDS = ("amount", "category", "date", "note")


# ----------------------------------------------------------------------------
# Field validation
# ----------------------------------------------------------------------------
def parse_amount(raw: Any) -> Decimal:
    if raw is None or raw == "":
        raise InvalidArgument("amount is required")
    if isinstance(raw, bool):
        raise InvalidArgument("amount must be a number")
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise InvalidArgument("amount must be a number") from exc
    if not amount.is_finite():
        raise InvalidArgument("amount must be a number")
    if amount < 0:
        raise InvalidArgument("amount must not be negative")
    try:
        amount = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise InvalidArgument("amount is too large") from exc
    if amount > MAX_AMOUNT:
        raise InvalidArgument("amount is too large")
    return amount


def parse_category(raw: Any) -> str:
    if raw is None:
        raise InvalidArgument("category is required")
    if not isinstance(raw, str):
        raise InvalidArgument("category must be a string")
    category = raw.strip()
    if not category:
        raise InvalidArgument("category is required")
    if len(category) > MAX_CATEGORY_LENGTH:
        raise InvalidArgument(f"category must be at most {MAX_CATEGORY_LENGTH} characters")
    return category


def parse_date(raw: Any, field: str = "date") -> date:
    if raw is None or raw == "":
        raise InvalidArgument(f"{field} is required")
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw.strip())
        except ValueError as exc:
            raise InvalidArgument(f"{field} must be an ISO date (YYYY-MM-DD)") from exc
    raise InvalidArgument(f"{field} must be an ISO date (YYYY-MM-DD)")


def parse_note(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise InvalidArgument("note must be a string")
    return raw.strip() or None


# ----------------------------------------------------------------------------
# Query engine
# ----------------------------------------------------------------------------
@dataclass(frozen=True)
class ExpenseFilters:
    category: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


@dataclass(frozen=True)
class PageWindow:
    page: int
    page_size: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


@dataclass
class ExpensePage:
    items: List[ExpenseModel]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


def page_window(page: Optional[int], page_size: Optional[int]) -> PageWindow:
    """Normalize ``page`` and ``page_size``.

    A missing or non-positive page falls back to the first page; a missing
    page size falls back to :data:`DEFAULT_PAGE_SIZE`; one outside
    1..:data:`MAX_PAGE_SIZE` is rejected.
    """
    if page is None or page < 1:
        page = DEFAULT_PAGE
    if page_size is None:
        page_size = DEFAULT_PAGE_SIZE
    elif page_size < 1:
        raise InvalidArgument("pageSize must be a positive integer")
    elif page_size > MAX_PAGE_SIZE:
        raise InvalidArgument(f"pageSize must be at most {MAX_PAGE_SIZE}")
    return PageWindow(page=page, page_size=page_size)


def owner_predicate(owner_id: int, filters: ExpenseFilters) -> List[ColumnElement]:
    conditions = [ExpenseModel.user_id == owner_id]
    category = (filters.category or "").strip()
    if category:
        conditions.append(ExpenseModel.category == category)
    if filters.date_from:
        conditions.append(ExpenseModel.date >= filters.date_from)
    if filters.date_to:
        conditions.append(ExpenseModel.date <= filters.date_to)
    return conditions


async def load_owned(store: ExpenseStore, owner_id: int, expense_id: int) -> ExpenseModel:
    """Fetch an expense belonging to ``owner_id`` or raise :class:`NotFound`.

    Someone else's expense and a missing one produce the same error.
    """
    if not 0 < expense_id <= MAX_STORE_INT:
        raise NotFound("Expense not found")
    expense = await store.get_owned(owner_id, expense_id)
    if expense is None:
        raise NotFound("Expense not found")
    return expense


class ExpenseQueries:
    def __init__(self, store: ExpenseStore):
        self.store = store

    async def list(
        self,
        owner_id: int,
        filters: Optional[ExpenseFilters] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> ExpensePage:
        window = page_window(page, page_size)
        where = owner_predicate(owner_id, filters or ExpenseFilters())
        if window.offset > MAX_STORE_INT:
            items = []
        else:
            items = await self.store.page(where, window.offset, window.limit)
        total = await self.store.count(where)
        return ExpensePage(items=items, total=total, page=window.page, page_size=window.page_size)

    async def get(self, owner_id: int, expense_id: int) -> ExpenseModel:
        return await load_owned(self.store, owner_id, expense_id)

    async def summarize(self, owner_id: int) -> Dict[str, Decimal]:
        return summarize_amounts(await self.store.amounts_by_category(owner_id))


# ----------------------------------------------------------------------------
# Aggregation
# ----------------------------------------------------------------------------
def summarize_amounts(rows: Iterable[Tuple[str, Decimal]]) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = defaultdict(Decimal)
    for category, amount in rows:
        totals[category] += Decimal(amount)
    return dict(totals)


# ----------------------------------------------------------------------------
# Mutations
# ----------------------------------------------------------------------------
class ExpenseService:
    def __init__(self, store: ExpenseStore):
        self.store = store

    async def create(
        self,
        owner_id: int,
        amount: Any,
        category: Any,
        date: Any,
        note: Any = None,
    ) -> ExpenseModel:
        expense = ExpenseModel(
            user_id=owner_id,
            amount=parse_amount(amount),
            category=parse_category(category),
            date=parse_date(date),
            note=parse_note(note),
        )
        expense = await self.store.add(expense)
        logger.info("User %s created expense %s", owner_id, expense.id)
        return expense

    async def update(self, owner_id: int, expense_id: int, changes: Mapping[str, Any]) -> ExpenseModel:
        """Apply a partial update.

        Keys absent from ``changes`` are left alone. ``note`` may be set to
        ``None`` to clear it; the other fields cannot be cleared.
        """
        expense = await load_owned(self.store, owner_id, expense_id)

        unknown = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if unknown:
            raise InvalidArgument(f"Unknown field(s): {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        if "amount" in changes:
            values["amount"] = parse_amount(changes["amount"])
        if "category" in changes:
            values["category"] = parse_category(changes["category"])
        if "date" in changes:
            values["date"] = parse_date(changes["date"])
        if "note" in changes:
            values["note"] = parse_note(changes["note"])
        if not values:
            return expense

        for field, value in values.items():
            setattr(expense, field, value)
        expense = await self.store.save(expense)
        logger.info("User %s updated expense %s (%s)", owner_id, expense_id, ", ".join(values))
        return expense

    async def delete(self, owner_id: int, expense_id: int) -> None:
        expense = await load_owned(self.store, owner_id, expense_id)
        await self.store.delete(expense)
        logger.info("User %s deleted expense %s", owner_id, expense_id)
