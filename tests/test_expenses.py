"""Tests for owner-scoped expense queries, totals and mutations."""

import math
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from expense_api.errors import Internal, InvalidArgument, NotFound
from expense_api.expenses import (
    ExpenseFilters,
    ExpenseQueries,
    ExpenseService,
    page_window,
    parse_amount,
    parse_date,
    parse_note,
    summarize_amounts,
)


@pytest.fixture
def service(expense_store):
    return ExpenseService(expense_store)


@pytest.fixture
def queries(expense_store):
    return ExpenseQueries(expense_store)


async def _seed_example(service, owner_id):
    await service.create(owner_id, amount=20, category="Food", date="2024-01-05")
    await service.create(owner_id, amount=50, category="Food", date="2024-01-10")
    await service.create(owner_id, amount=15, category="Transport", date="2024-01-07")


class TestValidators:
    @pytest.mark.parametrize("raw, expected", [
        (20, Decimal("20.00")),
        ("12.5", Decimal("12.50")),
        (Decimal("0"), Decimal("0.00")),
        ("3.005", Decimal("3.01")),
    ])
    def test_parse_amount(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "abc", -5, "-0.01", "NaN", "Infinity", True, "1e20"])
    def test_parse_amount_rejects(self, raw):
        with pytest.raises(InvalidArgument):
            parse_amount(raw)

    def test_parse_date(self):
        assert parse_date("2024-01-05") == date(2024, 1, 5)
        assert parse_date(date(2024, 1, 5)) == date(2024, 1, 5)

    @pytest.mark.parametrize("raw", [None, "", "05/01/2024", "2024-13-01", 20240105])
    def test_parse_date_rejects(self, raw):
        with pytest.raises(InvalidArgument):
            parse_date(raw)

    def test_blank_note_becomes_none(self):
        assert parse_note("   ") is None
        assert parse_note(" lunch ") == "lunch"


class TestPageWindow:
    def test_defaults(self):
        window = page_window(None, None)
        assert (window.page, window.page_size, window.offset) == (1, 10, 0)

    @pytest.mark.parametrize("page", [0, -3])
    def test_non_positive_page_falls_back_to_first(self, page):
        assert page_window(page, 5).page == 1

    def test_offset(self):
        window = page_window(3, 25)
        assert (window.offset, window.limit) == (50, 25)

    @pytest.mark.parametrize("page_size", [0, -1, 101, 10**19])
    def test_non_positive_page_size_rejected(self, page_size):
        with pytest.raises(InvalidArgument):
            page_window(1, page_size)


def test_summarize_amounts_is_exact():
    rows = [("Food", Decimal("0.10"))] * 3 + [("Misc", Decimal("1.00"))]
    assert summarize_amounts(rows) == {"Food": Decimal("0.30"), "Misc": Decimal("1.00")}
    assert summarize_amounts([]) == {}


class TestListAndSummary:
    @pytest.mark.asyncio
    async def test_filter_by_category(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(users["alice"], ExpenseFilters(category="Food"), page=1, page_size=10)

        assert [e.date for e in result.items] == [date(2024, 1, 10), date(2024, 1, 5)]
        assert result.total == 2
        assert result.total_pages == 1

    @pytest.mark.asyncio
    async def test_summary(self, service, queries, users):
        await _seed_example(service, users["alice"])

        summary = await queries.summarize(users["alice"])

        assert summary == {"Food": Decimal("70"), "Transport": Decimal("15")}

    @pytest.mark.asyncio
    async def test_summary_of_nothing_is_empty(self, queries, users):
        assert await queries.summarize(users["alice"]) == {}

    @pytest.mark.asyncio
    async def test_summary_matches_sum_of_amounts(self, service, queries, users):
        amounts = ["0.10", "0.20", "19.99", "5", "0.01"]
        for i, amount in enumerate(amounts):
            await service.create(users["alice"], amount, ["A", "B"][i % 2], "2024-02-01")

        summary = await queries.summarize(users["alice"])

        assert sum(summary.values()) == sum(Decimal(a) for a in amounts)
        assert set(summary) == {"A", "B"}

    @pytest.mark.asyncio
    async def test_date_range_is_inclusive(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(
            users["alice"],
            ExpenseFilters(date_from=date(2024, 1, 5), date_to=date(2024, 1, 7)),
        )

        assert [e.date for e in result.items] == [date(2024, 1, 7), date(2024, 1, 5)]

    @pytest.mark.asyncio
    async def test_open_ended_range(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(users["alice"], ExpenseFilters(date_from=date(2024, 1, 6)))

        assert result.total == 2

    @pytest.mark.asyncio
    async def test_pages_cover_every_record_once(self, service, queries, users):
        owner = users["alice"]
        created = []
        for day in (1, 2, 2, 2, 3, 5, 5, 8, 9, 9, 9):
            expense = await service.create(owner, amount=day, category="Food", date=date(2024, 3, day))
            created.append(expense.id)

        page_size = 3
        first = await queries.list(owner, page=1, page_size=page_size)
        assert first.total == 11
        assert first.total_pages == math.ceil(11 / page_size)

        seen = []
        for page in range(1, first.total_pages + 1):
            result = await queries.list(owner, page=page, page_size=page_size)
            seen.extend(result.items)

        assert sorted(e.id for e in seen) == sorted(created)
        assert len({e.id for e in seen}) == len(seen)
        keys = [(e.date, e.id) for e in seen]
        assert keys == sorted(keys, reverse=True)

    @pytest.mark.asyncio
    async def test_offset_beyond_store_range_is_empty(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(users["alice"], page=10**19, page_size=100)

        assert result.items == []
        assert result.total == 3

    @pytest.mark.asyncio
    async def test_category_filter_is_trimmed(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(users["alice"], ExpenseFilters(category="  Food "))

        assert result.total == 2

    @pytest.mark.asyncio
    async def test_page_past_the_end_is_empty(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(users["alice"], page=5, page_size=10)

        assert result.items == []
        assert result.total == 3

    @pytest.mark.asyncio
    async def test_empty_list_has_zero_pages(self, queries, users):
        result = await queries.list(users["alice"])
        assert (result.total, result.total_pages, result.items) == (0, 0, [])


class TestOwnershipIsolation:
    @pytest.mark.asyncio
    async def test_other_users_see_nothing(self, service, queries, users):
        await _seed_example(service, users["alice"])

        result = await queries.list(users["bob"])

        assert result.total == 0
        assert await queries.summarize(users["bob"]) == {}

    @pytest.mark.asyncio
    async def test_other_users_cannot_touch_a_record(self, service, queries, users, expense_store):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05")

        with pytest.raises(NotFound) as missing:
            await service.update(users["bob"], 10_000, {"note": "x"})
        with pytest.raises(NotFound) as foreign:
            await service.update(users["bob"], expense.id, {"amount": 1})
        assert missing.value.detail == foreign.value.detail

        with pytest.raises(NotFound):
            await service.delete(users["bob"], expense.id)
        with pytest.raises(NotFound):
            await queries.get(users["bob"], expense.id)
        with pytest.raises(NotFound):
            await queries.get(users["alice"], 10**20)

        still_there = await expense_store.get_owned(users["alice"], expense.id)
        assert still_there.amount == Decimal("20")
        assert still_there.note is None


class TestMutations:
    @pytest.mark.asyncio
    async def test_create_sets_owner(self, service, users):
        expense = await service.create(users["alice"], "12.34", " Food ", "2024-01-05", note="lunch")

        assert expense.id is not None
        assert expense.user_id == users["alice"]
        assert expense.amount == Decimal("12.34")
        assert expense.category == "Food"
        assert expense.date == date(2024, 1, 5)
        assert expense.note == "lunch"

    @pytest.mark.asyncio
    async def test_negative_amount_is_not_persisted(self, service, queries, users):
        with pytest.raises(InvalidArgument):
            await service.create(users["alice"], amount=-5, category="Food", date="2024-01-05")

        assert (await queries.list(users["alice"])).total == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["amount", "category", "date"])
    async def test_required_fields(self, service, users, missing):
        fields = {"amount": 10, "category": "Food", "date": "2024-01-05"}
        fields[missing] = None
        with pytest.raises(InvalidArgument):
            await service.create(users["alice"], **fields)

    @pytest.mark.asyncio
    async def test_update_note_only(self, service, users):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05", note="old")

        updated = await service.update(users["alice"], expense.id, {"note": "new"})

        assert updated.note == "new"
        assert updated.amount == Decimal("20")
        assert updated.category == "Food"
        assert updated.date == date(2024, 1, 5)

    @pytest.mark.asyncio
    async def test_update_can_clear_note(self, service, users):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05", note="old")

        updated = await service.update(users["alice"], expense.id, {"note": None})

        assert updated.note is None

    @pytest.mark.asyncio
    async def test_update_rejects_negative_amount(self, service, users, expense_store):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05")

        with pytest.raises(InvalidArgument):
            await service.update(users["alice"], expense.id, {"amount": "-1", "note": "x"})

        unchanged = await expense_store.get_owned(users["alice"], expense.id)
        assert unchanged.amount == Decimal("20")
        assert unchanged.note is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["amount", "category", "date"])
    async def test_required_fields_cannot_be_cleared(self, service, users, field):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05")
        with pytest.raises(InvalidArgument):
            await service.update(users["alice"], expense.id, {field: None})

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, service, users):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05")
        with pytest.raises(InvalidArgument):
            await service.update(users["alice"], expense.id, {"user_id": users["bob"]})

    @pytest.mark.asyncio
    async def test_unknown_fields_on_foreign_record_are_not_found(self, service, users):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05")
        with pytest.raises(NotFound):
            await service.update(users["bob"], expense.id, {"user_id": users["bob"]})

    @pytest.mark.asyncio
    async def test_update_after_delete(self, service, queries, users):
        expense = await service.create(users["alice"], 20, "Food", "2024-01-05")

        await service.delete(users["alice"], expense.id)

        with pytest.raises(NotFound):
            await service.update(users["alice"], expense.id, {"note": "again"})
        with pytest.raises(NotFound):
            await service.delete(users["alice"], expense.id)
        with pytest.raises(NotFound):
            await queries.get(users["alice"], expense.id)


@pytest.mark.asyncio
async def test_store_failures_surface_as_internal(expense_store, queries, users, monkeypatch):
    async def broken_execute(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(expense_store.session, "execute", broken_execute)

    with pytest.raises(Internal) as excinfo:
        await queries.list(users["alice"])
    assert "disk" not in excinfo.value.detail
    assert excinfo.value.kind == "internal"
