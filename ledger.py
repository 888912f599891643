from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional

from sqlalchemy import extract, func, select
from sqlalchemy.orm import Session, selectinload

from models import Budget, Category, Transaction, TransactionType


class GroupBy(str, Enum):
    none = "none"
    type = "type"
    category = "category"
    year_month = "year-month"
    year_week = "year-week"
    year = "year"


TIME_BUCKETS = (GroupBy.year_month, GroupBy.year_week, GroupBy.year)


@dataclass(frozen=True)
class LedgerFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass(frozen=True)
class GroupTotal:
    """One grouped sum.

    ``key`` is ``()`` for ``GroupBy.none``, ``(type_value,)`` for type,
    ``(name,)`` for category, ``(year,)``, ``(year, month)`` or
    ``(iso_year, iso_week)`` for time buckets.
    """

    key: tuple
    total_cents: int
    type: Optional[TransactionType] = None


class LedgerStore:
    """Read-only queries over one user's transactions, categories and budgets."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _where(self, filters: LedgerFilters) -> list:
        clauses = [Transaction.user_id == self.user_id]
        if filters.type is not None:
            clauses.append(Transaction.type == filters.type)
        if filters.category is not None:
            clauses.append(Transaction.category == filters.category)
        # Inclusive bounds; an inverted range simply matches nothing.
        if filters.start is not None:
            clauses.append(Transaction.date >= filters.start)
        if filters.end is not None:
            clauses.append(Transaction.date <= filters.end)
        return clauses

    def sum_transactions(
        self,
        filters: LedgerFilters,
        group_by: GroupBy = GroupBy.none,
        *,
        split_by_type: bool = False,
    ) -> list[GroupTotal]:
        if group_by == GroupBy.year_week:
            return self._sum_by_iso_week(filters, split_by_type=split_by_type)

        total = func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0)
        if group_by == GroupBy.none:
            key_columns = []
        elif group_by == GroupBy.type:
            key_columns = [Transaction.type.label("k_type")]
        elif group_by == GroupBy.category:
            key_columns = [Transaction.category.label("k_category")]
        elif group_by == GroupBy.year:
            key_columns = [extract("year", Transaction.date).label("k_year")]
        else:
            key_columns = [
                extract("year", Transaction.date).label("k_year"),
                extract("month", Transaction.date).label("k_month"),
            ]
        group_columns = list(key_columns)
        if split_by_type and group_by != GroupBy.type:
            group_columns.append(Transaction.type.label("k_split"))

        stmt = select(*group_columns, total.label("total")).where(
            *self._where(filters)
        )
        if group_columns:
            stmt = stmt.group_by(*group_columns)

        out: list[GroupTotal] = []
        for row in self.session.execute(stmt):
            values = tuple(row)
            key_values = values[: len(key_columns)]
            txn_type: Optional[TransactionType] = None
            if group_by == GroupBy.type:
                txn_type = TransactionType(key_values[0])
                key: tuple = (txn_type.value,)
            elif group_by == GroupBy.category:
                key = (key_values[0],)
            else:
                key = tuple(int(v) for v in key_values)
            if split_by_type and group_by != GroupBy.type:
                txn_type = TransactionType(values[len(key_columns)])
            out.append(
                GroupTotal(key=key, total_cents=int(row.total or 0), type=txn_type)
            )
        return out

    def _sum_by_iso_week(
        self, filters: LedgerFilters, *, split_by_type: bool
    ) -> list[GroupTotal]:
        columns = [Transaction.date]
        if split_by_type:
            columns.append(Transaction.type)
        stmt = (
            select(
                *columns,
                func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0).label(
                    "total"
                ),
            )
            .where(*self._where(filters))
            .group_by(*columns)
        )
        totals: dict[tuple, int] = defaultdict(int)
        for row in self.session.execute(stmt):
            iso_year, iso_week, _ = row.date.isocalendar()
            txn_type = TransactionType(row.type) if split_by_type else None
            totals[((iso_year, iso_week), txn_type)] += int(row.total or 0)
        return [
            GroupTotal(key=key, total_cents=amount, type=txn_type)
            for (key, txn_type), amount in totals.items()
        ]

    def list_categories(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def get_budget(self, month: date) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .where(Budget.user_id == self.user_id, Budget.month == month)
        )
        return self.session.scalar(stmt)

    def find_latest_budget_at_or_before(self, month: date) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .where(Budget.user_id == self.user_id, Budget.month <= month)
            .order_by(Budget.month.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)
