"""Aggregation, summaries and budget reconciliation over the ledger.

Everything here is read-only and recomputed on every call: nothing is cached,
so two calls with the same inputs and no intervening writes return equal
results. Money is integer cents; percentages are floats that default to ``0``
wherever the denominator is zero.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Optional, TypeVar, Union

from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import make_session_factory, session_scope
from ledger import TIME_BUCKETS, GroupBy, GroupTotal, LedgerFilters, LedgerStore
from models import Budget, TransactionType
from periods import (
    TrendPeriod,
    add_months,
    month_label,
    month_period,
    month_start,
    parse_month,
    today_local,
    week_label,
    year_to_date,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AnalyticsInputError(ValueError):
    pass


def _percent(part: int, whole: int) -> float:
    return (part / whole * 100) if whole else 0.0


@dataclass(frozen=True)
class MonthlySummary:
    month: str
    income_cents: int
    expense_cents: int
    net_cents: int


@dataclass(frozen=True)
class CategorySpending:
    category: str
    amount_cents: int
    percentage: float
    color: Optional[str] = None
    icon: Optional[str] = None


@dataclass(frozen=True)
class SpendingTrend:
    period: str
    amount_cents: int
    change: float


@dataclass(frozen=True)
class BudgetProgress:
    category: str
    budget_cents: int
    spent_cents: int
    remaining_cents: int
    percentage: float
    overspent: bool


@dataclass(frozen=True)
class BudgetProgressReport:
    budget_id: int
    month: date
    currency: str
    total_budget_cents: int
    total_spent_cents: int
    total_remaining_cents: int
    total_percentage: float
    overspent: bool
    category_budgets: list[BudgetProgress] = field(default_factory=list)


@dataclass(frozen=True)
class PeriodTotals:
    income_cents: int
    expense_cents: int
    net_cents: int
    savings_rate: float

    @classmethod
    def from_type_totals(cls, totals: dict[TransactionType, int]) -> "PeriodTotals":
        income = totals.get(TransactionType.income, 0)
        expenses = totals.get(TransactionType.expense, 0)
        # 0 when there is no income; indistinguishable from a 0% rate.
        return cls(
            income_cents=income,
            expense_cents=expenses,
            net_cents=income - expenses,
            savings_rate=_percent(income - expenses, income),
        )


@dataclass(frozen=True)
class TopCategory:
    category: str
    amount_cents: int


@dataclass(frozen=True)
class FinancialOverview:
    monthly: PeriodTotals
    yearly: PeriodTotals
    top_categories: list[TopCategory] = field(default_factory=list)


class AggregationEngine:
    """Grouped sums over the ledger in the two orderings consumers rely on.

    Time buckets come back in chronological order; category totals come back
    largest first with ties broken by name.
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def by_period(
        self,
        filters: LedgerFilters,
        granularity: GroupBy,
        *,
        split_by_type: bool = False,
    ) -> list[GroupTotal]:
        if granularity not in TIME_BUCKETS:
            raise AnalyticsInputError(f"Not a time bucket: {granularity!r}")
        rows = self.store.sum_transactions(
            filters, granularity, split_by_type=split_by_type
        )
        return sorted(rows, key=lambda r: (r.key, r.type.value if r.type else ""))

    def by_category(
        self, filters: LedgerFilters, *, limit: Optional[int] = None
    ) -> list[GroupTotal]:
        rows = self.store.sum_transactions(filters, GroupBy.category)
        rows.sort(key=lambda r: (-r.total_cents, r.key[0]))
        if limit is not None:
            rows = rows[:limit]
        return rows

    def by_type(self, filters: LedgerFilters) -> dict[TransactionType, int]:
        totals = {txn_type: 0 for txn_type in TransactionType}
        for row in self.store.sum_transactions(filters, GroupBy.type):
            totals[row.type] = row.total_cents
        return totals


class BudgetReconciler:
    """Join a stored budget's allocations against live spending for its month.

    The ``spent_cents`` snapshot stored on the budget is never read here.
    Categories with spending but no allocation are left out of both the rows
    and the totals.
    """

    def __init__(self, engine: AggregationEngine) -> None:
        self.engine = engine

    def spent_by_category(self, month: date) -> dict[str, int]:
        window = month_period(month)
        rows = self.engine.by_category(
            LedgerFilters(
                type=TransactionType.expense, start=window.start, end=window.end
            )
        )
        return {row.key[0]: row.total_cents for row in rows}

    def reconcile(self, budget: Budget) -> BudgetProgressReport:
        spend = self.spent_by_category(budget.month)
        rows: list[BudgetProgress] = []
        for allocation in budget.category_budgets:
            spent = spend.get(allocation.category, 0)
            rows.append(
                BudgetProgress(
                    category=allocation.category,
                    budget_cents=allocation.budget_cents,
                    spent_cents=spent,
                    remaining_cents=allocation.budget_cents - spent,
                    percentage=_percent(spent, allocation.budget_cents),
                    overspent=spent > allocation.budget_cents,
                )
            )
        total_spent = sum(row.spent_cents for row in rows)
        return BudgetProgressReport(
            budget_id=budget.id,
            month=budget.month,
            currency=getattr(budget.currency, "value", budget.currency),
            total_budget_cents=budget.total_budget_cents,
            total_spent_cents=total_spent,
            total_remaining_cents=budget.total_budget_cents - total_spent,
            total_percentage=_percent(total_spent, budget.total_budget_cents),
            overspent=total_spent > budget.total_budget_cents,
            category_budgets=rows,
        )


class OverviewComposer:
    """Run the overview's independent aggregations concurrently.

    Each sub-query gets its own session from ``session_factory``. The first
    failure is re-raised and no partial overview is produced.
    """

    TOP_CATEGORY_LIMIT = 5

    def __init__(
        self,
        session_factory: sessionmaker,
        user_id: int,
        *,
        today: date,
        max_workers: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.user_id = user_id
        self.today = today
        self.max_workers = max_workers

    def _run(self, query: Callable[[AggregationEngine], T]) -> T:
        with session_scope(self.session_factory) as session:
            return query(AggregationEngine(LedgerStore(session, self.user_id)))

    def compose(self) -> FinancialOverview:
        month = month_period(self.today)
        ytd = year_to_date(self.today)
        queries: dict[str, Callable[[AggregationEngine], object]] = {
            "monthly": lambda engine: engine.by_type(
                LedgerFilters(start=month.start, end=month.end)
            ),
            "yearly": lambda engine: engine.by_type(
                LedgerFilters(start=ytd.start, end=ytd.end)
            ),
            "top_categories": lambda engine: engine.by_category(
                LedgerFilters(
                    type=TransactionType.expense, start=month.start, end=month.end
                ),
                limit=self.TOP_CATEGORY_LIMIT,
            ),
        }
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="overview"
        ) as pool:
            futures = {name: pool.submit(self._run, q) for name, q in queries.items()}
            try:
                results = {name: future.result() for name, future in futures.items()}
            except Exception:
                for future in futures.values():
                    future.cancel()
                raise

        return FinancialOverview(
            monthly=PeriodTotals.from_type_totals(results["monthly"]),
            yearly=PeriodTotals.from_type_totals(results["yearly"]),
            top_categories=[
                TopCategory(category=row.key[0], amount_cents=row.total_cents)
                for row in results["top_categories"]
            ],
        )


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        user_id: int,
        *,
        session_factory: Optional[sessionmaker] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.session_factory = session_factory or make_session_factory(
            session.get_bind()
        )
        self.today = today or today_local()
        self.store = LedgerStore(session, user_id)
        self.engine = AggregationEngine(self.store)
        self.reconciler = BudgetReconciler(self.engine)

    def monthly_summary(
        self, months: int = 6, *, fill_gaps: bool = False
    ) -> list[MonthlySummary]:
        """Income, expenses and net per calendar month over the last ``months``.

        The window runs from the same day ``months`` months ago through today.
        Months without any activity are omitted unless ``fill_gaps`` is set, in
        which case every month in the window is reported, zeros included.
        """
        if isinstance(months, bool) or not isinstance(months, int) or months <= 0:
            raise AnalyticsInputError("months must be a positive integer")
        start = add_months(self.today, -months)
        rows = self.engine.by_period(
            LedgerFilters(start=start, end=self.today),
            GroupBy.year_month,
            split_by_type=True,
        )
        buckets: dict[tuple[int, int], dict[TransactionType, int]] = {}
        for row in rows:
            bucket = buckets.setdefault(row.key, {t: 0 for t in TransactionType})
            bucket[row.type] += row.total_cents

        if fill_gaps:
            current = month_start(start)
            while current <= self.today:
                buckets.setdefault(
                    (current.year, current.month), {t: 0 for t in TransactionType}
                )
                current = add_months(current, 1)

        out: list[MonthlySummary] = []
        for (year, month), totals in sorted(buckets.items()):
            income = totals[TransactionType.income]
            expenses = totals[TransactionType.expense]
            out.append(
                MonthlySummary(
                    month=month_label(year, month),
                    income_cents=income,
                    expense_cents=expenses,
                    net_cents=income - expenses,
                )
            )
        logger.debug(f"monthly_summary: user={self.user_id} buckets={len(out)}")
        return out

    def category_spending(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[CategorySpending]:
        rows = self.engine.by_category(
            LedgerFilters(type=TransactionType.expense, start=start, end=end)
        )
        total = sum(row.total_cents for row in rows)
        if total == 0:
            return []

        # Transactions carry the category name; names that no longer match a
        # stored category simply get no color or icon.
        styles = {c.name: (c.color, c.icon) for c in self.store.list_categories()}
        out: list[CategorySpending] = []
        for row in rows:
            name = row.key[0]
            color, icon = styles.get(name, (None, None))
            out.append(
                CategorySpending(
                    category=name,
                    amount_cents=row.total_cents,
                    percentage=_percent(row.total_cents, total),
                    color=color,
                    icon=icon,
                )
            )
        return out

    def spending_trends(
        self, period: Union[TrendPeriod, str]
    ) -> list[SpendingTrend]:
        """Expense totals per week, month or year with period-over-period change.

        The query window starts at the first day of the month
        ``trend_lookback_months - 1`` months back, whatever the granularity.
        Weeks are ISO 8601 weeks labelled with their ISO year; for weekly
        trends the start moves back to that week's Monday so the first
        bucket is a whole week.
        """
        try:
            period = TrendPeriod(period)
        except ValueError as exc:
            raise AnalyticsInputError(f"Unsupported trend period: {period!r}") from exc

        lookback = get_settings().trend_lookback_months
        start = add_months(month_start(self.today), -(lookback - 1))
        if period == TrendPeriod.week:
            start -= timedelta(days=start.weekday())
        granularity = {
            TrendPeriod.week: GroupBy.year_week,
            TrendPeriod.month: GroupBy.year_month,
            TrendPeriod.year: GroupBy.year,
        }[period]
        rows = self.engine.by_period(
            LedgerFilters(type=TransactionType.expense, start=start), granularity
        )

        out: list[SpendingTrend] = []
        previous: Optional[int] = None
        for row in rows:
            if period == TrendPeriod.year:
                label = f"{row.key[0]:04d}"
            elif period == TrendPeriod.month:
                label = month_label(*row.key)
            else:
                label = week_label(*row.key)
            change = _percent(row.total_cents - previous, previous) if previous else 0.0
            out.append(
                SpendingTrend(period=label, amount_cents=row.total_cents, change=change)
            )
            previous = row.total_cents
        return out

    def budget_progress(
        self, month: Union[date, str, None] = None
    ) -> Optional[BudgetProgressReport]:
        try:
            target = parse_month(month, today=self.today)
        except ValueError as exc:
            raise AnalyticsInputError(str(exc)) from exc
        budget = self.store.get_budget(target)
        if budget is None:
            return None
        return self.reconciler.reconcile(budget)

    def current_budget(self) -> Optional[BudgetProgressReport]:
        """Reconcile the latest budget dated at or before the current month.

        Progress is measured against the found budget's own month.
        """
        budget = self.store.find_latest_budget_at_or_before(month_start(self.today))
        if budget is None:
            return None
        return self.reconciler.reconcile(budget)

    def financial_overview(self) -> FinancialOverview:
        composer = OverviewComposer(
            self.session_factory,
            self.user_id,
            today=self.today,
            max_workers=get_settings().overview_workers,
        )
        return composer.compose()
