from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from analytics import AnalyticsInputError, AnalyticsService
from database import Base, make_engine, make_session_factory
from models import (
    Budget,
    BudgetCategory,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
)

TODAY = date(2025, 3, 15)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def add_txn(
    session: Session,
    day: date,
    category: str,
    amount_cents: int,
    txn_type: TransactionType = TransactionType.expense,
    user_id: int = 1,
) -> None:
    session.add(
        Transaction(
            user_id=user_id,
            date=day,
            category=category,
            description=f"{category} on {day.isoformat()}",
            amount_cents=amount_cents,
            type=txn_type,
        )
    )
    session.commit()


def test_monthly_summary_single_month_bucket() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 3, 2), "Food", 10000)
        add_txn(session, date(2025, 3, 3), "Salary", 30000, TransactionType.income)

        rows = AnalyticsService(session, 1, today=TODAY).monthly_summary(6)

        assert len(rows) == 1
        assert rows[0].month == "2025-03"
        assert rows[0].income_cents == 30000
        assert rows[0].expense_cents == 10000
        assert rows[0].net_cents == 20000


def test_monthly_summary_sums_absolute_amounts() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 3, 2), "Food", -5000)
        add_txn(session, date(2025, 3, 4), "Food", 2500)

        rows = AnalyticsService(session, 1, today=TODAY).monthly_summary(1)

        assert rows[0].expense_cents == 7500
        assert rows[0].net_cents == -7500


def test_monthly_summary_omits_empty_months_unless_filled() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 1, 10), "Food", 1000)
        add_txn(session, date(2025, 3, 10), "Food", 2000)
        service = AnalyticsService(session, 1, today=TODAY)

        sparse = service.monthly_summary(3)
        filled = service.monthly_summary(3, fill_gaps=True)

        assert [row.month for row in sparse] == ["2025-01", "2025-03"]
        assert [row.month for row in filled] == [
            "2024-12",
            "2025-01",
            "2025-02",
            "2025-03",
        ]
        assert filled[2].income_cents == 0
        assert filled[2].expense_cents == 0


def test_monthly_summary_window_starts_same_day_months_back() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 1, 14), "Food", 1000)
        add_txn(session, date(2025, 1, 15), "Food", 2000)

        rows = AnalyticsService(session, 1, today=TODAY).monthly_summary(2)

        assert rows[0].expense_cents == 2000


@pytest.mark.parametrize("months", [0, -3, True, "6"])
def test_monthly_summary_rejects_non_positive_months(months) -> None:
    with make_session() as session:
        with pytest.raises(AnalyticsInputError):
            AnalyticsService(session, 1, today=TODAY).monthly_summary(months)


def test_monthly_summary_is_scoped_to_user() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 3, 2), "Food", 1000, user_id=2)

        assert AnalyticsService(session, 1, today=TODAY).monthly_summary(6) == []


def test_category_spending_percentages_and_enrichment() -> None:
    with make_session() as session:
        session.add(
            Category(name="Food", icon="🍔", color="#ff0000", type=CategoryType.expense)
        )
        session.commit()
        add_txn(session, date(2025, 3, 1), "Food", 6000)
        add_txn(session, date(2025, 3, 2), "Rent", 3000)
        add_txn(session, date(2025, 3, 3), "Books", 1000)
        add_txn(session, date(2025, 3, 4), "Salary", 90000, TransactionType.income)

        rows = AnalyticsService(session, 1, today=TODAY).category_spending()

        assert [row.category for row in rows] == ["Food", "Rent", "Books"]
        assert sum(row.percentage for row in rows) == pytest.approx(100.0)
        assert rows[0].percentage == pytest.approx(60.0)
        assert rows[0].color == "#ff0000"
        assert rows[0].icon == "🍔"
        assert rows[1].color is None
        assert rows[1].icon is None


def test_category_spending_empty_when_no_expenses() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 3, 4), "Salary", 90000, TransactionType.income)

        assert AnalyticsService(session, 1, today=TODAY).category_spending() == []


def test_category_spending_respects_inclusive_date_bounds() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 2, 28), "Food", 1000)
        add_txn(session, date(2025, 3, 1), "Food", 2000)
        add_txn(session, date(2025, 3, 31), "Food", 3000)
        add_txn(session, date(2025, 4, 1), "Food", 4000)
        service = AnalyticsService(session, 1, today=TODAY)

        rows = service.category_spending(date(2025, 3, 1), date(2025, 3, 31))
        open_ended = service.category_spending(start=date(2025, 3, 31))

        assert rows[0].amount_cents == 5000
        assert open_ended[0].amount_cents == 7000


def test_spending_trends_monthly_change() -> None:
    with make_session() as session:
        add_txn(session, date(2025, 1, 5), "Food", 10000)
        add_txn(session, date(2025, 2, 5), "Food", 15000)

        rows = AnalyticsService(session, 1, today=TODAY).spending_trends("month")

        assert [row.period for row in rows] == ["2025-01", "2025-02"]
        assert rows[0].change == 0
        assert rows[1].change == pytest.approx(50.0)


def test_spending_trends_weeks_use_iso_years() -> None:
    with make_session() as session:
        # 2024-12-30 falls in ISO week 1 of 2025.
        add_txn(session, date(2024, 12, 30), "Food", 1000)
        add_txn(session, date(2025, 1, 5), "Food", 2000)
        add_txn(session, date(2025, 1, 6), "Food", 1500)

        rows = AnalyticsService(session, 1, today=TODAY).spending_trends("week")

        assert [(row.period, row.amount_cents) for row in rows] == [
            ("2025-W01", 3000),
            ("2025-W02", 1500),
        ]
        assert rows[1].change == pytest.approx(-50.0)


def test_spending_trends_yearly_labels_and_lookback() -> None:
    with make_session() as session:
        add_txn(session, date(2024, 3, 31), "Food", 9999)
        add_txn(session, date(2024, 4, 1), "Food", 1000)
        add_txn(session, date(2025, 1, 1), "Food", 4000)

        rows = AnalyticsService(session, 1, today=TODAY).spending_trends("year")

        assert [(row.period, row.amount_cents) for row in rows] == [
            ("2024", 1000),
            ("2025", 4000),
        ]
        assert rows[1].change == pytest.approx(300.0)


def test_spending_trends_rejects_unknown_period() -> None:
    with make_session() as session:
        with pytest.raises(AnalyticsInputError):
            AnalyticsService(session, 1, today=TODAY).spending_trends("decade")


def _budget(session: Session, month: date, total: int, **allocations: int) -> Budget:
    budget = Budget(
        month=month,
        total_budget_cents=total,
        category_budgets=[
            BudgetCategory(category=name, budget_cents=cents, spent_cents=12345)
            for name, cents in allocations.items()
        ],
    )
    session.add(budget)
    session.commit()
    return budget


def test_budget_progress_recomputes_spend_and_flags_overspend() -> None:
    with make_session() as session:
        _budget(session, date(2025, 3, 1), 30000, Food=20000)
        add_txn(session, date(2025, 3, 10), "Food", 25000)
        add_txn(session, date(2025, 3, 11), "Travel", 7000)
        add_txn(session, date(2025, 4, 1), "Food", 50000)

        report = AnalyticsService(session, 1, today=TODAY).budget_progress("2025-03")

        row = report.category_budgets[0]
        assert row.spent_cents == 25000
        assert row.remaining_cents == -5000
        assert row.overspent is True
        assert row.percentage == pytest.approx(125.0)
        assert report.total_spent_cents == 25000
        assert report.total_remaining_cents == 5000
        assert report.total_percentage == pytest.approx(83.333, rel=1e-3)
        assert report.overspent is False


def test_budget_progress_without_budget_is_none() -> None:
    with make_session() as session:
        service = AnalyticsService(session, 1, today=TODAY)

        assert service.budget_progress() is None
        assert service.budget_progress(date(2025, 3, 20)) is None


def test_budget_progress_rejects_malformed_month() -> None:
    with make_session() as session:
        with pytest.raises(AnalyticsInputError):
            AnalyticsService(session, 1, today=TODAY).budget_progress("2025-13")


def test_budget_progress_zero_allocation_has_zero_percentage() -> None:
    with make_session() as session:
        _budget(session, date(2025, 3, 1), 0, Food=0)
        add_txn(session, date(2025, 3, 10), "Food", 500)

        report = AnalyticsService(session, 1, today=TODAY).budget_progress()

        assert report.category_budgets[0].percentage == 0
        assert report.category_budgets[0].overspent is True
        assert report.total_percentage == 0


def test_current_budget_falls_back_to_earlier_month() -> None:
    with make_session() as session:
        _budget(session, date(2025, 1, 1), 20000, Food=20000)
        add_txn(session, date(2025, 1, 20), "Food", 4000)
        add_txn(session, date(2025, 3, 2), "Food", 9000)
        _budget(session, date(2025, 5, 1), 1000, Food=1000)

        report = AnalyticsService(session, 1, today=TODAY).current_budget()

        assert report.month == date(2025, 1, 1)
        assert report.total_spent_cents == 4000


def test_current_budget_none_for_new_user() -> None:
    with make_session() as session:
        assert AnalyticsService(session, 1, today=TODAY).current_budget() is None


def _file_engine(path):
    engine = make_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    return engine


def test_financial_overview_runs_sub_queries_on_own_sessions(tmp_path) -> None:
    engine = _file_engine(tmp_path / "overview.db")
    factory = make_session_factory(engine)

    with factory() as session:
        for idx, name in enumerate(["A1", "B2", "C3", "D4", "E5", "F6"], start=1):
            add_txn(session, date(2025, 3, idx), name, idx * 1000)
        add_txn(session, date(2025, 1, 10), "Salary", 50000, TransactionType.income)
        add_txn(session, date(2025, 2, 10), "Rent", 10000)

        overview = AnalyticsService(
            session, 1, session_factory=factory, today=TODAY
        ).financial_overview()

    assert overview.monthly.income_cents == 0
    assert overview.monthly.expense_cents == 21000
    assert overview.monthly.net_cents == -21000
    assert overview.monthly.savings_rate == 0
    assert overview.yearly.income_cents == 50000
    assert overview.yearly.expense_cents == 31000
    assert overview.yearly.savings_rate == pytest.approx(38.0)
    assert [c.category for c in overview.top_categories] == ["F6", "E5", "D4", "C3", "B2"]


def test_financial_overview_propagates_store_failure(tmp_path) -> None:
    good = _file_engine(tmp_path / "good.db")
    broken = create_engine(f"sqlite:///{tmp_path / 'missing_tables.db'}")

    with Session(good) as session:
        service = AnalyticsService(
            session, 1, session_factory=sessionmaker(bind=broken), today=TODAY
        )
        with pytest.raises(OperationalError):
            service.financial_overview()


def test_analytics_calls_are_idempotent(tmp_path) -> None:
    engine = _file_engine(tmp_path / "idem.db")
    factory = make_session_factory(engine)

    with factory() as session:
        _budget(session, date(2025, 3, 1), 5000, Food=5000)
        add_txn(session, date(2025, 2, 5), "Food", 1200)
        add_txn(session, date(2025, 3, 5), "Food", 3400)
        add_txn(session, date(2025, 3, 6), "Salary", 9000, TransactionType.income)
        service = AnalyticsService(session, 1, session_factory=factory, today=TODAY)

        for call in (
            lambda: service.monthly_summary(6, fill_gaps=True),
            service.category_spending,
            lambda: service.spending_trends("week"),
            service.budget_progress,
            service.current_budget,
            service.financial_overview,
        ):
            assert call() == call()


def test_weekly_trends_start_on_a_monday() -> None:
    # Lookback start is 2024-06-01, a Saturday; its ISO week began 2024-05-27.
    today = date(2025, 5, 10)
    with make_session() as session:
        add_txn(session, date(2024, 5, 26), "Food", 9999)
        add_txn(session, date(2024, 5, 27), "Food", 1000)
        add_txn(session, date(2024, 6, 2), "Food", 500)
        add_txn(session, date(2024, 6, 3), "Food", 3000)

        rows = AnalyticsService(session, 1, today=today).spending_trends("week")

        assert [(row.period, row.amount_cents) for row in rows] == [
            ("2024-W22", 1500),
            ("2024-W23", 3000),
        ]
        assert rows[1].change == pytest.approx(100.0)
