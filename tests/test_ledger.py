from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from analytics import AggregationEngine, AnalyticsInputError
from database import SQLITE_BUSY_TIMEOUT_MS, Base, make_engine
from ledger import GroupBy, LedgerFilters, LedgerStore
from models import Transaction, TransactionType
from periods import add_months, month_end, parse_month, week_label


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def seed(session: Session) -> None:
    rows = [
        (date(2025, 1, 3), "Food", -1200, TransactionType.expense),
        (date(2025, 1, 20), "Rent", 50000, TransactionType.expense),
        (date(2025, 2, 1), "Food", 800, TransactionType.expense),
        (date(2025, 2, 2), "Books", 800, TransactionType.expense),
        (date(2025, 2, 28), "Salary", 300000, TransactionType.income),
    ]
    for day, category, amount, txn_type in rows:
        session.add(
            Transaction(
                date=day,
                category=category,
                description=category,
                amount_cents=amount,
                type=txn_type,
            )
        )
    session.commit()


def test_ungrouped_sum_returns_single_row_even_when_empty() -> None:
    with make_session() as session:
        store = LedgerStore(session, 1)

        rows = store.sum_transactions(LedgerFilters())

        assert len(rows) == 1
        assert rows[0].key == ()
        assert rows[0].total_cents == 0


def test_sums_use_absolute_amounts() -> None:
    with make_session() as session:
        seed(session)
        totals = AggregationEngine(LedgerStore(session, 1)).by_type(LedgerFilters())

        assert totals[TransactionType.expense] == 52800
        assert totals[TransactionType.income] == 300000


def test_by_category_orders_by_amount_then_name() -> None:
    with make_session() as session:
        seed(session)
        engine = AggregationEngine(LedgerStore(session, 1))

        rows = engine.by_category(LedgerFilters(type=TransactionType.expense))

        assert [(row.key[0], row.total_cents) for row in rows] == [
            ("Rent", 50000),
            ("Food", 2000),
            ("Books", 800),
        ]
        assert len(engine.by_category(LedgerFilters(), limit=2)) == 2


def test_by_period_is_chronological_and_splits_types() -> None:
    with make_session() as session:
        seed(session)
        engine = AggregationEngine(LedgerStore(session, 1))

        rows = engine.by_period(LedgerFilters(), GroupBy.year_month, split_by_type=True)

        assert [(row.key, row.type, row.total_cents) for row in rows] == [
            ((2025, 1), TransactionType.expense, 51200),
            ((2025, 2), TransactionType.expense, 1600),
            ((2025, 2), TransactionType.income, 300000),
        ]


def test_by_period_rejects_non_time_grouping() -> None:
    with make_session() as session:
        engine = AggregationEngine(LedgerStore(session, 1))

        with pytest.raises(AnalyticsInputError):
            engine.by_period(LedgerFilters(), GroupBy.category)


def test_inverted_range_matches_nothing() -> None:
    with make_session() as session:
        seed(session)
        engine = AggregationEngine(LedgerStore(session, 1))
        filters = LedgerFilters(start=date(2025, 2, 28), end=date(2025, 1, 1))

        assert engine.by_category(filters) == []
        assert engine.by_type(filters) == {
            TransactionType.income: 0,
            TransactionType.expense: 0,
        }


def test_iso_week_buckets_cross_year_boundary() -> None:
    with make_session() as session:
        for day in (date(2026, 12, 31), date(2027, 1, 3), date(2027, 1, 4)):
            session.add(
                Transaction(
                    date=day,
                    category="Food",
                    description="Lunch",
                    amount_cents=100,
                    type=TransactionType.expense,
                )
            )
        session.commit()
        engine = AggregationEngine(LedgerStore(session, 1))

        rows = engine.by_period(LedgerFilters(), GroupBy.year_week)

        assert [(week_label(*row.key), row.total_cents) for row in rows] == [
            ("2026-W53", 200),
            ("2027-W01", 100),
        ]


def test_month_arithmetic_clamps_day() -> None:
    assert add_months(date(2025, 3, 31), -1) == date(2025, 2, 28)
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert add_months(date(2025, 1, 15), -13) == date(2023, 12, 15)
    assert month_end(date(2025, 12, 5)) == date(2025, 12, 31)


def test_parse_month_accepts_month_and_day_strings() -> None:
    assert parse_month("2025-03") == date(2025, 3, 1)
    assert parse_month("2025-03-17") == date(2025, 3, 1)
    assert parse_month(None, today=date(2025, 7, 9)) == date(2025, 7, 1)
    with pytest.raises(ValueError):
        parse_month("March")


def test_category_filter_limits_sums() -> None:
    with make_session() as session:
        seed(session)
        store = LedgerStore(session, 1)

        food = store.sum_transactions(LedgerFilters(category="Food"))
        food_in_feb = store.sum_transactions(
            LedgerFilters(category="Food", start=date(2025, 2, 1)), GroupBy.year_month
        )
        unknown = store.sum_transactions(LedgerFilters(category="Travel"))

        assert [(row.key, row.total_cents) for row in food] == [((), 2000)]
        assert [(row.key, row.total_cents) for row in food_in_feb] == [((2025, 2), 800)]
        assert unknown[0].total_cents == 0


def test_sqlite_engine_enables_foreign_keys_and_busy_timeout(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'pragmas.db'}")

    with engine.connect() as conn:
        foreign_keys = conn.exec_driver_sql("PRAGMA foreign_keys").scalar()
        busy_timeout = conn.exec_driver_sql("PRAGMA busy_timeout").scalar()
        journal_mode = conn.exec_driver_sql("PRAGMA journal_mode").scalar()

    assert foreign_keys == 1
    assert busy_timeout == SQLITE_BUSY_TIMEOUT_MS
    assert journal_mode == "wal"
