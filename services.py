from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from analytics import AggregationEngine, AnalyticsService, BudgetProgressReport
from csv_utils import export_transactions, parse_csv, parse_json
from ledger import GroupBy, LedgerFilters, LedgerStore
from models import (
    Budget,
    BudgetCategory,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
)
from periods import add_months, month_end, month_label, month_start, today_local
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryBudgetIn,
    CategoryIn,
    CategoryUpdate,
    TransactionIn,
    TransactionUpdate,
    clean_tags,
)

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


DEFAULT_CATEGORIES: list[dict[str, str]] = [
    {"name": "Food & Dining", "icon": "🍽️", "color": "#ef4444", "type": "expense"},
    {"name": "Transportation", "icon": "🚗", "color": "#f97316", "type": "expense"},
    {"name": "Shopping", "icon": "🛍️", "color": "#eab308", "type": "expense"},
    {"name": "Entertainment", "icon": "🎬", "color": "#22c55e", "type": "expense"},
    {"name": "Bills & Utilities", "icon": "⚡", "color": "#3b82f6", "type": "expense"},
    {"name": "Healthcare", "icon": "🏥", "color": "#8b5cf6", "type": "expense"},
    {"name": "Education", "icon": "📚", "color": "#06b6d4", "type": "expense"},
    {"name": "Travel", "icon": "✈️", "color": "#f43f5e", "type": "expense"},
    {"name": "Salary", "icon": "💰", "color": "#10b981", "type": "income"},
    {"name": "Freelance", "icon": "💻", "color": "#6366f1", "type": "income"},
    {"name": "Investments", "icon": "📈", "color": "#84cc16", "type": "income"},
    {"name": "Other", "icon": "📦", "color": "#6b7280", "type": "both"},
]


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None
    query: Optional[str] = None


SORT_COLUMNS = {
    "date": Transaction.date,
    "amount": Transaction.amount_cents,
    "category": Transaction.category,
    "created": Transaction.created_at,
}


def _sort_clause(sort: str) -> list:
    descending = sort.startswith("-")
    column = SORT_COLUMNS.get(sort.lstrip("-"))
    if column is None:
        raise ValueError(f"Unsupported sort field: {sort!r}")
    primary = column.desc() if descending else column.asc()
    return [primary, Transaction.id.desc() if descending else Transaction.id.asc()]


@dataclass
class Page:
    items: list
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _find_by_name(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == name.strip().lower(),
            )
        )

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        if type is not None and type != CategoryType.both:
            stmt = stmt.where(Category.type == type)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        if self._find_by_name(data.name):
            raise ConflictError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name,
            icon=data.icon,
            color=data.color,
            type=data.type,
            budget_cents=data.budget_cents,
            is_default=data.is_default,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(f"category_created: user={self.user_id} name={category.name}")
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        """Update a category in place.

        A rename does not touch existing transactions: they keep referencing
        the old name and drop out of color/icon enrichment.
        """
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        new_name = changes.get("name")
        if new_name and new_name.strip().lower() != category.name.lower():
            if self._find_by_name(new_name):
                raise ConflictError("Category with this name already exists")
        for key, value in changes.items():
            if key in ("name", "icon"):
                value = value.strip()
            setattr(category, key, value)
        self.session.commit()
        logger.info(f"category_updated: user={self.user_id} id={category_id}")
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.category == category.name,
            )
        ).scalar_one()
        if in_use:
            raise ConflictError(
                f"Cannot delete category that is being used by {in_use} transactions"
            )
        if category.is_default:
            raise ConflictError("Cannot delete default category")
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: user={self.user_id} id={category_id}")

    def initialize_defaults(self) -> list[Category]:
        existing = self.session.execute(
            select(func.count(Category.id)).where(Category.user_id == self.user_id)
        ).scalar_one()
        if existing:
            raise ConflictError("User already has categories")
        categories = [
            Category(
                user_id=self.user_id,
                name=item["name"],
                icon=item["icon"],
                color=item["color"],
                type=CategoryType(item["type"]),
                budget_cents=0,
                is_default=True,
            )
            for item in DEFAULT_CATEGORIES
        ]
        self.session.add_all(categories)
        self.session.commit()
        logger.info(
            f"categories_initialized: user={self.user_id} count={len(categories)}"
        )
        return categories

    def stats(
        self,
        category_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> dict[str, object]:
        category = self.get(category_id)
        amount = func.abs(Transaction.amount_cents)
        stmt = (
            select(
                Transaction.type,
                func.coalesce(func.sum(amount), 0).label("total"),
                func.count(Transaction.id).label("txn_count"),
                func.avg(amount).label("average"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.category == category.name,
            )
            .group_by(Transaction.type)
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date <= end)

        stats = {
            txn_type.value: {"total_cents": 0, "count": 0, "average_cents": 0.0}
            for txn_type in TransactionType
        }
        for row in self.session.execute(stmt):
            stats[TransactionType(row.type).value] = {
                "total_cents": int(row.total or 0),
                "count": int(row.txn_count or 0),
                "average_cents": float(row.average or 0),
            }
        return {
            "category": category,
            "stats": stats,
            "total_transactions": sum(int(s["count"]) for s in stats.values()),
        }


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _require_category(self, name: str) -> None:
        exists = self.session.scalar(
            select(Category.id).where(
                Category.user_id == self.user_id, Category.name == name
            )
        )
        if not exists:
            raise NotFoundError("Category does not exist. Please create it first.")

    def _build(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            date=data.date,
            category=data.category,
            description=data.description,
            amount_cents=data.amount_cents,
            type=data.type,
            payment_method=data.payment_method,
            recurring=data.recurring,
            recurring_frequency=data.recurring_frequency,
            notes=data.notes,
        )
        txn.tags = data.tags
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        self._require_category(data.category)
        txn = self._build(data)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_created: user={self.user_id} id={txn.id}")
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: TransactionFilters,
        *,
        page: int = 1,
        limit: int = 10,
        sort: str = "-date",
    ) -> Page:
        clauses = [Transaction.user_id == self.user_id]
        if filters.type:
            clauses.append(Transaction.type == filters.type)
        if filters.category:
            clauses.append(Transaction.category == filters.category)
        if filters.start:
            clauses.append(Transaction.date >= filters.start)
        if filters.end:
            clauses.append(Transaction.date <= filters.end)
        if filters.min_amount_cents is not None:
            clauses.append(Transaction.amount_cents >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            clauses.append(Transaction.amount_cents <= filters.max_amount_cents)
        if filters.query:
            like = f"%{filters.query}%"
            clauses.append(
                or_(
                    Transaction.description.ilike(like),
                    Transaction.category.ilike(like),
                    Transaction.notes.ilike(like),
                )
            )

        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        total = self.session.execute(
            select(func.count(Transaction.id)).where(*clauses)
        ).scalar_one()
        items = self.session.scalars(
            select(Transaction)
            .where(*clauses)
            .order_by(*_sort_clause(sort))
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(items=list(items), total=int(total), page=page, limit=limit)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "category" in changes and changes["category"] != txn.category:
            self._require_category(changes["category"])
        if "tags" in changes:
            txn.tags = clean_tags(changes.pop("tags"))
        for key, value in changes.items():
            setattr(txn, key, value)
        self.session.commit()
        logger.info(f"transaction_updated: user={self.user_id} id={transaction_id}")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: user={self.user_id} id={transaction_id}")

    def bulk_create(self, items: list[TransactionIn]) -> list[Transaction]:
        if not items:
            raise ValueError("Please provide an array of transactions")
        txns = [self._build(item) for item in items]
        self.session.add_all(txns)
        self.session.commit()
        logger.info(f"transactions_bulk_created: user={self.user_id} count={len(txns)}")
        return txns

    def summary(self) -> dict[str, int]:
        totals = AggregationEngine(LedgerStore(self.session, self.user_id)).by_type(
            LedgerFilters()
        )
        count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id
            )
        ).scalar_one()
        return {
            "total_income_cents": totals[TransactionType.income],
            "total_expense_cents": totals[TransactionType.expense],
            "count": int(count),
        }

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def all_for_export(self, filters: TransactionFilters) -> list[Transaction]:
        page = self.list(filters, page=1, limit=100, sort="date")
        items = list(page.items)
        for number in range(2, page.pages + 1):
            items.extend(self.list(filters, page=number, limit=100, sort="date").items)
        return items


@dataclass
class BudgetOverview:
    current_budget: Optional[BudgetProgressReport]
    recent_budgets: list[Budget]
    income_trend: dict[str, int] = field(default_factory=dict)
    expense_trend: dict[str, int] = field(default_factory=dict)


class BudgetService:
    RECENT_LIMIT = 3
    TREND_MONTHS = 6

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def _check_totals(total_cents: int, allocations: list[CategoryBudgetIn]) -> None:
        allocated = sum(item.budget_cents for item in allocations)
        if allocated != total_cents:
            raise ConflictError("Total budget must equal the sum of category budgets")

    def _month_taken(self, month: date, *, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id, Budget.month == month
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def list(self, page: int = 1, limit: int = 10) -> Page:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        total = self.session.execute(
            select(func.count(Budget.id)).where(Budget.user_id == self.user_id)
        ).scalar_one()
        items = self.session.scalars(
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.month.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return Page(items=list(items), total=int(total), page=page, limit=limit)

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        month = month_start(data.month)
        if self._month_taken(month):
            raise ConflictError("Budget already exists for this month")
        self._check_totals(data.total_budget_cents, data.category_budgets)
        budget = Budget(
            user_id=self.user_id,
            month=month,
            total_budget_cents=data.total_budget_cents,
            currency=data.currency,
            category_budgets=[
                BudgetCategory(category=item.category, budget_cents=item.budget_cents)
                for item in data.category_budgets
            ],
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_created: user={self.user_id} month={month.isoformat()}")
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if data.month is not None:
            month = month_start(data.month)
            if month != budget.month and self._month_taken(month, exclude_id=budget.id):
                raise ConflictError("Budget already exists for this month")
            budget.month = month

        if data.total_budget_cents is not None or data.category_budgets is not None:
            total = (
                data.total_budget_cents
                if data.total_budget_cents is not None
                else budget.total_budget_cents
            )
            allocations = (
                data.category_budgets
                if data.category_budgets is not None
                else [
                    CategoryBudgetIn(category=cb.category, budget_cents=cb.budget_cents)
                    for cb in budget.category_budgets
                ]
            )
            self._check_totals(total, allocations)
            budget.total_budget_cents = total
            if data.category_budgets is not None:
                budget.category_budgets = [
                    BudgetCategory(
                        category=item.category, budget_cents=item.budget_cents
                    )
                    for item in data.category_budgets
                ]

        if data.currency is not None:
            budget.currency = data.currency
        self.session.commit()
        self.session.refresh(budget)
        logger.info(f"budget_updated: user={self.user_id} id={budget_id}")
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()
        logger.info(f"budget_deleted: user={self.user_id} id={budget_id}")

    def overview(self, *, today: Optional[date] = None) -> BudgetOverview:
        today = today or today_local()
        analytics = AnalyticsService(self.session, self.user_id, today=today)
        recent = self.session.scalars(
            select(Budget)
            .options(selectinload(Budget.category_budgets))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.month.desc())
            .limit(self.RECENT_LIMIT)
        ).all()

        start = add_months(month_start(today), -(self.TREND_MONTHS - 1))
        rows = AggregationEngine(LedgerStore(self.session, self.user_id)).by_period(
            LedgerFilters(start=start, end=month_end(today)),
            GroupBy.year_month,
            split_by_type=True,
        )
        income: dict[str, int] = {}
        expenses: dict[str, int] = {}
        for row in rows:
            target = income if row.type == TransactionType.income else expenses
            target[month_label(*row.key)] = row.total_cents

        return BudgetOverview(
            current_budget=analytics.current_budget(),
            recent_budgets=list(recent),
            income_trend=income,
            expense_trend=expenses,
        )


class CSVService:
    FORMATS = ("csv", "json")

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _category_lookup(self) -> dict[str, str]:
        stmt = select(Category.name).where(Category.user_id == self.user_id)
        return {name.lower(): name for name in self.session.scalars(stmt)}

    def preview(
        self, format: str, content: str
    ) -> tuple[list[dict[str, object]], list[str]]:
        if format not in self.FORMATS:
            raise ValueError("Invalid format. Supported formats: csv, json")
        rows, errors = parse_csv(content) if format == "csv" else parse_json(content)
        lookup = self._category_lookup()
        preview_rows: list[dict[str, object]] = []
        for row in rows:
            category = lookup.get(row.category.lower())
            if not category:
                errors.append(f"Missing category '{row.category}'")
            preview_rows.append({**row.model_dump(), "category": category})
        return preview_rows, errors

    def commit(self, format: str, content: str) -> int:
        preview_rows, errors = self.preview(format, content)
        if errors:
            raise ValueError("; ".join(errors))
        for row in preview_rows:
            txn = Transaction(
                user_id=self.user_id,
                date=row["date"],
                category=row["category"],
                description=row["description"],
                amount_cents=row["amount_cents"],
                type=row["type"],
                payment_method=row["payment_method"],
                notes=row["notes"],
            )
            txn.tags = list(row["tags"])
            self.session.add(txn)
        self.session.commit()
        logger.info(
            f"transactions_imported: user={self.user_id} format={format} "
            f"count={len(preview_rows)}"
        )
        return len(preview_rows)

    def export(self, transactions: list[Transaction]) -> str:
        return export_transactions(transactions)
