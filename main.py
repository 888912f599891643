import logging
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session, sessionmaker

from analytics import AnalyticsInputError, AnalyticsService
from config import configure_logging
from csrf import generate_csrf_token, require_csrf
from database import SessionLocal
from models import Budget, Category, CategoryType, Transaction, TransactionType
from periods import parse_date
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    ImportRequest,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BudgetService,
    CategoryService,
    ConflictError,
    CSVService,
    NotFoundError,
    Page,
    TransactionFilters,
    TransactionService,
    get_current_user_id,
)

configure_logging()
logger = logging.getLogger(__name__)

T = TypeVar("T")

app = FastAPI(title="Budgetlens")
STARTED_AT = datetime.now(timezone.utc)


@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def conflict_handler(_request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_analytics(
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> AnalyticsService:
    return AnalyticsService(
        db, get_current_user_id(), session_factory=session_factory
    )


def run_analytics(compute: Callable[[], T]) -> T:
    try:
        return compute()
    except AnalyticsInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        logger.exception("Analytics computation failed")
        raise HTTPException(
            status_code=500, detail="Analytics computation failed"
        ) from exc


def date_param(value: Optional[str]):
    try:
        return parse_date(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def serialize_category(category: Category) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "icon": category.icon,
        "color": category.color,
        "type": category.type.value,
        "budget_cents": category.budget_cents,
        "is_default": category.is_default,
    }


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date.isoformat(),
        "category": txn.category,
        "description": txn.description,
        "amount_cents": txn.amount_cents,
        "type": txn.type.value,
        "payment_method": txn.payment_method.value if txn.payment_method else None,
        "tags": txn.tags,
        "recurring": txn.recurring,
        "recurring_frequency": txn.recurring_frequency.value
        if txn.recurring_frequency
        else None,
        "notes": txn.notes,
    }


def serialize_budget(budget: Budget) -> dict[str, object]:
    return {
        "id": budget.id,
        "month": budget.month.isoformat(),
        "total_budget_cents": budget.total_budget_cents,
        "currency": budget.currency.value,
        "category_budgets": [
            {
                "category": cb.category,
                "budget_cents": cb.budget_cents,
                "spent_cents": cb.spent_cents,
            }
            for cb in budget.category_budgets
        ],
    }


def serialize_page(page: Page, serializer: Callable) -> dict[str, object]:
    return {
        "items": [serializer(item) for item in page.items],
        "total": page.total,
        "page": page.page,
        "limit": page.limit,
        "pages": page.pages,
    }


@app.get("/health")
def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime_seconds": (datetime.now(timezone.utc) - STARTED_AT).total_seconds(),
    }


@app.get("/api/csrf-token")
def csrf_token():
    return {"token": generate_csrf_token(get_current_user_id())}


# Analytics


@app.get("/api/analytics/monthly-summary")
def api_monthly_summary(
    months: int = 6,
    fill: bool = False,
    analytics: AnalyticsService = Depends(get_analytics),
):
    return run_analytics(lambda: analytics.monthly_summary(months, fill_gaps=fill))


@app.get("/api/analytics/category-spending")
def api_category_spending(
    start: Optional[str] = None,
    end: Optional[str] = None,
    analytics: AnalyticsService = Depends(get_analytics),
):
    start_date = date_param(start)
    end_date = date_param(end)
    return run_analytics(lambda: analytics.category_spending(start_date, end_date))


@app.get("/api/analytics/spending-trends")
def api_spending_trends(
    period: str = "month", analytics: AnalyticsService = Depends(get_analytics)
):
    return run_analytics(lambda: analytics.spending_trends(period))


@app.get("/api/analytics/budget-progress")
def api_budget_progress(
    month: Optional[str] = None, analytics: AnalyticsService = Depends(get_analytics)
):
    return run_analytics(lambda: analytics.budget_progress(month))


@app.get("/api/analytics/financial-overview")
def api_financial_overview(analytics: AnalyticsService = Depends(get_analytics)):
    return run_analytics(analytics.financial_overview)


# Budgets


@app.get("/api/budgets")
def api_budgets(page: int = 1, limit: int = 10, db: Session = Depends(get_db)):
    return serialize_page(BudgetService(db).list(page, limit), serialize_budget)


@app.post("/api/budgets", status_code=201, dependencies=[Depends(require_csrf)])
def api_create_budget(data: BudgetIn, db: Session = Depends(get_db)):
    return serialize_budget(BudgetService(db).create(data))


@app.get("/api/budgets/current")
def api_current_budget(analytics: AnalyticsService = Depends(get_analytics)):
    report = run_analytics(analytics.current_budget)
    if report is None:
        raise HTTPException(
            status_code=404, detail="No budget found for current period"
        )
    return report


@app.get("/api/budgets/overview")
def api_budget_overview(db: Session = Depends(get_db)):
    overview = run_analytics(BudgetService(db).overview)
    return {
        "current_budget": overview.current_budget,
        "recent_budgets": [serialize_budget(b) for b in overview.recent_budgets],
        "trends": {
            "income": overview.income_trend,
            "expenses": overview.expense_trend,
        },
    }


@app.get("/api/budgets/{budget_id}")
def api_budget(budget_id: int, db: Session = Depends(get_db)):
    return serialize_budget(BudgetService(db).get(budget_id))


@app.put("/api/budgets/{budget_id}", dependencies=[Depends(require_csrf)])
def api_update_budget(
    budget_id: int, data: BudgetUpdate, db: Session = Depends(get_db)
):
    return serialize_budget(BudgetService(db).update(budget_id, data))


@app.delete(
    "/api/budgets/{budget_id}", status_code=204, dependencies=[Depends(require_csrf)]
)
def api_delete_budget(budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db).delete(budget_id)
    return Response(status_code=204)


# Categories


@app.get("/api/categories")
def api_categories(type: Optional[CategoryType] = None, db: Session = Depends(get_db)):
    return [serialize_category(c) for c in CategoryService(db).list_all(type)]


@app.post("/api/categories", status_code=201, dependencies=[Depends(require_csrf)])
def api_create_category(data: CategoryIn, db: Session = Depends(get_db)):
    return serialize_category(CategoryService(db).create(data))


@app.post(
    "/api/categories/init-defaults",
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def api_init_default_categories(db: Session = Depends(get_db)):
    categories = CategoryService(db).initialize_defaults()
    return [serialize_category(c) for c in categories]


@app.get("/api/categories/{category_id}")
def api_category(category_id: int, db: Session = Depends(get_db)):
    return serialize_category(CategoryService(db).get(category_id))


@app.get("/api/categories/{category_id}/stats")
def api_category_stats(
    category_id: int,
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
):
    result = CategoryService(db).stats(
        category_id, date_param(start), date_param(end)
    )
    result["category"] = serialize_category(result["category"])
    return result


@app.put("/api/categories/{category_id}", dependencies=[Depends(require_csrf)])
def api_update_category(
    category_id: int, data: CategoryUpdate, db: Session = Depends(get_db)
):
    return serialize_category(CategoryService(db).update(category_id, data))


@app.delete(
    "/api/categories/{category_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def api_delete_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).delete(category_id)
    return Response(status_code=204)


# Transactions


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    txn_type = None
    if params.get("type"):
        try:
            txn_type = TransactionType(params["type"])
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid type") from exc
    try:
        min_amount = params.get("min_amount_cents")
        max_amount = params.get("max_amount_cents")
        return TransactionFilters(
            type=txn_type,
            category=params.get("category") or None,
            start=parse_date(params.get("start")),
            end=parse_date(params.get("end")),
            min_amount_cents=int(min_amount) if min_amount else None,
            max_amount_cents=int(max_amount) if max_amount else None,
            query=params.get("q") or None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/transactions")
def api_transactions(
    request: Request,
    page: int = 1,
    limit: int = 10,
    sort: str = "-date",
    db: Session = Depends(get_db),
):
    filters = filters_from_request(request)
    try:
        result = TransactionService(db).list(filters, page=page, limit=limit, sort=sort)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_page(result, serialize_transaction)


@app.post(
    "/api/transactions", status_code=201, dependencies=[Depends(require_csrf)]
)
def api_create_transaction(data: TransactionIn, db: Session = Depends(get_db)):
    return serialize_transaction(TransactionService(db).create(data))


@app.post(
    "/api/transactions/bulk", status_code=201, dependencies=[Depends(require_csrf)]
)
def api_bulk_create_transactions(
    items: list[TransactionIn], db: Session = Depends(get_db)
):
    try:
        created = TransactionService(db).bulk_create(items)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [serialize_transaction(t) for t in created]


@app.post("/api/transactions/import", dependencies=[Depends(require_csrf)])
def api_import_transactions(payload: ImportRequest, db: Session = Depends(get_db)):
    try:
        count = CSVService(db).commit(payload.format, payload.data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"imported": count}


@app.get("/api/transactions/export.csv")
def api_export_transactions(request: Request, db: Session = Depends(get_db)):
    filters = filters_from_request(request)
    transactions = TransactionService(db).all_for_export(filters)
    content = CSVService(db).export(transactions)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="transactions_{timestamp}.csv"'
        },
    )


@app.get("/api/transactions/summary")
def api_transaction_summary(db: Session = Depends(get_db)):
    return TransactionService(db).summary()


@app.get("/api/transactions/recent")
def api_recent_transactions(limit: int = 10, db: Session = Depends(get_db)):
    limit = min(max(limit, 1), 100)
    return [serialize_transaction(t) for t in TransactionService(db).recent(limit)]


@app.get("/api/transactions/{transaction_id}")
def api_transaction(transaction_id: int, db: Session = Depends(get_db)):
    return serialize_transaction(TransactionService(db).get(transaction_id))


@app.put("/api/transactions/{transaction_id}", dependencies=[Depends(require_csrf)])
def api_update_transaction(
    transaction_id: int, data: TransactionUpdate, db: Session = Depends(get_db)
):
    return serialize_transaction(TransactionService(db).update(transaction_id, data))


@app.delete(
    "/api/transactions/{transaction_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def api_delete_transaction(transaction_id: int, db: Session = Depends(get_db)):
    TransactionService(db).delete(transaction_id)
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
