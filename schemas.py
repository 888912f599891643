import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    CategoryType,
    CurrencyCode,
    PaymentMethod,
    RecurringFrequency,
    TransactionType,
)

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


def clean_tags(tags: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in tags:
        tag = raw.strip()
        if not tag or tag.lower() in seen:
            continue
        seen.add(tag.lower())
        out.append(tag)
    return out


class TransactionIn(BaseModel):
    date: date
    category: str = Field(..., min_length=2, max_length=50)
    description: str = Field(..., min_length=2, max_length=200)
    amount_cents: int = Field(..., gt=0)
    type: TransactionType
    payment_method: Optional[PaymentMethod] = None
    tags: list[str] = Field(default_factory=list)
    recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: list[str]) -> list[str]:
        return clean_tags(value)

    @field_validator("category", "description")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: Optional[dt.date] = None
    category: Optional[str] = Field(default=None, min_length=2, max_length=50)
    description: Optional[str] = Field(default=None, min_length=2, max_length=200)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    type: Optional[TransactionType] = None
    payment_method: Optional[PaymentMethod] = None
    tags: Optional[list[str]] = None
    recurring: Optional[bool] = None
    recurring_frequency: Optional[RecurringFrequency] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    icon: str = Field(..., min_length=1, max_length=32)
    color: str = Field(..., pattern=HEX_COLOR_PATTERN)
    type: CategoryType
    budget_cents: int = Field(default=0, ge=0)
    is_default: bool = False

    @field_validator("name", "icon")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    icon: Optional[str] = Field(default=None, min_length=1, max_length=32)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    type: Optional[CategoryType] = None
    budget_cents: Optional[int] = Field(default=None, ge=0)


class CategoryBudgetIn(BaseModel):
    category: str = Field(..., min_length=1, max_length=50)
    budget_cents: int = Field(..., ge=0)


class BudgetIn(BaseModel):
    month: date
    total_budget_cents: int = Field(..., ge=0)
    category_budgets: list[CategoryBudgetIn] = Field(default_factory=list)
    currency: CurrencyCode = CurrencyCode.usd


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    month: Optional[date] = None
    total_budget_cents: Optional[int] = Field(default=None, ge=0)
    category_budgets: Optional[list[CategoryBudgetIn]] = None
    currency: Optional[CurrencyCode] = None


class ImportRequest(BaseModel):
    format: str
    data: str


class CSVRow(BaseModel):
    date: date
    type: TransactionType
    amount_cents: int
    category: str
    description: str
    payment_method: Optional[PaymentMethod] = None
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
