from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import Frequency, RecurringPlan, Transaction, TransactionType
from money import MAX_AMOUNT, cents_to_units


CURRENCY_PATTERN = r"^[A-Za-z]{3}$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecurringPlanIn(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=120)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    frequency: Frequency
    type: TransactionType
    category: Optional[str] = Field(default=None, max_length=50)


class RecurringPlanOut(CamelModel):
    id: str
    user_id: str
    name: str
    amount: float
    currency: str
    frequency: Frequency
    type: TransactionType
    category: Optional[str]
    next_due_date: datetime
    is_active: bool
    created_at: datetime

    @classmethod
    def from_model(cls, plan: RecurringPlan) -> "RecurringPlanOut":
        return cls(
            id=plan.id,
            user_id=plan.user_id,
            name=plan.name,
            amount=cents_to_units(plan.amount_cents),
            currency=plan.currency,
            frequency=plan.frequency,
            type=plan.type,
            category=plan.category,
            next_due_date=plan.next_due_at,
            is_active=plan.is_active,
            created_at=plan.created_at,
        )


class TransactionIn(CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    type: TransactionType = TransactionType.expense
    description: Optional[str] = Field(default=None, max_length=500)
    merchant: Optional[str] = Field(default=None, max_length=120)
    date: Optional[datetime] = None
    category: Optional[str] = Field(default=None, max_length=100)
    is_ai_generated: bool = False
    confidence_score: Optional[float] = Field(default=None, ge=0, le=1)


class TransactionOut(CamelModel):
    id: str
    user_id: str
    amount: float
    currency: str
    type: TransactionType
    description: Optional[str]
    merchant: Optional[str]
    date: datetime
    category_id: Optional[str]
    category: Optional[str]
    recurring_plan_id: Optional[str]
    is_ai_generated: bool
    confidence_score: Optional[float]

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            user_id=txn.user_id,
            amount=cents_to_units(txn.amount_cents),
            currency=txn.currency,
            type=txn.type,
            description=txn.description,
            merchant=txn.merchant,
            date=txn.occurred_at,
            category_id=txn.category_id,
            category=txn.category.name if txn.category else None,
            recurring_plan_id=txn.recurring_plan_id,
            is_ai_generated=txn.is_ai_generated,
            confidence_score=txn.confidence_score,
        )


class DashboardOut(CamelModel):
    income: float
    expense: float
    savings: float
    savings_rate: float


class CategoryTotalOut(CamelModel):
    category_id: Optional[str]
    name: str
    amount: float
    percent: float


class AffordabilitySnapshotOut(CamelModel):
    monthly_income_actual: float
    recurring_income: float
    fixed_expenses: float
    avg_variable_expenses: float
    effective_income: float
    surplus: float
    top_category: str


class PlanFailureOut(CamelModel):
    plan_id: str
    error: str


class RunReportOut(CamelModel):
    now: datetime
    processed: int
    succeeded: int
    failed: list[PlanFailureOut]
    skipped: list[str]
